from __future__ import annotations

from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StrictInt, StrictStr

from .utils import parse_timestamp

TimingPoint = Literal["S", "I1", "I2", "I3", "F"]
EntryStatus = Literal["ok", "dns", "dnf", "dsq", "flt"]
FaultType = Literal["MG", "STR", "BR"]
Role = Literal["timer", "gateJudge", "chiefJudge"]


class GpsCoords(BaseModel):
    latitude: float
    longitude: float
    accuracy: float = Field(ge=0)


def _check_record_id(v):
    if isinstance(v, int) and v <= 0:
        raise ValueError("id must be a positive number")
    if isinstance(v, str) and not v.strip():
        raise ValueError("id must not be empty")
    return v


def _check_timestamp(v: str) -> str:
    try:
        parse_timestamp(v)
    except ValueError:
        raise ValueError("Invalid timestamp format")
    return v


RecordId = Annotated[StrictInt | StrictStr, AfterValidator(_check_record_id)]
Timestamp = Annotated[StrictStr, AfterValidator(_check_timestamp)]


class EntryIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    bib: StrictStr = Field(default="", max_length=10)
    point: TimingPoint
    run: Literal[1, 2] = 1
    timestamp: Timestamp
    status: EntryStatus = "ok"
    photo: Optional[StrictStr] = None
    gpsCoords: Optional[GpsCoords] = None


class FaultIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    bib: StrictStr = Field(default="", max_length=10)
    run: Literal[1, 2] = 1
    gateNumber: StrictInt = Field(ge=1)
    faultType: FaultType
    timestamp: Timestamp
    gateRange: Optional[tuple[int, int]] = None
    notes: Optional[str] = None
    notesSource: Optional[Literal["manual", "voice"]] = None
    notesTimestamp: Optional[str] = None
    currentVersion: StrictInt = Field(default=1, ge=1)
    versionHistory: list[Any] = Field(default_factory=list)
    markedForDeletion: bool = False
    markedForDeletionAt: Optional[str] = None
    markedForDeletionBy: Optional[str] = None
    markedForDeletionByDeviceId: Optional[str] = None
    deletionApprovedAt: Optional[str] = None
    deletionApprovedBy: Optional[str] = None


# Request bodies. `entry`/`fault` stay untyped so the coordinator can validate the
# race id first and report entry problems with its own messages.

class EntrySubmit(BaseModel):
    entry: Optional[dict[str, Any]] = None
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None


class EntryDelete(BaseModel):
    entryId: Optional[StrictInt | StrictStr] = None
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None


class FaultSubmit(BaseModel):
    fault: Optional[dict[str, Any]] = None
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None
    gateRange: Optional[list[Any]] = None
    isReady: bool = False
    firstGateColor: Optional[str] = None


class FaultDelete(BaseModel):
    faultId: Optional[StrictInt | StrictStr] = None
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None
    approvedBy: Optional[str] = None


class TokenRequest(BaseModel):
    pin: Optional[str] = None
    role: Optional[str] = None


class PinChange(BaseModel):
    currentPin: Optional[str] = None
    newPin: Optional[str] = None


class PinReset(BaseModel):
    serverPin: Optional[str] = None
