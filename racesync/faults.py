"""Gate-judge fault records and gate assignments."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .atomic import FAULTS, Document, Outcome, atomic_update, load_document, ttl_ms
from .auth import AuthResult, chief_judge_required, require_auth, require_write_auth
from .db import get_session
from .errors import CapacityError, ValidationError
from .schemas import FaultDelete, FaultSubmit
from .services import add_deleted_key, list_deleted_keys
from .settings import settings
from .utils import entry_key, now_ms
from .validation import (
    MAX_BIB_LENGTH,
    MAX_DEVICE_ID_LENGTH,
    MAX_DEVICE_NAME_LENGTH,
    MAX_NOTES_LENGTH,
    normalize_race_id,
    sanitize_string,
    validate_fault,
)

logger = logging.getLogger(__name__)

MAX_GATE = 100
MAX_VERSION_HISTORY = 100
HISTORY_TEXT_LENGTH = 200
GATE_COLORS = ("red", "blue")

router = APIRouter()


# ---------------------------
# Gate assignments
# ---------------------------


def parse_gate_range(start: Any, end: Any) -> Optional[tuple[int, int]]:
    try:
        s, e = int(start), int(end)
    except (TypeError, ValueError):
        return None
    if s > 0 and e >= s and e <= MAX_GATE:
        return s, e
    return None


def record_gate_assignment(
    session: Session,
    race_id: str,
    device_id: str,
    device_name: str,
    gate_range: tuple[int, int],
    is_ready: bool = False,
    first_gate_color: Optional[str] = None,
    now: Optional[int] = None,
) -> None:
    if not device_id:
        return
    now = now if now is not None else now_ms()
    values = dict(
        device_name=device_name or "Unknown",
        gate_start=gate_range[0],
        gate_end=gate_range[1],
        is_ready=is_ready is True,
        first_gate_color=first_gate_color if first_gate_color in GATE_COLORS else "red",
        last_seen=now,
        expires_at=now + ttl_ms(),
    )
    stmt = (
        update(models.GateAssignment)
        .where(models.GateAssignment.race_id == race_id, models.GateAssignment.device_id == device_id)
        .values(**values)
    )
    if session.execute(stmt).rowcount == 0:
        try:
            session.execute(insert(models.GateAssignment).values(race_id=race_id, device_id=device_id, **values))
        except IntegrityError:
            session.rollback()
            session.execute(stmt)
    session.commit()


def list_gate_assignments(session: Session, race_id: str, now: Optional[int] = None) -> list[dict]:
    now = now if now is not None else now_ms()
    rows = session.execute(
        select(models.GateAssignment)
        .where(
            models.GateAssignment.race_id == race_id,
            models.GateAssignment.last_seen >= now - settings.RACESYNC_GATE_ASSIGNMENT_STALE_MS,
        )
        .order_by(models.GateAssignment.gate_start.asc())
    ).scalars().all()
    return [
        {
            "deviceId": r.device_id,
            "deviceName": r.device_name,
            "gateStart": r.gate_start,
            "gateEnd": r.gate_end,
            "lastSeen": r.last_seen,
            "isReady": r.is_ready,
            "firstGateColor": r.first_gate_color,
        }
        for r in rows
    ]


# ---------------------------
# Faults
# ---------------------------


def _sanitize_scalar(value: Any):
    if isinstance(value, str):
        return sanitize_string(value, HISTORY_TEXT_LENGTH)
    if isinstance(value, (bool, int, float)):
        return value
    return None


def sanitize_version_record(item: Any) -> Optional[dict]:
    """Strings cut and stripped, one level of nested objects kept, lists dropped."""
    if not isinstance(item, dict):
        return None
    out = {}
    for key, value in item.items():
        if isinstance(value, dict):
            out[key] = {
                k: v for k, v in ((k, _sanitize_scalar(v)) for k, v in value.items()) if v is not None
            }
            continue
        clean = _sanitize_scalar(value)
        if clean is not None:
            out[key] = clean
    return out


def build_stored_fault(raw: Any, device_id: str, device_name: str) -> dict:
    f = validate_fault(raw)
    history = [sanitize_version_record(v) for v in f.versionHistory[:MAX_VERSION_HISTORY]]
    return {
        "id": str(f.id),
        "bib": sanitize_string(f.bib, MAX_BIB_LENGTH),
        "run": f.run,
        "gateNumber": f.gateNumber,
        "faultType": f.faultType,
        "timestamp": f.timestamp,
        "deviceId": device_id,
        "deviceName": device_name,
        "gateRange": list(f.gateRange) if f.gateRange else None,
        "syncedAt": now_ms(),
        "notes": sanitize_string(f.notes, MAX_NOTES_LENGTH) or None,
        "notesSource": f.notesSource,
        "notesTimestamp": sanitize_string(f.notesTimestamp, 64) or None,
        "currentVersion": f.currentVersion,
        "versionHistory": [v for v in history if v is not None],
        "markedForDeletion": f.markedForDeletion,
        "markedForDeletionAt": sanitize_string(f.markedForDeletionAt, 64) or None,
        "markedForDeletionBy": sanitize_string(f.markedForDeletionBy, MAX_DEVICE_NAME_LENGTH),
        "markedForDeletionByDeviceId": sanitize_string(f.markedForDeletionByDeviceId, MAX_DEVICE_ID_LENGTH),
        "deletionApprovedAt": sanitize_string(f.deletionApprovedAt, 64) or None,
        "deletionApprovedBy": sanitize_string(f.deletionApprovedBy, MAX_DEVICE_NAME_LENGTH),
    }


def should_replace(existing: dict, incoming: dict) -> bool:
    """A stored fault is replaced only by a newer version or a deletion flag change."""
    newer = (incoming.get("currentVersion") or 1) > (existing.get("currentVersion") or 1)
    flag_changed = bool(incoming.get("markedForDeletion")) != bool(existing.get("markedForDeletion"))
    return newer or flag_changed


def get_faults(
    session: Session,
    race_id: Any,
    device_id: Any = None,
    device_name: Any = None,
    gate_start: Any = None,
    gate_end: Any = None,
    is_ready: bool = False,
    first_gate_color: Optional[str] = None,
) -> dict:
    key = normalize_race_id(race_id)

    if device_id and gate_start is not None and gate_end is not None:
        gate_range = parse_gate_range(gate_start, gate_end)
        if gate_range:
            record_gate_assignment(
                session, key,
                sanitize_string(device_id, MAX_DEVICE_ID_LENGTH),
                sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH),
                gate_range, is_ready, first_gate_color,
            )

    doc = load_document(session, key, FAULTS) or Document()
    return {
        "faults": doc.items,
        "lastUpdated": doc.last_updated,
        "deletedIds": list_deleted_keys(session, key, FAULTS),
        "gateAssignments": list_gate_assignments(session, key),
    }


def submit_fault(
    session: Session,
    race_id: Any,
    fault: Any,
    device_id: Any,
    device_name: Any,
    gate_range: Optional[list] = None,
    is_ready: bool = False,
    first_gate_color: Optional[str] = None,
) -> dict:
    key = normalize_race_id(race_id)
    sanitized_device_id = sanitize_string(device_id, MAX_DEVICE_ID_LENGTH)
    sanitized_device_name = sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH)
    stored = build_stored_fault(fault, sanitized_device_id, sanitized_device_name)
    limit = settings.RACESYNC_MAX_FAULTS_PER_RACE

    def apply(doc: Document) -> Outcome[tuple[Document, bool]]:
        if len(doc.items) >= limit:
            raise CapacityError(f"Maximum faults limit ({limit}) reached for this race")

        for i, f in enumerate(doc.items):
            if str(f.get("id")) == stored["id"] and f.get("deviceId") == sanitized_device_id:
                if not should_replace(f, stored):
                    return Outcome((doc, True), abort=True)
                doc.items[i] = stored
                break
        else:
            doc.items.append(stored)
        doc.last_updated = now_ms()
        return Outcome((doc, False), document=doc)

    doc, is_duplicate = atomic_update(session, key, FAULTS, apply, "submit_fault")

    if gate_range and len(gate_range) == 2:
        parsed = parse_gate_range(gate_range[0], gate_range[1])
        if parsed:
            record_gate_assignment(
                session, key, sanitized_device_id, sanitized_device_name, parsed, is_ready, first_gate_color
            )

    return {
        "success": True,
        "faults": doc.items,
        "lastUpdated": doc.last_updated,
        "isDuplicate": is_duplicate,
        "gateAssignments": list_gate_assignments(session, key),
    }


def delete_fault(
    session: Session,
    race_id: Any,
    fault_id: Any,
    device_id: Any = None,
    device_name: Any = None,
    approved_by: Any = None,
) -> dict:
    key = normalize_race_id(race_id)
    if fault_id is None or fault_id == "":
        raise ValidationError("faultId is required")

    fault_id_str = str(fault_id)
    sanitized_device_id = sanitize_string(device_id, MAX_DEVICE_ID_LENGTH)

    def apply(doc: Document) -> Outcome[bool]:
        def matches(f: dict) -> bool:
            if str(f.get("id")) != fault_id_str:
                return False
            return not sanitized_device_id or f.get("deviceId") == sanitized_device_id

        kept = [f for f in doc.items if not matches(f)]
        if len(kept) == len(doc.items):
            return Outcome(False, abort=True)
        return Outcome(True, document=Document(items=kept, last_updated=now_ms()))

    removed = atomic_update(session, key, FAULTS, apply, "delete_fault")
    add_deleted_key(session, key, FAULTS, entry_key(fault_id_str, sanitized_device_id))
    logger.info(
        "Fault %s deleted from race %s by %s (device %s, removed=%s)",
        fault_id_str, key,
        sanitize_string(approved_by, MAX_DEVICE_NAME_LENGTH) or "unknown",
        sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH) or sanitized_device_id,
        removed,
    )
    return {"success": True, "deleted": removed, "faultId": fault_id_str}


# ---------------------------
# Routes
# ---------------------------


@router.get("/api/v1/faults", dependencies=[Depends(require_auth)])
def faults_get(
    raceId: str | None = Query(default=None),
    deviceId: str | None = Query(default=None),
    deviceName: str | None = Query(default=None),
    gateStart: str | None = Query(default=None),
    gateEnd: str | None = Query(default=None),
    isReady: str | None = Query(default=None),
    firstGateColor: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    return get_faults(
        session, raceId, deviceId, deviceName, gateStart, gateEnd,
        is_ready=isReady == "true", first_gate_color=firstGateColor,
    )


@router.post("/api/v1/faults", dependencies=[Depends(require_write_auth)])
def faults_post(
    body: FaultSubmit,
    raceId: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    return submit_fault(
        session, raceId, body.fault, body.deviceId, body.deviceName,
        gate_range=body.gateRange, is_ready=body.isReady, first_gate_color=body.firstGateColor,
    )


@router.delete("/api/v1/faults")
def faults_delete(
    body: FaultDelete,
    raceId: str | None = Query(default=None),
    auth: AuthResult = Depends(chief_judge_required("Fault deletion")),
    session: Session = Depends(get_session),
):
    return delete_fault(session, raceId, body.faultId, body.deviceId, body.deviceName, body.approvedBy)
