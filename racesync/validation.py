"""Admission checks shared by the coordinator routes and the device-side store."""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .schemas import EntryIn, FaultIn

MAX_RACE_ID_LENGTH = 50
MAX_BIB_LENGTH = 10
MAX_DEVICE_ID_LENGTH = 50
MAX_DEVICE_NAME_LENGTH = 100
MAX_NOTES_LENGTH = 500

_RACE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_STRIP_RE = re.compile(r"[<>&\x00-\x1f\x7f]")


def is_valid_race_id(race_id: Any) -> bool:
    if not race_id or not isinstance(race_id, str):
        return False
    if len(race_id) > MAX_RACE_ID_LENGTH:
        return False
    return bool(_RACE_ID_RE.match(race_id))


def normalize_race_id(race_id: Any) -> str:
    """Validate a race id and return its lowercase storage key."""
    if not race_id:
        raise ValidationError("raceId is required")
    if not is_valid_race_id(race_id):
        raise ValidationError(
            "Invalid raceId format. Use alphanumeric characters, hyphens, and underscores only (max 50 chars)."
        )
    return race_id.lower()


def sanitize_string(value: Any, max_length: int) -> str:
    if not value or not isinstance(value, str):
        return ""
    return _STRIP_RE.sub("", value[:max_length])


def _describe(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{loc}: {msg}" if loc else msg


def _parse(model: type[BaseModel], raw: Any, label: str):
    if raw is None:
        raise ValidationError(f"{label} is required")
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid {label} format")
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {label}: {_describe(e)}")


def validate_entry(raw: Any) -> EntryIn:
    return _parse(EntryIn, raw, "entry")


def validate_fault(raw: Any) -> FaultIn:
    return _parse(FaultIn, raw, "fault")


def is_valid_entry(raw: Any) -> bool:
    try:
        validate_entry(raw)
    except ValidationError:
        return False
    return True


def is_valid_pin(pin: Any) -> bool:
    return isinstance(pin, str) and bool(re.fullmatch(r"\d{4}", pin))
