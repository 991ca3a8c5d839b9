from __future__ import annotations

import time
from datetime import datetime


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_timestamp(value: str) -> datetime:
    value = value.strip()
    if not value:
        raise ValueError("Empty timestamp")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def parse_bib_number(bib: str | None) -> int | None:
    """Numeric value of a bib label ("007" -> 7), or None for blank/non-numeric bibs."""
    if not bib:
        return None
    bib = bib.strip()
    if not bib.isdigit():
        return None
    value = int(bib)
    return value if value > 0 else None


def entry_key(entry_id, device_id: str | None) -> str:
    # identity of an entry or fault across devices: ids are only unique per device
    if device_id:
        return f"{entry_id}:{device_id}"
    return str(entry_id)
