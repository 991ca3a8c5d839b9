from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .atomic import ENTRIES, FAULTS, Document, Outcome, atomic_update, delete_document, load_document, ttl_ms
from .errors import CapacityError, NotFoundError, ValidationError
from .presence import active_device_count, record_heartbeat
from .settings import settings
from .utils import entry_key, now_ms, parse_bib_number
from .validation import (
    MAX_BIB_LENGTH,
    MAX_DEVICE_ID_LENGTH,
    MAX_DEVICE_NAME_LENGTH,
    normalize_race_id,
    sanitize_string,
    validate_entry,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 500
MAX_PAGE_LIMIT = 2000

# ---------------------------
# Tombstones / deleted keys
# ---------------------------


def get_tombstone(session: Session, race_id: str) -> Optional[dict]:
    t = session.get(models.RaceTombstone, race_id)
    if not t or t.expires_at <= now_ms():
        return None
    return {"deleted": True, "deletedAt": t.deleted_at, "message": t.message}


def write_tombstone(session: Session, race_id: str, message: str = "Race deleted by administrator") -> int:
    now = now_ms()
    t = session.get(models.RaceTombstone, race_id)
    if t:
        t.deleted_at = now
        t.message = message
        t.expires_at = now + ttl_ms()
    else:
        session.add(models.RaceTombstone(race_id=race_id, deleted_at=now, message=message, expires_at=now + ttl_ms()))
    session.commit()
    return now


def add_deleted_key(session: Session, race_id: str, kind: str, key: str) -> None:
    expires = now_ms() + ttl_ms()
    try:
        session.execute(insert(models.DeletedKey).values(race_id=race_id, kind=kind, key=key, expires_at=expires))
        session.commit()
    except IntegrityError:
        session.rollback()
        session.execute(
            update(models.DeletedKey)
            .where(models.DeletedKey.race_id == race_id, models.DeletedKey.kind == kind, models.DeletedKey.key == key)
            .values(expires_at=expires)
        )
        session.commit()


def list_deleted_keys(session: Session, race_id: str, kind: str) -> list[str]:
    return list(session.execute(
        select(models.DeletedKey.key).where(
            models.DeletedKey.race_id == race_id,
            models.DeletedKey.kind == kind,
            models.DeletedKey.expires_at > now_ms(),
        ).order_by(models.DeletedKey.id.asc())
    ).scalars().all())


# ---------------------------
# Highest bib
# ---------------------------


def get_highest_bib(session: Session, race_id: str) -> int:
    agg = session.get(models.RaceAggregate, race_id)
    if not agg or agg.expires_at <= now_ms():
        return 0
    return agg.highest_bib


def update_highest_bib(session: Session, race_id: str, bib: Optional[str]) -> bool:
    """Raise the race's highest bib to `bib` if it is numerically larger. Never lowers it."""
    bib_num = parse_bib_number(bib)
    if bib_num is None:
        return False
    now = now_ms()
    expires = now + ttl_ms()
    try:
        session.execute(insert(models.RaceAggregate).values(race_id=race_id, highest_bib=bib_num, expires_at=expires))
        session.commit()
        return True
    except IntegrityError:
        session.rollback()
    # single conditional statement, so concurrent writers cannot lower the value
    res = session.execute(
        update(models.RaceAggregate)
        .where(
            models.RaceAggregate.race_id == race_id,
            (models.RaceAggregate.highest_bib < bib_num) | (models.RaceAggregate.expires_at <= now),
        )
        .values(highest_bib=bib_num, expires_at=expires)
    )
    session.commit()
    return res.rowcount == 1


# ---------------------------
# Entries
# ---------------------------


@dataclass
class AddResult:
    entries: list[dict]
    last_updated: Optional[int]
    is_duplicate: bool
    cross_device_duplicate: Optional[dict]


def find_cross_device_duplicate(entries: list[dict], entry: dict, device_id: str) -> Optional[dict]:
    """Earlier entry for the same bib, point and run recorded by a different device."""
    if not entry.get("bib"):
        return None
    run = entry.get("run") or 1
    for e in entries:
        if (
            e.get("bib") == entry["bib"]
            and e.get("point") == entry.get("point")
            and (e.get("run") or 1) == run
            and e.get("deviceId") != device_id
        ):
            return {
                "id": e.get("id"),
                "deviceId": e.get("deviceId") or "",
                "bib": e["bib"],
                "point": e.get("point"),
                "run": e.get("run") or 1,
                "deviceName": e.get("deviceName") or "Unknown device",
                "timestamp": e.get("timestamp"),
            }
    return None


def build_stored_entry(raw: Any, device_id: str, device_name: str) -> tuple[dict, bool]:
    """Validate an incoming entry and keep only the fields we store. Returns (entry, photo_skipped)."""
    e = validate_entry(raw)
    stored = {
        "id": str(e.id),
        "bib": sanitize_string(e.bib, MAX_BIB_LENGTH),
        "point": e.point,
        "run": e.run,
        "timestamp": e.timestamp,
        "status": e.status,
        "deviceId": device_id,
        "deviceName": device_name,
        "syncedAt": now_ms(),
    }
    photo_skipped = False
    if e.photo:
        if len(e.photo) <= settings.RACESYNC_MAX_PHOTO_CHARS:
            stored["photo"] = e.photo
        else:
            photo_skipped = True
    if e.gpsCoords is not None:
        stored["gpsCoords"] = e.gpsCoords.model_dump()
    return stored, photo_skipped


def _add_entry(session: Session, race_id: str, stored: dict, device_id: str) -> AddResult:
    limit = settings.RACESYNC_MAX_ENTRIES_PER_RACE

    def apply(doc: Document) -> Outcome[AddResult]:
        if len(doc.items) >= limit:
            raise CapacityError(f"Maximum entries limit ({limit}) reached for this race")

        entry_id = stored["id"]
        is_duplicate = any(str(e.get("id")) == entry_id and e.get("deviceId") == device_id for e in doc.items)
        dup = find_cross_device_duplicate(doc.items, stored, device_id)

        if is_duplicate:
            return Outcome(AddResult(doc.items, doc.last_updated, True, dup), abort=True)

        doc.items.append(stored)
        doc.last_updated = now_ms()
        return Outcome(AddResult(doc.items, doc.last_updated, False, dup), document=doc)

    return atomic_update(session, race_id, ENTRIES, apply, "add_entry")


def submit_entry(session: Session, race_id: Any, entry: Any, device_id: Any, device_name: Any) -> dict:
    key = normalize_race_id(race_id)

    tombstone = get_tombstone(session, key)
    if tombstone:
        return tombstone

    sanitized_device_id = sanitize_string(device_id, MAX_DEVICE_ID_LENGTH)
    sanitized_device_name = sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH)
    stored, photo_skipped = build_stored_entry(entry, sanitized_device_id, sanitized_device_name)

    result = _add_entry(session, key, stored, sanitized_device_id)
    if result.is_duplicate:
        logger.info("Replayed entry %s from device %s on race %s", stored["id"], sanitized_device_id, key)
    if result.cross_device_duplicate:
        logger.info(
            "Cross-device duplicate on race %s: bib %s at %s (run %s)",
            key, stored["bib"], stored["point"], stored["run"],
        )

    # aggregates update on replays too
    record_heartbeat(session, key, sanitized_device_id, sanitized_device_name)
    update_highest_bib(session, key, stored["bib"])

    return {
        "success": True,
        "entries": result.entries,
        "lastUpdated": result.last_updated,
        "deviceCount": active_device_count(session, key),
        "highestBib": get_highest_bib(session, key),
        "photoSkipped": photo_skipped,
        "isDuplicate": result.is_duplicate,
        "crossDeviceDuplicate": result.cross_device_duplicate,
    }


def _paginate(items: list[dict], offset: Any, limit: Any) -> tuple[list[dict], Optional[dict]]:
    if limit is None:
        return items, None
    try:
        offset_n = max(0, int(offset or 0))
    except (TypeError, ValueError):
        offset_n = 0
    try:
        limit_n = min(MAX_PAGE_LIMIT, max(1, int(limit)))
    except (TypeError, ValueError):
        limit_n = DEFAULT_PAGE_LIMIT
    total = len(items)
    page = items[offset_n:offset_n + limit_n]
    return page, {"offset": offset_n, "limit": limit_n, "total": total, "hasMore": offset_n + limit_n < total}


def get_entries(
    session: Session,
    race_id: Any,
    device_id: Any = None,
    device_name: Any = None,
    offset: Any = None,
    limit: Any = None,
) -> dict:
    key = normalize_race_id(race_id)

    tombstone = get_tombstone(session, key)
    if tombstone:
        return tombstone

    if device_id:
        record_heartbeat(
            session, key,
            sanitize_string(device_id, MAX_DEVICE_ID_LENGTH),
            sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH),
        )

    doc = load_document(session, key, ENTRIES) or Document()
    entries, pagination = _paginate(doc.items, offset, limit)
    out = {
        "entries": entries,
        "lastUpdated": doc.last_updated,
        "total": len(doc.items),
        "deviceCount": active_device_count(session, key),
        "highestBib": get_highest_bib(session, key),
        "deletedIds": list_deleted_keys(session, key, ENTRIES),
    }
    if pagination:
        out["pagination"] = pagination
    return out


def check_race_exists(session: Session, race_id: Any) -> dict:
    key = normalize_race_id(race_id)
    doc = load_document(session, key, ENTRIES)
    return {"exists": doc is not None, "entryCount": len(doc.items) if doc else 0}


def delete_entry(session: Session, race_id: Any, entry_id: Any, device_id: Any = None, device_name: Any = None) -> dict:
    key = normalize_race_id(race_id)
    if entry_id is None or entry_id == "":
        raise ValidationError("entryId is required")

    entry_id_str = str(entry_id)
    sanitized_device_id = sanitize_string(device_id, MAX_DEVICE_ID_LENGTH)

    def apply(doc: Document) -> Outcome[bool]:
        def matches(e: dict) -> bool:
            if str(e.get("id")) != entry_id_str:
                return False
            return not sanitized_device_id or e.get("deviceId") == sanitized_device_id

        kept = [e for e in doc.items if not matches(e)]
        if len(kept) == len(doc.items):
            return Outcome(False, abort=True)
        return Outcome(True, document=Document(items=kept, last_updated=now_ms()))

    removed = atomic_update(session, key, ENTRIES, apply, "delete_entry")
    add_deleted_key(session, key, ENTRIES, entry_key(entry_id_str, sanitized_device_id))

    if sanitized_device_id:
        record_heartbeat(session, key, sanitized_device_id, sanitize_string(device_name, MAX_DEVICE_NAME_LENGTH))

    logger.info("Entry %s deleted from race %s (removed=%s)", entry_id_str, key, removed)
    return {
        "success": True,
        "deleted": removed,
        "entryId": entry_id_str,
        "deviceCount": active_device_count(session, key),
    }


# ---------------------------
# Race management
# ---------------------------


def list_races(session: Session) -> list[dict]:
    now = now_ms()
    rows = session.execute(
        select(models.RaceDocument)
        .where(models.RaceDocument.kind == ENTRIES, models.RaceDocument.expires_at > now)
        .order_by(models.RaceDocument.last_updated.desc())
    ).scalars().all()
    races = []
    for r in rows:
        races.append({
            "raceId": r.race_id,
            "entryCount": len(r.items or []),
            "lastUpdated": r.last_updated,
        })
    for race in races:
        race["deviceCount"] = active_device_count(session, race["raceId"], now)
        race["highestBib"] = get_highest_bib(session, race["raceId"])
    return races


def delete_race(session: Session, race_id: Any, message: Optional[str] = None) -> dict:
    key = normalize_race_id(race_id)
    if load_document(session, key, ENTRIES) is None and load_document(session, key, FAULTS) is None:
        raise NotFoundError("Race not found")
    delete_document(session, key, ENTRIES)
    delete_document(session, key, FAULTS)
    for model in (models.RaceAggregate, models.DeviceHeartbeat, models.GateAssignment, models.DeletedKey):
        session.execute(delete(model).where(model.race_id == key))
    session.commit()
    deleted_at = write_tombstone(session, key, message or "Race deleted by administrator")
    logger.info("Race %s deleted", key)
    return {"success": True, "raceId": key, "deletedAt": deleted_at}


def purge_expired(session: Session) -> int:
    """Drop every race-scoped row whose TTL has passed."""
    now = now_ms()
    purged = 0
    for model in (
        models.RaceDocument, models.RaceAggregate, models.DeviceHeartbeat,
        models.GateAssignment, models.DeletedKey, models.RaceTombstone,
    ):
        purged += session.execute(delete(model).where(model.expires_at <= now)).rowcount
    session.commit()
    if purged:
        logger.info("Purged %d expired rows", purged)
    return purged


def delete_all_races(session: Session) -> dict:
    races = list_races(session)
    results = []
    for race in races:
        try:
            results.append(delete_race(session, race["raceId"]))
        except NotFoundError as e:
            results.append({"success": False, "raceId": race["raceId"], "error": e.message})
    return {
        "success": True,
        "deleted": sum(1 for r in results if r["success"]),
        "total": len(races),
        "results": results,
    }
