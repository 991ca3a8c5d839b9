"""Device presence per race.

Any request carrying a device id refreshes that device's `last_seen`. Stale
devices are not removed by a timer: every count sweeps the map first, so the
answer only depends on who has been heard from recently.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .atomic import ttl_ms
from .settings import settings
from .utils import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Heartbeat:
    device_id: str
    name: str
    last_seen: int


def split_by_staleness(
    heartbeats: Iterable[Heartbeat], now: int, threshold_ms: int
) -> tuple[list[Heartbeat], list[Heartbeat]]:
    """(active, stale) for a snapshot of the heartbeat map taken at `now`."""
    active, stale = [], []
    for hb in heartbeats:
        if now - hb.last_seen <= threshold_ms:
            active.append(hb)
        else:
            stale.append(hb)
    return active, stale


def record_heartbeat(session: Session, race_id: str, device_id: str, device_name: str = "", now: Optional[int] = None) -> None:
    if not device_id:
        return
    now = now if now is not None else now_ms()
    values = dict(device_name=device_name or "Unknown", last_seen=now, expires_at=now + ttl_ms())
    stmt = (
        update(models.DeviceHeartbeat)
        .where(models.DeviceHeartbeat.race_id == race_id, models.DeviceHeartbeat.device_id == device_id)
        .values(**values)
    )
    if session.execute(stmt).rowcount == 0:
        try:
            session.execute(insert(models.DeviceHeartbeat).values(race_id=race_id, device_id=device_id, **values))
        except IntegrityError:
            # another request inserted the same device first
            session.rollback()
            session.execute(stmt)
    session.commit()


def active_devices(session: Session, race_id: str, now: Optional[int] = None) -> list[Heartbeat]:
    """Sweep stale heartbeats for the race and return the devices still present."""
    now = now if now is not None else now_ms()
    rows = session.execute(
        select(models.DeviceHeartbeat).where(models.DeviceHeartbeat.race_id == race_id)
    ).scalars().all()
    snapshot = [Heartbeat(r.device_id, r.device_name, r.last_seen) for r in rows]
    active, stale = split_by_staleness(snapshot, now, settings.RACESYNC_DEVICE_STALE_MS)
    if stale:
        session.execute(
            delete(models.DeviceHeartbeat).where(
                models.DeviceHeartbeat.race_id == race_id,
                models.DeviceHeartbeat.device_id.in_([hb.device_id for hb in stale]),
                # a device that refreshed since the snapshot is not stale any more
                models.DeviceHeartbeat.last_seen < now - settings.RACESYNC_DEVICE_STALE_MS,
            )
        )
        session.commit()
        logger.debug("Evicted %d stale devices from race %s", len(stale), race_id)
    return active


def active_device_count(session: Session, race_id: str, now: Optional[int] = None) -> int:
    return len(active_devices(session, race_id, now))
