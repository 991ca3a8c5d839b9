"""Optimistic compare-and-swap updates of the shared per-race documents.

Every writer reads the document together with its `version`, computes the new
item list, and writes it back with `UPDATE ... WHERE version = <seen>`. A writer
that loses the race re-reads and recomputes, so no accepted write can be
overwritten by a concurrent one. When the retries run out the caller gets a
ConflictError instead of a silently dropped write.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, Optional, TypeVar

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import ConflictError
from .settings import settings
from .utils import now_ms

logger = logging.getLogger(__name__)

ENTRIES = "entries"
FAULTS = "faults"

R = TypeVar("R")


@dataclass
class Document:
    items: list[dict] = field(default_factory=list)
    last_updated: Optional[int] = None


@dataclass
class Outcome(Generic[R]):
    """What an update function decided: write `document` back, or abort and just return `result`."""

    result: R
    document: Optional[Document] = None
    abort: bool = False


def ttl_ms() -> int:
    return settings.RACESYNC_RACE_TTL_SECONDS * 1000


def _read(session: Session, race_id: str, kind: str, now: int) -> tuple[Optional[Document], Optional[int]]:
    """(document, version); document is None when absent or expired."""
    row = session.execute(
        select(
            models.RaceDocument.items,
            models.RaceDocument.last_updated,
            models.RaceDocument.version,
            models.RaceDocument.expires_at,
        ).where(models.RaceDocument.race_id == race_id, models.RaceDocument.kind == kind)
    ).first()
    if row is None:
        return None, None
    if row.expires_at <= now:
        # expired rows are kept for the CAS but read as absent
        return None, row.version
    items = row.items if isinstance(row.items, list) else []
    return Document(items=list(items), last_updated=row.last_updated), row.version


def load_document(session: Session, race_id: str, kind: str) -> Optional[Document]:
    """Current document, or None if it was never written or has expired."""
    doc, _ = _read(session, race_id, kind, now_ms())
    return doc


def atomic_update(
    session: Session,
    race_id: str,
    kind: str,
    update_fn: Callable[[Document], Outcome[R]],
    operation_name: str,
    max_retries: Optional[int] = None,
) -> R:
    retries = max_retries or settings.RACESYNC_MAX_ATOMIC_RETRIES
    for attempt in range(retries):
        now = now_ms()
        current, seen_version = _read(session, race_id, kind, now)
        if current is None:
            current = Document()
        # end the read so the write below starts from a clean transaction
        session.rollback()

        outcome = update_fn(current)
        if outcome.abort:
            return outcome.result

        doc = outcome.document
        values = dict(items=doc.items, last_updated=doc.last_updated, expires_at=now + ttl_ms())

        if seen_version is None:
            try:
                session.execute(
                    insert(models.RaceDocument).values(race_id=race_id, kind=kind, version=1, **values)
                )
                session.commit()
                return outcome.result
            except IntegrityError:
                session.rollback()
        else:
            res = session.execute(
                update(models.RaceDocument)
                .where(
                    models.RaceDocument.race_id == race_id,
                    models.RaceDocument.kind == kind,
                    models.RaceDocument.version == seen_version,
                )
                .values(version=seen_version + 1, **values)
            )
            if res.rowcount == 1:
                session.commit()
                return outcome.result
            session.rollback()

        logger.warning(
            "%s: retry due to concurrent modification (race=%s, attempt %d/%d)",
            operation_name, race_id, attempt + 1, retries,
        )

    raise ConflictError("Concurrent modification conflict, please retry")


def delete_document(session: Session, race_id: str, kind: str) -> None:
    session.query(models.RaceDocument).filter(
        models.RaceDocument.race_id == race_id, models.RaceDocument.kind == kind
    ).delete(synchronize_session=False)
