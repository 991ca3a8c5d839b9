from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Boolean, Integer, String, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

# All timestamps are epoch milliseconds (server clock).


class RaceDocument(Base):
    """One shared per-race document. `kind` is "entries" or "faults"."""

    __tablename__ = "race_documents"
    race_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    last_updated: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    # compare-and-swap counter; bumped by every accepted write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class RaceAggregate(Base):
    __tablename__ = "race_aggregates"
    race_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    highest_bib: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class DeviceHeartbeat(Base):
    __tablename__ = "device_heartbeats"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    race_id: Mapped[str] = mapped_column(String(50), nullable=False)
    device_id: Mapped[str] = mapped_column(String(50), nullable=False)
    device_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    last_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("race_id", "device_id", name="uq_heartbeat_device"),
        Index("ix_heartbeats_race", "race_id"),
    )


class GateAssignment(Base):
    __tablename__ = "gate_assignments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    race_id: Mapped[str] = mapped_column(String(50), nullable=False)
    device_id: Mapped[str] = mapped_column(String(50), nullable=False)
    device_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    gate_start: Mapped[int] = mapped_column(Integer, nullable=False)
    gate_end: Mapped[int] = mapped_column(Integer, nullable=False)
    is_ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_gate_color: Mapped[str] = mapped_column(String(8), nullable=False, default="red")  # red | blue
    last_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("race_id", "device_id", name="uq_gate_assignment_device"),
        Index("ix_gate_assignments_race", "race_id"),
    )


class DeletedKey(Base):
    """Ids removed from a race document, reported to pollers so they drop local copies."""

    __tablename__ = "deleted_keys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    race_id: Mapped[str] = mapped_column(String(50), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # entries | faults
    key: Mapped[str] = mapped_column(String(120), nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("race_id", "kind", "key", name="uq_deleted_key"),
        Index("ix_deleted_keys_race", "race_id", "kind"),
    )


class RaceTombstone(Base):
    __tablename__ = "race_tombstones"
    race_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    deleted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message: Mapped[str] = mapped_column(String(200), nullable=False, default="Race deleted by administrator")
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StoredSecret(Base):
    __tablename__ = "stored_secrets"
    name: Mapped[str] = mapped_column(String(50), primary_key=True)  # client_pin | chief_judge_pin
    value: Mapped[str] = mapped_column(String(255), nullable=False)
