"""Device-side event store.

Every user action is applied locally first and recorded on an undo stack; the
sync client pushes this device's unsynced entries later and feeds the
coordinator's canonical lists back in through the merge methods. Nothing here
does network I/O.
"""
from __future__ import annotations

import bisect
import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from .utils import entry_key, parse_timestamp
from .validation import is_valid_entry, validate_entry, validate_fault

logger = logging.getLogger(__name__)

MAX_UNDO_STACK = 50


class SyncStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"


class ActionType(str, Enum):
    ADD_ENTRY = "ADD_ENTRY"
    DELETE_ENTRY = "DELETE_ENTRY"
    DELETE_MULTIPLE = "DELETE_MULTIPLE"
    CLEAR_ALL = "CLEAR_ALL"
    UPDATE_ENTRY = "UPDATE_ENTRY"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _time_key(timestamp: str) -> float:
    try:
        return parse_timestamp(timestamp).timestamp()
    except ValueError:
        return 0.0


# ---------------------------
# Entries
# ---------------------------


@dataclass
class Entry:
    id: str
    point: str
    timestamp: str
    bib: str = ""
    run: int = 1
    status: str = "ok"
    device_id: str = ""
    device_name: str = ""
    photo: Optional[str] = None
    gps_coords: Optional[dict] = None
    synced_at: Optional[int] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.id, self.device_id

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "bib": self.bib,
            "point": self.point,
            "run": self.run,
            "timestamp": self.timestamp,
            "status": self.status,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
        }
        if self.photo:
            d["photo"] = self.photo
        if self.gps_coords is not None:
            d["gpsCoords"] = self.gps_coords
        if self.synced_at is not None:
            d["syncedAt"] = self.synced_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Entry":
        return cls(
            id=str(data["id"]),
            point=data["point"],
            timestamp=data["timestamp"],
            bib=data.get("bib") or "",
            run=data.get("run") or 1,
            status=data.get("status") or "ok",
            device_id=data.get("deviceId") or "",
            device_name=data.get("deviceName") or "",
            photo=data.get("photo"),
            gps_coords=data.get("gpsCoords"),
            synced_at=data.get("syncedAt"),
        )


@dataclass
class UndoAction:
    """One reversible action.

    `positions` are the list indexes the entries occupied; they only hold while
    the store's `layout_generation` still equals `generation`.
    """

    type: ActionType
    data: Union[Entry, tuple[Entry, ...]]
    new_data: Optional[Entry] = None
    positions: tuple[int, ...] = ()
    timestamp: float = field(default_factory=time.time)
    generation: int = 0

    @property
    def entries(self) -> tuple[Entry, ...]:
        return self.data if isinstance(self.data, tuple) else (self.data,)


# ---------------------------
# Faults
# ---------------------------

# fields captured in each version snapshot
_VERSION_FIELDS = (
    "id", "bib", "run", "gate_number", "fault_type", "timestamp", "device_id",
    "device_name", "gate_range", "synced_at", "notes", "notes_source", "notes_timestamp",
)
_EDITABLE_FIELDS = {"bib", "run", "gate_number", "fault_type", "notes", "notes_source", "notes_timestamp"}

_WIRE_NAMES = {
    "gate_number": "gateNumber",
    "fault_type": "faultType",
    "device_id": "deviceId",
    "device_name": "deviceName",
    "gate_range": "gateRange",
    "synced_at": "syncedAt",
    "notes_source": "notesSource",
    "notes_timestamp": "notesTimestamp",
}


@dataclass(frozen=True)
class FaultVersion:
    version: int
    timestamp: str
    edited_by: str
    edited_by_device_id: str
    change_type: str  # create | edit | restore
    data: dict
    change_description: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "version": self.version,
            "timestamp": self.timestamp,
            "editedBy": self.edited_by,
            "editedByDeviceId": self.edited_by_device_id,
            "changeType": self.change_type,
            "data": {_WIRE_NAMES.get(k, k): v for k, v in self.data.items()},
        }
        if self.change_description:
            d["changeDescription"] = self.change_description
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "FaultVersion":
        wire_to_attr = {v: k for k, v in _WIRE_NAMES.items()}
        return cls(
            version=int(data.get("version") or 1),
            timestamp=data.get("timestamp") or "",
            edited_by=data.get("editedBy") or "",
            edited_by_device_id=data.get("editedByDeviceId") or "",
            change_type=data.get("changeType") or "edit",
            data={wire_to_attr.get(k, k): v for k, v in (data.get("data") or {}).items()},
            change_description=data.get("changeDescription"),
        )


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class MarkedForDeletion:
    at: str
    by: str
    by_device_id: str


DeletionState = Union[Active, MarkedForDeletion]
ACTIVE = Active()


@dataclass
class FaultEntry:
    id: str
    gate_number: int
    fault_type: str
    timestamp: str
    bib: str = ""
    run: int = 1
    device_id: str = ""
    device_name: str = ""
    gate_range: Optional[tuple[int, int]] = None
    notes: Optional[str] = None
    notes_source: Optional[str] = None
    notes_timestamp: Optional[str] = None
    synced_at: Optional[int] = None
    current_version: int = 1
    version_history: tuple[FaultVersion, ...] = ()
    deletion: DeletionState = ACTIVE
    deletion_approved_at: Optional[str] = None
    deletion_approved_by: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.id, self.device_id

    @property
    def marked_for_deletion(self) -> bool:
        return isinstance(self.deletion, MarkedForDeletion)

    def snapshot(self) -> dict:
        return {name: getattr(self, name) for name in _VERSION_FIELDS}

    def to_dict(self) -> dict:
        d = {_WIRE_NAMES.get(k, k): v for k, v in self.snapshot().items()}
        d["gateRange"] = list(self.gate_range) if self.gate_range else None
        d["currentVersion"] = self.current_version
        d["versionHistory"] = [v.to_dict() for v in self.version_history]
        d["markedForDeletion"] = self.marked_for_deletion
        if isinstance(self.deletion, MarkedForDeletion):
            d["markedForDeletionAt"] = self.deletion.at
            d["markedForDeletionBy"] = self.deletion.by
            d["markedForDeletionByDeviceId"] = self.deletion.by_device_id
        if self.deletion_approved_at:
            d["deletionApprovedAt"] = self.deletion_approved_at
            d["deletionApprovedBy"] = self.deletion_approved_by
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "FaultEntry":
        if data.get("markedForDeletion"):
            deletion: DeletionState = MarkedForDeletion(
                at=data.get("markedForDeletionAt") or "",
                by=data.get("markedForDeletionBy") or "",
                by_device_id=data.get("markedForDeletionByDeviceId") or "",
            )
        else:
            deletion = ACTIVE
        gate_range = data.get("gateRange")
        return cls(
            id=str(data["id"]),
            gate_number=data["gateNumber"],
            fault_type=data["faultType"],
            timestamp=data["timestamp"],
            bib=data.get("bib") or "",
            run=data.get("run") or 1,
            device_id=data.get("deviceId") or "",
            device_name=data.get("deviceName") or "",
            gate_range=tuple(gate_range) if gate_range else None,
            notes=data.get("notes"),
            notes_source=data.get("notesSource"),
            notes_timestamp=data.get("notesTimestamp"),
            synced_at=data.get("syncedAt"),
            current_version=data.get("currentVersion") or 1,
            version_history=tuple(
                FaultVersion.from_dict(v) for v in data.get("versionHistory") or [] if isinstance(v, dict)
            ),
            deletion=deletion,
            deletion_approved_at=data.get("deletionApprovedAt"),
            deletion_approved_by=data.get("deletionApprovedBy"),
        )


def append_version(history: tuple[FaultVersion, ...], version: FaultVersion) -> tuple[FaultVersion, ...]:
    # append-only: earlier records are never dropped or rewritten
    return history + (version,)


# ---------------------------
# Store
# ---------------------------


class LocalStore:
    def __init__(self, device_id: str, device_name: str = "", race_id: str = ""):
        self.device_id = device_id
        self.device_name = device_name
        self.race_id = race_id

        self.entries: list[Entry] = []
        self.faults: list[FaultEntry] = []
        self.undo_stack: list[UndoAction] = []
        self.redo_stack: list[UndoAction] = []
        # bumped whenever a cloud merge reorders or shrinks `entries`
        self.layout_generation = 0

        self.recording_state = RecordingState.IDLE
        self.sync_status = SyncStatus.DISCONNECTED
        self.cloud_device_count = 0
        self.cloud_highest_bib = 0

        # fault key -> last version the coordinator accepted
        self._synced_fault_versions: dict[tuple[str, str], int] = {}

    # ----- lookups -----

    def _index_of(self, entry_id: str, device_id: Optional[str] = None) -> int:
        for i, e in enumerate(self.entries):
            if e.id == str(entry_id) and (device_id is None or e.device_id == device_id):
                return i
        return -1

    def _index_of_key(self, key: tuple[str, str]) -> int:
        for i, e in enumerate(self.entries):
            if e.key == key:
                return i
        return -1

    def get_entry(self, entry_id: str, device_id: Optional[str] = None) -> Optional[Entry]:
        i = self._index_of(entry_id, device_id)
        return self.entries[i] if i >= 0 else None

    def _push_undo(self, action: UndoAction) -> None:
        action.generation = self.layout_generation
        self.undo_stack.append(action)
        if len(self.undo_stack) > MAX_UNDO_STACK:
            self.undo_stack.pop(0)
        self.redo_stack.clear()

    # ----- entry actions -----

    def add_entry(self, entry: Entry) -> Entry:
        if not entry.device_id:
            entry = replace(entry, device_id=self.device_id, device_name=entry.device_name or self.device_name)
        validate_entry(entry.to_dict())
        self.entries.append(entry)
        self._push_undo(UndoAction(ActionType.ADD_ENTRY, entry, positions=(len(self.entries) - 1,)))
        return entry

    def delete_entry(self, entry_id: str, device_id: Optional[str] = None) -> Optional[Entry]:
        i = self._index_of(entry_id, device_id)
        if i < 0:
            return None
        entry = self.entries.pop(i)
        self._push_undo(UndoAction(ActionType.DELETE_ENTRY, entry, positions=(i,)))
        return entry

    def delete_multiple(self, entry_ids: Iterable[str]) -> list[Entry]:
        wanted = {str(i) for i in entry_ids}
        positions = tuple(i for i, e in enumerate(self.entries) if e.id in wanted)
        if not positions:
            return []
        removed = tuple(self.entries[i] for i in positions)
        dropped = set(positions)
        self.entries = [e for i, e in enumerate(self.entries) if i not in dropped]
        self._push_undo(UndoAction(ActionType.DELETE_MULTIPLE, removed, positions=positions))
        return list(removed)

    def clear_all(self) -> list[Entry]:
        if not self.entries:
            return []
        removed = tuple(self.entries)
        self.entries = []
        self._push_undo(UndoAction(ActionType.CLEAR_ALL, removed, positions=tuple(range(len(removed)))))
        return list(removed)

    def update_entry(self, entry_id: str, device_id: Optional[str] = None, **changes: Any) -> Optional[Entry]:
        if "id" in changes or "device_id" in changes:
            raise ValueError("id and device_id cannot be changed")
        i = self._index_of(entry_id, device_id)
        if i < 0:
            return None
        old = self.entries[i]
        new = replace(old, **changes)
        validate_entry(new.to_dict())
        self.entries[i] = new
        self._push_undo(UndoAction(ActionType.UPDATE_ENTRY, old, new_data=new, positions=(i,)))
        return new

    def _restore(self, action: UndoAction) -> None:
        if action.generation == self.layout_generation:
            # ascending inserts put every entry back at its original index
            for pos, entry in sorted(zip(action.positions, action.entries), key=lambda p: p[0]):
                self.entries.insert(min(pos, len(self.entries)), entry)
            return
        # a merge re-sorted the list since: the saved indexes are stale, place by time
        for entry in action.entries:
            i = bisect.bisect_right(self.entries, _time_key(entry.timestamp), key=lambda e: _time_key(e.timestamp))
            self.entries.insert(i, entry)

    def _remove_keys(self, entries: tuple[Entry, ...]) -> None:
        keys = {e.key for e in entries}
        self.entries = [e for e in self.entries if e.key not in keys]

    def undo(self) -> Optional[UndoAction]:
        """Revert the latest action and return it; the caller decides about remote deletion."""
        if not self.undo_stack:
            return None
        action = self.undo_stack.pop()
        self.redo_stack.append(action)

        if action.type == ActionType.ADD_ENTRY:
            self._remove_keys(action.entries)
        elif action.type == ActionType.UPDATE_ENTRY:
            i = self._index_of_key(action.data.key)
            if i >= 0:
                self.entries[i] = action.data
        else:
            self._restore(action)
        return action

    def redo(self) -> Optional[UndoAction]:
        if not self.redo_stack:
            return None
        action = self.redo_stack.pop()
        self.undo_stack.append(action)

        if action.type == ActionType.ADD_ENTRY:
            self._restore(action)
        elif action.type == ActionType.UPDATE_ENTRY:
            i = self._index_of_key(action.data.key)
            if i >= 0 and action.new_data is not None:
                self.entries[i] = action.new_data
        else:
            self._remove_keys(action.entries)
        return action

    @property
    def can_undo(self) -> bool:
        return bool(self.undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self.redo_stack)

    # ----- recording -----

    def begin_recording(self) -> bool:
        if self.recording_state == RecordingState.RECORDING:
            return False
        self.recording_state = RecordingState.RECORDING
        return True

    def finish_recording(self, entry: Optional[Entry] = None) -> Optional[Entry]:
        """Leave the recording state, adding `entry` if one was captured."""
        if self.recording_state != RecordingState.RECORDING:
            return None
        try:
            return self.add_entry(entry) if entry is not None else None
        finally:
            self.recording_state = RecordingState.IDLE

    # ----- sync bookkeeping -----

    def unsynced_entries(self) -> list[Entry]:
        return [e for e in self.entries if e.device_id == self.device_id and e.synced_at is None]

    def mark_entry_synced(self, entry_id: str, synced_at: Optional[int] = None) -> bool:
        i = self._index_of(entry_id, self.device_id)
        if i < 0:
            return False
        self.entries[i].synced_at = synced_at if synced_at is not None else int(time.time() * 1000)
        return True

    def update_cloud_aggregates(self, device_count: Any = None, highest_bib: Any = None) -> None:
        if isinstance(device_count, int):
            self.cloud_device_count = device_count
        if isinstance(highest_bib, int):
            self.cloud_highest_bib = highest_bib

    def merge_cloud_entries(self, cloud_entries: Iterable[Any], deleted_ids: Iterable[str] = ()) -> int:
        """Union the coordinator's list into ours. Returns how many entries were added."""
        deleted = set(deleted_ids)
        existing = {e.key for e in self.entries}
        added: list[Entry] = []

        for raw in cloud_entries:
            if not is_valid_entry(raw):
                logger.debug("Skipping invalid cloud entry")
                continue
            entry = Entry.from_dict(raw)
            if entry.device_id == self.device_id:
                # our own entry came back: it reached the coordinator
                i = self._index_of_key(entry.key)
                if i >= 0 and self.entries[i].synced_at is None:
                    self.entries[i].synced_at = entry.synced_at
                continue
            if entry_key(entry.id, entry.device_id) in deleted or entry.id in deleted:
                continue
            if entry.key in existing:
                continue
            added.append(entry)
            existing.add(entry.key)

        if added:
            self.entries.extend(added)
            self.entries.sort(key=lambda e: _time_key(e.timestamp))
            self.layout_generation += 1
        return len(added)

    def remove_deleted_cloud_entries(self, deleted_ids: Iterable[str]) -> int:
        deleted = set(deleted_ids)
        if not deleted:
            return 0
        before = len(self.entries)
        self.entries = [
            e for e in self.entries
            if entry_key(e.id, e.device_id) not in deleted and e.id not in deleted
        ]
        removed = before - len(self.entries)
        if removed:
            self.layout_generation += 1
        return removed

    # ----- faults -----

    def _fault_index(self, fault_id: str, device_id: Optional[str] = None) -> int:
        for i, f in enumerate(self.faults):
            if f.id == str(fault_id) and (device_id is None or f.device_id == device_id):
                return i
        return -1

    def get_fault(self, fault_id: str, device_id: Optional[str] = None) -> Optional[FaultEntry]:
        i = self._fault_index(fault_id, device_id)
        return self.faults[i] if i >= 0 else None

    def _version(self, number: int, change_type: str, data: dict, description: Optional[str] = None) -> FaultVersion:
        return FaultVersion(
            version=number,
            timestamp=_iso_now(),
            edited_by=self.device_name,
            edited_by_device_id=self.device_id,
            change_type=change_type,
            data=data,
            change_description=description,
        )

    def add_fault_entry(self, fault: FaultEntry) -> FaultEntry:
        if not fault.device_id:
            fault = replace(fault, device_id=self.device_id, device_name=fault.device_name or self.device_name)
        validate_fault(fault.to_dict())
        created = replace(
            fault,
            current_version=1,
            version_history=(self._version(1, "create", fault.snapshot()),),
            deletion=ACTIVE,
        )
        self.faults.append(created)
        return created

    def update_fault_entry_with_history(
        self, fault_id: str, changes: dict, change_description: Optional[str] = None
    ) -> bool:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        i = self._fault_index(fault_id)
        if i < 0:
            return False
        old = self.faults[i]
        if old.marked_for_deletion:
            return False

        updated = replace(old, **changes)
        number = old.current_version + 1
        self.faults[i] = replace(
            updated,
            current_version=number,
            version_history=append_version(
                old.version_history, self._version(number, "edit", updated.snapshot(), change_description)
            ),
        )
        return True

    def restore_fault_version(self, fault_id: str, version: int) -> bool:
        i = self._fault_index(fault_id)
        if i < 0:
            return False
        old = self.faults[i]
        if old.marked_for_deletion:
            return False
        target = next((v for v in old.version_history if v.version == version), None)
        if target is None:
            return False

        restored = {k: v for k, v in target.data.items() if k in _EDITABLE_FIELDS}
        number = old.current_version + 1
        self.faults[i] = replace(
            old,
            **restored,
            current_version=number,
            version_history=append_version(
                old.version_history,
                self._version(number, "restore", dict(target.data), f"Restored to version {version}"),
            ),
        )
        return True

    def mark_fault_for_deletion(self, fault_id: str) -> bool:
        i = self._fault_index(fault_id)
        if i < 0:
            return False
        self.faults[i] = replace(
            self.faults[i],
            deletion=MarkedForDeletion(at=_iso_now(), by=self.device_name, by_device_id=self.device_id),
        )
        return True

    def reject_fault_deletion(self, fault_id: str) -> bool:
        i = self._fault_index(fault_id)
        if i < 0:
            return False
        old = self.faults[i]
        number = old.current_version + 1
        self.faults[i] = replace(
            old,
            deletion=ACTIVE,
            current_version=number,
            version_history=append_version(
                old.version_history,
                self._version(number, "edit", old.snapshot(), "Deletion rejected by Chief Judge"),
            ),
        )
        return True

    def approve_fault_deletion(self, fault_id: str) -> Optional[FaultEntry]:
        """Remove a fault marked for deletion and return it with the approval stamped on."""
        i = self._fault_index(fault_id)
        if i < 0 or not self.faults[i].marked_for_deletion:
            return None
        approved = replace(self.faults.pop(i), deletion_approved_at=_iso_now(), deletion_approved_by=self.device_name)
        return approved

    def pending_deletions(self) -> list[FaultEntry]:
        return [f for f in self.faults if f.marked_for_deletion]

    def faults_for_bib(self, bib: str, run: int) -> list[FaultEntry]:
        return [f for f in self.faults if f.bib == bib and f.run == run]

    def unsynced_faults(self) -> list[FaultEntry]:
        return [
            f for f in self.faults
            if f.device_id == self.device_id and self._synced_fault_versions.get(f.key) != f.current_version
        ]

    def mark_fault_synced(self, fault_id: str, version: Optional[int] = None) -> bool:
        i = self._fault_index(fault_id, self.device_id)
        if i < 0:
            return False
        f = self.faults[i]
        self._synced_fault_versions[f.key] = version if version is not None else f.current_version
        f.synced_at = int(time.time() * 1000)
        return True

    def merge_cloud_faults(self, cloud_faults: Iterable[Any], deleted_ids: Iterable[str] = ()) -> int:
        """Add unknown faults and replace known ones that changed upstream. Returns the number touched."""
        deleted = set(deleted_ids)
        index = {f.key: i for i, f in enumerate(self.faults)}
        touched = 0

        for raw in cloud_faults:
            try:
                validate_fault(raw)
                fault = FaultEntry.from_dict(raw)
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping invalid fault from cloud")
                continue
            if fault.device_id == self.device_id:
                continue
            if entry_key(fault.id, fault.device_id) in deleted or fault.id in deleted:
                continue

            i = index.get(fault.key)
            if i is None:
                self.faults.append(fault)
                index[fault.key] = len(self.faults) - 1
                touched += 1
                continue
            local = self.faults[i]
            if fault.current_version > local.current_version or fault.marked_for_deletion != local.marked_for_deletion:
                self.faults[i] = fault
                touched += 1

        if touched:
            self.faults.sort(key=lambda f: _time_key(f.timestamp))
        return touched

    def remove_deleted_cloud_faults(self, deleted_ids: Iterable[str]) -> int:
        deleted = set(deleted_ids)
        if not deleted:
            return 0
        before = len(self.faults)
        self.faults = [
            f for f in self.faults
            if entry_key(f.id, f.device_id) not in deleted and f.id not in deleted
        ]
        return before - len(self.faults)

    # ----- persistence -----

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "raceId": self.race_id,
            "entries": [e.to_dict() for e in self.entries],
            "faults": [f.to_dict() for f in self.faults],
            "syncedFaultVersions": [
                {"id": k[0], "deviceId": k[1], "version": v} for k, v in self._synced_fault_versions.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocalStore":
        store = cls(data["deviceId"], data.get("deviceName") or "", data.get("raceId") or "")
        store.entries = [Entry.from_dict(e) for e in data.get("entries") or []]
        store.faults = [FaultEntry.from_dict(f) for f in data.get("faults") or []]
        for item in data.get("syncedFaultVersions") or []:
            store._synced_fault_versions[(item["id"], item["deviceId"])] = item["version"]
        return store

    def save(self, path: Union[str, Path]) -> None:
        """Write the store to `path` atomically (the undo history is not persisted)."""
        path = Path(path)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(self.to_dict()), encoding="utf-8")
        tmp.replace(path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "LocalStore":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
