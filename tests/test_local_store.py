"""Tests for the device-side store: undo/redo, merging and fault history."""

import pytest

from racesync.errors import ValidationError
from racesync.local_store import (
    MAX_UNDO_STACK,
    ActionType,
    Entry,
    FaultEntry,
    LocalStore,
    MarkedForDeletion,
    RecordingState,
)


def entry(entry_id, bib="1", point="F", ts="2026-03-01T10:00:00.000Z", **kw):
    return Entry(id=str(entry_id), point=point, timestamp=ts, bib=bib, **kw)


def cloud_entry(entry_id, device_id, bib="5", ts="2026-03-01T10:00:30.000Z"):
    return {
        "id": str(entry_id), "bib": bib, "point": "F", "run": 1, "timestamp": ts,
        "status": "ok", "deviceId": device_id, "deviceName": device_id.upper(), "syncedAt": 1000,
    }


def fault(fault_id=1, bib="42", gate=4):
    return FaultEntry(id=str(fault_id), gate_number=gate, fault_type="MG", timestamp="2026-03-01T10:00:05.000Z", bib=bib)


@pytest.fixture
def store():
    return LocalStore("dev-a", "Timer A", "race-1")


def ids(store):
    return [e.id for e in store.entries]


class TestEntries:
    def test_add_fills_in_device(self, store):
        added = store.add_entry(entry(1))
        assert added.device_id == "dev-a"
        assert added.device_name == "Timer A"
        assert store.unsynced_entries() == [added]

    def test_add_rejects_invalid(self, store):
        with pytest.raises(ValidationError):
            store.add_entry(entry(1, point="X"))
        assert store.entries == []
        assert not store.can_undo

    def test_update_cannot_change_identity(self, store):
        store.add_entry(entry(1))
        with pytest.raises(ValueError):
            store.update_entry("1", id="2")

    def test_delete_missing_is_noop(self, store):
        assert store.delete_entry("nope") is None
        assert not store.can_undo


class TestUndoRedo:
    def test_undo_delete_restores_position(self, store):
        for i in range(1, 4):
            store.add_entry(entry(i))
        removed = store.delete_entry("2")
        assert ids(store) == ["1", "3"]

        action = store.undo()
        assert action.type == ActionType.DELETE_ENTRY
        assert action.data == removed
        assert ids(store) == ["1", "2", "3"]

        store.redo()
        assert ids(store) == ["1", "3"]

    def test_undo_delete_multiple_restores_positions(self, store):
        for i in range(1, 6):
            store.add_entry(entry(i))
        store.delete_multiple(["2", "4"])
        assert ids(store) == ["1", "3", "5"]
        store.undo()
        assert ids(store) == ["1", "2", "3", "4", "5"]

    def test_undo_clear_all(self, store):
        for i in range(1, 4):
            store.add_entry(entry(i))
        store.clear_all()
        assert store.entries == []
        action = store.undo()
        assert action.type == ActionType.CLEAR_ALL
        assert ids(store) == ["1", "2", "3"]

    def test_undo_update_restores_old_value(self, store):
        store.add_entry(entry(1, bib="7"))
        store.update_entry("1", bib="8")
        store.undo()
        assert store.get_entry("1").bib == "7"
        store.redo()
        assert store.get_entry("1").bib == "8"

    def test_undo_add_returns_action_for_remote_delete(self, store):
        added = store.add_entry(entry(1))
        action = store.undo()
        assert action.type == ActionType.ADD_ENTRY
        assert action.entries == (added,)
        assert store.entries == []

    def test_undo_then_redo_is_identity(self, store):
        for i in range(1, 4):
            store.add_entry(entry(i))
        store.delete_entry("1")
        store.update_entry("3", bib="99")
        before = list(store.entries)
        store.undo()
        store.redo()
        assert store.entries == before

    def test_new_action_clears_redo(self, store):
        store.add_entry(entry(1))
        store.undo()
        assert store.can_redo
        store.add_entry(entry(2))
        assert not store.can_redo

    def test_stack_is_capped(self, store):
        for i in range(1, MAX_UNDO_STACK + 11):
            store.add_entry(entry(i))
        assert len(store.undo_stack) == MAX_UNDO_STACK
        while store.undo():
            pass
        assert len(store.entries) == 10

    def test_empty_stacks(self, store):
        assert store.undo() is None
        assert store.redo() is None


class TestRecording:
    def test_one_recording_at_a_time(self, store):
        assert store.begin_recording()
        assert not store.begin_recording()
        store.finish_recording(entry(1))
        assert store.recording_state == RecordingState.IDLE
        assert ids(store) == ["1"]

    def test_state_reset_when_add_fails(self, store):
        store.begin_recording()
        with pytest.raises(ValidationError):
            store.finish_recording(entry(1, point="X"))
        assert store.recording_state == RecordingState.IDLE

    def test_finish_without_recording(self, store):
        assert store.finish_recording(entry(1)) is None
        assert store.entries == []


class TestMergeCloudEntries:
    def test_adds_other_devices_sorted_by_time(self, store):
        store.add_entry(entry(1, ts="2026-03-01T10:01:00.000Z"))
        added = store.merge_cloud_entries([cloud_entry(7, "dev-b", ts="2026-03-01T10:00:30.000Z")])
        assert added == 1
        assert [(e.id, e.device_id) for e in store.entries] == [("7", "dev-b"), ("1", "dev-a")]

    def test_same_id_other_device_is_distinct(self, store):
        store.add_entry(entry(1))
        assert store.merge_cloud_entries([cloud_entry(1, "dev-b")]) == 1
        assert len(store.entries) == 2

    def test_idempotent(self, store):
        store.merge_cloud_entries([cloud_entry(7, "dev-b")])
        assert store.merge_cloud_entries([cloud_entry(7, "dev-b")]) == 0
        assert len(store.entries) == 1

    def test_own_entries_marked_synced_not_duplicated(self, store):
        store.add_entry(entry(1))
        assert store.merge_cloud_entries([cloud_entry(1, "dev-a")]) == 0
        assert len(store.entries) == 1
        assert store.entries[0].synced_at == 1000
        assert store.unsynced_entries() == []

    def test_deleted_and_invalid_skipped(self, store):
        bad = cloud_entry(8, "dev-b")
        bad["point"] = "Z"
        added = store.merge_cloud_entries([cloud_entry(7, "dev-b"), bad, cloud_entry(9, "dev-c")], ["7:dev-b"])
        assert added == 1
        assert [e.key for e in store.entries] == [("9", "dev-c")]

    def test_remove_deleted(self, store):
        store.merge_cloud_entries([cloud_entry(7, "dev-b"), cloud_entry(7, "dev-c")])
        assert store.remove_deleted_cloud_entries(["7:dev-b"]) == 1
        assert [e.key for e in store.entries] == [("7", "dev-c")]

    def test_undo_delete_after_merge_keeps_time_order(self, store):
        store.add_entry(entry(1, ts="2026-03-01T10:00:00.000Z"))
        store.add_entry(entry(2, ts="2026-03-01T10:02:00.000Z"))
        store.add_entry(entry(3, ts="2026-03-01T10:04:00.000Z"))
        store.delete_entry("2")
        store.merge_cloud_entries([cloud_entry(7, "dev-b", ts="2026-03-01T10:01:00.000Z")])
        assert ids(store) == ["1", "7", "3"]

        store.undo()
        assert ids(store) == ["1", "7", "2", "3"]

    def test_redo_add_after_merge_keeps_time_order(self, store):
        store.add_entry(entry(1, ts="2026-03-01T10:00:00.000Z"))
        store.add_entry(entry(2, ts="2026-03-01T10:05:00.000Z"))
        store.undo()
        store.merge_cloud_entries([
            cloud_entry(7, "dev-b", ts="2026-03-01T10:02:00.000Z"),
            cloud_entry(8, "dev-b", ts="2026-03-01T09:59:00.000Z"),
        ])
        assert ids(store) == ["8", "1", "7"]

        store.redo()
        assert ids(store) == ["8", "1", "7", "2"]

    def test_undo_after_cloud_removal_keeps_time_order(self, store):
        store.merge_cloud_entries([cloud_entry(7, "dev-b", ts="2026-03-01T10:03:00.000Z")])
        store.add_entry(entry(1, ts="2026-03-01T10:00:00.000Z"))
        store.add_entry(entry(2, ts="2026-03-01T10:02:00.000Z"))
        store.delete_entry("1")
        assert store.remove_deleted_cloud_entries(["7:dev-b"]) == 1
        assert ids(store) == ["2"]

        store.undo()
        assert ids(store) == ["1", "2"]


class TestFaults:
    def test_add_creates_first_version(self, store):
        f = store.add_fault_entry(fault())
        assert f.current_version == 1
        assert [v.change_type for v in f.version_history] == ["create"]
        assert f.device_id == "dev-a"

    def test_edit_appends_history(self, store):
        store.add_fault_entry(fault())
        original = store.get_fault("1").version_history
        assert store.update_fault_entry_with_history("1", {"gate_number": 5}, "wrong gate")

        f = store.get_fault("1")
        assert f.gate_number == 5
        assert f.current_version == 2
        assert f.version_history[:1] == original
        assert f.version_history[-1].change_description == "wrong gate"

    def test_rejects_unknown_fields(self, store):
        store.add_fault_entry(fault())
        with pytest.raises(ValueError):
            store.update_fault_entry_with_history("1", {"id": "2"})

    def test_history_is_never_truncated(self, store):
        store.add_fault_entry(fault())
        for i in range(60):
            store.update_fault_entry_with_history("1", {"notes": f"edit {i}"})
        before = store.get_fault("1").version_history
        assert len(before) == 61

        store.update_fault_entry_with_history("1", {"notes": "edit 60"})
        store.update_fault_entry_with_history("1", {"gate_number": 6})
        after = store.get_fault("1").version_history
        assert len(after) == len(before) + 2
        assert after[:len(before)] == before
        assert after[0].change_type == "create"
        assert [v.version for v in after] == list(range(1, 64))

    def test_restore_version(self, store):
        store.add_fault_entry(fault(gate=4))
        store.update_fault_entry_with_history("1", {"gate_number": 9})
        assert store.restore_fault_version("1", 1)
        f = store.get_fault("1")
        assert f.gate_number == 4
        assert f.current_version == 3
        assert f.version_history[-1].change_type == "restore"
        assert not store.restore_fault_version("1", 42)

    def test_marked_fault_is_frozen(self, store):
        store.add_fault_entry(fault())
        assert store.mark_fault_for_deletion("1")
        f = store.get_fault("1")
        assert isinstance(f.deletion, MarkedForDeletion)
        assert f.deletion.by == "Timer A"
        assert not store.update_fault_entry_with_history("1", {"notes": "x"})
        assert store.pending_deletions() == [f]

    def test_reject_deletion(self, store):
        store.add_fault_entry(fault())
        store.mark_fault_for_deletion("1")
        assert store.reject_fault_deletion("1")
        f = store.get_fault("1")
        assert not f.marked_for_deletion
        assert f.version_history[-1].change_description == "Deletion rejected by Chief Judge"

    def test_approve_deletion(self, store):
        store.add_fault_entry(fault())
        assert store.approve_fault_deletion("1") is None
        store.mark_fault_for_deletion("1")
        approved = store.approve_fault_deletion("1")
        assert approved.deletion_approved_by == "Timer A"
        assert store.faults == []

    def test_sync_tracking(self, store):
        store.add_fault_entry(fault())
        assert len(store.unsynced_faults()) == 1
        store.mark_fault_synced("1")
        assert store.unsynced_faults() == []
        store.update_fault_entry_with_history("1", {"notes": "late"})
        assert len(store.unsynced_faults()) == 1

    def test_faults_for_bib(self, store):
        store.add_fault_entry(fault(1, bib="42"))
        store.add_fault_entry(fault(2, bib="7"))
        assert [f.id for f in store.faults_for_bib("42", 1)] == ["1"]

    def test_merge_cloud_faults(self, store):
        remote = fault(5).to_dict()
        remote.update(deviceId="judge-2", deviceName="Judge 2")
        assert store.merge_cloud_faults([remote]) == 1
        assert store.merge_cloud_faults([remote]) == 0

        newer = dict(remote, currentVersion=2, gateNumber=6)
        assert store.merge_cloud_faults([newer]) == 1
        assert store.get_fault("5", "judge-2").gate_number == 6

        assert store.remove_deleted_cloud_faults(["5:judge-2"]) == 1
        assert store.faults == []


def test_save_and_load(store, tmp_path):
    store.add_entry(entry(1))
    store.add_fault_entry(fault())
    store.mark_fault_synced("1")
    store.mark_fault_for_deletion("1")
    path = tmp_path / "store.json"
    store.save(path)

    loaded = LocalStore.load(path)
    assert loaded.device_id == "dev-a"
    assert loaded.race_id == "race-1"
    assert loaded.entries == store.entries
    assert loaded.get_fault("1").marked_for_deletion
    assert loaded.get_fault("1").version_history == store.get_fault("1").version_history
    assert loaded.unsynced_faults() == []
