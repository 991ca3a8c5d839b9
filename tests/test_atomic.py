"""Tests for compare-and-swap document updates and concurrent admission."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from racesync import services
from racesync.atomic import ENTRIES, Document, Outcome, atomic_update, load_document
from racesync.db import new_session
from racesync.errors import ConflictError
from racesync.settings import settings

from conftest import make_entry


def _append(item):
    def apply(doc):
        doc.items.append(item)
        return Outcome(len(doc.items), document=Document(items=doc.items, last_updated=1))

    return apply


class TestAtomicUpdate:
    def test_creates_document(self, session):
        assert load_document(session, "r1", ENTRIES) is None
        count = atomic_update(session, "r1", ENTRIES, _append({"id": "a"}), "test")
        assert count == 1
        assert load_document(session, "r1", ENTRIES).items == [{"id": "a"}]

    def test_abort_leaves_document_untouched(self, session):
        atomic_update(session, "r1", ENTRIES, _append({"id": "a"}), "test")
        result = atomic_update(session, "r1", ENTRIES, lambda doc: Outcome("skipped", abort=True), "test")
        assert result == "skipped"
        assert load_document(session, "r1", ENTRIES).items == [{"id": "a"}]

    def test_exhausted_retries_raise_conflict(self, session):
        other = new_session()
        try:
            atomic_update(other, "r1", ENTRIES, _append({"id": "seed"}), "seed")
            calls = []

            def apply(doc):
                calls.append(1)
                # a competing writer commits between our read and our write
                atomic_update(other, "r1", ENTRIES, _append({"id": f"other-{len(calls)}"}), "competitor")
                return Outcome("mine", document=Document(items=doc.items + [{"id": "mine"}], last_updated=2))

            with pytest.raises(ConflictError, match="Concurrent modification conflict"):
                atomic_update(session, "r1", ENTRIES, apply, "test", max_retries=3)

            assert len(calls) == 3
            ids = [i["id"] for i in load_document(session, "r1", ENTRIES).items]
            assert ids == ["seed", "other-1", "other-2", "other-3"]
        finally:
            other.close()


class TestConcurrentWriters:
    def test_no_lost_updates(self, db, monkeypatch):
        monkeypatch.setattr(settings, "RACESYNC_MAX_ATOMIC_RETRIES", 50)
        writers = 20

        def submit(i):
            s = new_session()
            try:
                services.submit_entry(s, "race-1", make_entry(entry_id=i, bib=str(i)), f"dev-{i}", f"Timer {i}")
                return True
            except ConflictError:
                return False
            finally:
                s.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(submit, range(1, writers + 1)))

        accepted = sum(results)
        s = new_session()
        try:
            stored = services.get_entries(s, "race-1")["entries"]
        finally:
            s.close()
        # every accepted write is present exactly once
        assert len(stored) == accepted
        assert len({(e["id"], e["deviceId"]) for e in stored}) == accepted
        assert accepted > 0

    def test_highest_bib_never_decreases(self, db):
        def bump(bib):
            s = new_session()
            try:
                services.update_highest_bib(s, "race-1", str(bib))
            finally:
                s.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(bump, [5, 40, 12, 3, 39, 7, 40, 1]))

        s = new_session()
        try:
            assert services.get_highest_bib(s, "race-1") == 40
        finally:
            s.close()
