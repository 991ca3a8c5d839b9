import pytest

from racesync.db import dispose_db, init_db, new_session


@pytest.fixture
def db(tmp_path):
    """Fresh sqlite file per test."""
    dispose_db()
    init_db(f"sqlite:///{tmp_path / 'racesync.db'}")
    yield
    dispose_db()


@pytest.fixture
def session(db):
    s = new_session()
    yield s
    s.close()


@pytest.fixture
def app(db):
    from racesync.main import app

    return app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


def make_entry(entry_id=1, bib="042", point="F", run=1, timestamp="2026-03-01T10:00:00.000Z", **extra):
    entry = {"id": entry_id, "bib": bib, "point": point, "run": run, "timestamp": timestamp}
    entry.update(extra)
    return entry


def make_fault(fault_id=1, bib="042", gate=4, fault_type="MG", **extra):
    fault = {
        "id": fault_id,
        "bib": bib,
        "run": 1,
        "gateNumber": gate,
        "faultType": fault_type,
        "timestamp": "2026-03-01T10:00:05.000Z",
    }
    fault.update(extra)
    return fault
