"""Tests for the entries endpoints of the coordinator."""

import pytest

pytest.importorskip("fastapi")

from racesync import presence, services
from racesync.settings import settings
from racesync.utils import now_ms

from conftest import make_entry

URL = "/api/v1/sync"


def post_entry(client, race_id, entry, device_id="dev-a", device_name="Timer A"):
    return client.post(
        URL, params={"raceId": race_id}, json={"entry": entry, "deviceId": device_id, "deviceName": device_name}
    )


class TestSubmit:
    def test_submit_and_read_back(self, client):
        r = post_entry(client, "race-1", make_entry())
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["isDuplicate"] is False
        assert body["crossDeviceDuplicate"] is None
        assert body["deviceCount"] == 1
        assert body["highestBib"] == 42

        stored = body["entries"][0]
        assert stored["id"] == "1"
        assert stored["deviceId"] == "dev-a"
        assert stored["deviceName"] == "Timer A"
        assert stored["status"] == "ok"
        assert isinstance(stored["syncedAt"], int)

        got = client.get(URL, params={"raceId": "race-1"}).json()
        assert got["total"] == 1
        assert got["entries"] == body["entries"]
        assert got["deletedIds"] == []

    def test_replay_is_idempotent(self, client):
        first = post_entry(client, "race-1", make_entry()).json()
        second = post_entry(client, "race-1", make_entry()).json()
        assert second["success"] is True
        assert second["isDuplicate"] is True
        assert len(second["entries"]) == 1
        assert second["entries"] == first["entries"]

    def test_same_id_from_other_device_is_separate(self, client):
        post_entry(client, "race-1", make_entry(bib="1"), device_id="dev-a")
        body = post_entry(client, "race-1", make_entry(bib="2"), device_id="dev-b").json()
        assert body["isDuplicate"] is False
        assert len(body["entries"]) == 2

    def test_cross_device_duplicate_is_flagged_and_kept(self, client):
        post_entry(client, "race-1", make_entry(entry_id=1), device_id="dev-a", device_name="Finish A")
        body = post_entry(client, "race-1", make_entry(entry_id=9), device_id="dev-b", device_name="Finish B").json()

        dup = body["crossDeviceDuplicate"]
        assert dup["deviceId"] == "dev-a"
        assert dup["deviceName"] == "Finish A"
        assert dup["bib"] == "042"
        assert dup["point"] == "F"
        assert dup["run"] == 1
        assert len(body["entries"]) == 2

    def test_no_duplicate_across_runs_points_or_blank_bibs(self, client):
        post_entry(client, "race-1", make_entry(entry_id=1, run=1), device_id="dev-a")
        assert post_entry(client, "race-1", make_entry(entry_id=2, run=2), device_id="dev-b").json()["crossDeviceDuplicate"] is None
        assert post_entry(client, "race-1", make_entry(entry_id=3, point="S"), device_id="dev-b").json()["crossDeviceDuplicate"] is None

        post_entry(client, "race-2", make_entry(entry_id=1, bib=""), device_id="dev-a")
        assert post_entry(client, "race-2", make_entry(entry_id=2, bib=""), device_id="dev-b").json()["crossDeviceDuplicate"] is None

    def test_race_id_is_case_insensitive(self, client):
        post_entry(client, "Race-ONE", make_entry())
        got = client.get(URL, params={"raceId": "race-one"}).json()
        assert len(got["entries"]) == 1

    def test_highest_bib_is_monotonic(self, client):
        for i, bib in enumerate(["005", "010", "003"], start=1):
            body = post_entry(client, "race-1", make_entry(entry_id=i, bib=bib)).json()
        assert body["highestBib"] == 10
        assert client.get(URL, params={"raceId": "race-1"}).json()["highestBib"] == 10

    def test_capacity(self, client, monkeypatch):
        monkeypatch.setattr(settings, "RACESYNC_MAX_ENTRIES_PER_RACE", 2)
        post_entry(client, "race-1", make_entry(entry_id=1))
        post_entry(client, "race-1", make_entry(entry_id=2))
        r = post_entry(client, "race-1", make_entry(entry_id=3))
        assert r.status_code == 400
        assert "limit" in r.json()["error"]
        assert len(client.get(URL, params={"raceId": "race-1"}).json()["entries"]) == 2

    def test_photo_size_cap(self, client, monkeypatch):
        monkeypatch.setattr(settings, "RACESYNC_MAX_PHOTO_CHARS", 10)
        small = post_entry(client, "race-1", make_entry(entry_id=1, photo="abcde")).json()
        big = post_entry(client, "race-1", make_entry(entry_id=2, photo="x" * 11)).json()

        assert small["photoSkipped"] is False
        assert big["photoSkipped"] is True
        by_id = {e["id"]: e for e in big["entries"]}
        assert by_id["1"]["photo"] == "abcde"
        assert "photo" not in by_id["2"]

    def test_free_text_is_sanitized(self, client):
        body = post_entry(client, "race-1", make_entry(bib="<1>"), device_name="<b>Timer</b>").json()
        assert body["entries"][0]["deviceName"] == "bTimer/b"
        assert body["entries"][0]["bib"] == "1"

    def test_invalid_entry(self, client):
        r = post_entry(client, "race-1", make_entry(point="X"))
        assert r.status_code == 400
        assert r.json()["error"].startswith("Invalid entry")

    def test_missing_entry(self, client):
        r = client.post(URL, params={"raceId": "race-1"}, json={"deviceId": "dev-a"})
        assert r.status_code == 400
        assert r.json()["error"] == "entry is required"


class TestRead:
    def test_race_id_required(self, client):
        r = client.get(URL)
        assert r.status_code == 400
        assert r.json()["error"] == "raceId is required"

    def test_bad_race_id(self, client):
        r = client.get(URL, params={"raceId": "no spaces"})
        assert r.status_code == 400
        assert "Invalid raceId format" in r.json()["error"]

    def test_unknown_race_is_empty(self, client):
        body = client.get(URL, params={"raceId": "nothing-here"}).json()
        assert body["entries"] == []
        assert body["lastUpdated"] is None
        assert body["highestBib"] == 0

    def test_check_only(self, client):
        assert client.get(URL, params={"raceId": "race-1", "checkOnly": "true"}).json() == {
            "exists": False,
            "entryCount": 0,
        }
        post_entry(client, "race-1", make_entry())
        assert client.get(URL, params={"raceId": "race-1", "checkOnly": "true"}).json() == {
            "exists": True,
            "entryCount": 1,
        }

    def test_pagination(self, client):
        for i in range(1, 6):
            post_entry(client, "race-1", make_entry(entry_id=i, bib=str(i)))
        body = client.get(URL, params={"raceId": "race-1", "offset": 2, "limit": 2}).json()
        assert [e["id"] for e in body["entries"]] == ["3", "4"]
        assert body["pagination"] == {"offset": 2, "limit": 2, "total": 5, "hasMore": True}

    def test_poll_registers_device(self, client):
        post_entry(client, "race-1", make_entry(), device_id="dev-a")
        body = client.get(URL, params={"raceId": "race-1", "deviceId": "dev-b", "deviceName": "Start"}).json()
        assert body["deviceCount"] == 2

    def test_stale_devices_are_evicted(self, client, session):
        presence.record_heartbeat(session, "race-1", "dev-old", "Old", now=now_ms() - 31_000)
        presence.record_heartbeat(session, "race-1", "dev-new", "New")
        body = client.get(URL, params={"raceId": "race-1"}).json()
        assert body["deviceCount"] == 1
        assert [hb.device_id for hb in presence.active_devices(session, "race-1")] == ["dev-new"]

    def test_security_headers(self, client):
        r = client.get(URL, params={"raceId": "race-1"})
        assert r.headers["X-Content-Type-Options"] == "nosniff"
        assert r.headers["X-Frame-Options"] == "DENY"

    def test_unsupported_method(self, client):
        r = client.put(URL, params={"raceId": "race-1"}, json={})
        assert r.status_code == 405
        assert r.json() == {"error": "Method not allowed"}


class TestDelete:
    def test_delete_entry_records_deleted_key(self, client):
        post_entry(client, "race-1", make_entry(entry_id=1), device_id="dev-a")
        post_entry(client, "race-1", make_entry(entry_id=2, bib="7"), device_id="dev-a")

        r = client.request("DELETE", URL, params={"raceId": "race-1"}, json={"entryId": 1, "deviceId": "dev-a"})
        assert r.status_code == 200
        assert r.json()["deleted"] is True

        body = client.get(URL, params={"raceId": "race-1"}).json()
        assert [e["id"] for e in body["entries"]] == ["2"]
        assert body["deletedIds"] == ["1:dev-a"]

    def test_delete_only_matches_the_given_device(self, client):
        post_entry(client, "race-1", make_entry(entry_id=1), device_id="dev-a")
        post_entry(client, "race-1", make_entry(entry_id=1, bib="7"), device_id="dev-b")
        client.request("DELETE", URL, params={"raceId": "race-1"}, json={"entryId": 1, "deviceId": "dev-b"})
        body = client.get(URL, params={"raceId": "race-1"}).json()
        assert [e["deviceId"] for e in body["entries"]] == ["dev-a"]

    def test_delete_missing_entry(self, client):
        r = client.request("DELETE", URL, params={"raceId": "race-1"}, json={"entryId": 99, "deviceId": "dev-a"})
        assert r.status_code == 200
        assert r.json()["deleted"] is False

    def test_entry_id_required(self, client):
        r = client.request("DELETE", URL, params={"raceId": "race-1"}, json={"deviceId": "dev-a"})
        assert r.status_code == 400
        assert r.json()["error"] == "entryId is required"


class TestTombstone:
    def test_deleted_race_answers_with_tombstone(self, client, session):
        post_entry(client, "race-1", make_entry())
        services.delete_race(session, "race-1")

        got = client.get(URL, params={"raceId": "race-1"}).json()
        assert got["deleted"] is True
        assert got["message"] == "Race deleted by administrator"
        assert isinstance(got["deletedAt"], int)

        posted = post_entry(client, "race-1", make_entry(entry_id=2)).json()
        assert posted["deleted"] is True

    def test_purge_expired(self, session, monkeypatch):
        services.submit_entry(session, "race-1", make_entry(), "dev-a", "A")
        monkeypatch.setattr(settings, "RACESYNC_RACE_TTL_SECONDS", -1)
        services.submit_entry(session, "race-2", make_entry(), "dev-a", "A")
        assert services.purge_expired(session) > 0
        assert services.check_race_exists(session, "race-2")["exists"] is False
        assert services.check_race_exists(session, "race-1")["exists"] is True
