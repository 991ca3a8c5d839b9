"""HTTP client that keeps a LocalStore in step with the coordinator.

Network failures never reach the caller: they are logged, reflected in the
store's sync status, and retried implicitly by the next poll.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from .local_store import Entry, FaultEntry, LocalStore, SyncStatus

logger = logging.getLogger(__name__)

POLL_INTERVAL_NORMAL = 15.0
POLL_INTERVAL_ERROR = 30.0
POLL_INTERVALS_IDLE = (15.0, 20.0, 30.0, 45.0, 60.0)
IDLE_THRESHOLD = 6  # polls without changes before slowing down
ERROR_THRESHOLD = 3  # consecutive failures before switching to the error interval
# 4xx answers that a retry of the same payload could still turn into a 200
RETRYABLE_CLIENT_ERRORS = frozenset({401, 408, 409, 429})
FETCH_TIMEOUT = 8.0

SYNC_PATH = "/api/v1/sync"
FAULTS_PATH = "/api/v1/faults"

Callback = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class PollResult:
    """Outcome of one poll."""

    ok: bool
    has_changes: bool = False
    added: int = 0
    removed: int = 0
    race_deleted: bool = False
    error: Optional[str] = None


class PollScheduler:
    """Adaptive poll interval.

    Fast while data is changing, stepping through POLL_INTERVALS_IDLE once
    IDLE_THRESHOLD polls in a row brought nothing new, and POLL_INTERVAL_ERROR
    after repeated failures.
    """

    def __init__(self):
        self.consecutive_errors = 0
        self.consecutive_no_changes = 0
        self.idle_level = 0

    @property
    def interval(self) -> float:
        if self.consecutive_errors >= ERROR_THRESHOLD:
            return POLL_INTERVAL_ERROR
        if self.consecutive_no_changes < IDLE_THRESHOLD:
            return POLL_INTERVAL_NORMAL
        return POLL_INTERVALS_IDLE[self.idle_level]

    def record(self, success: bool, has_changes: bool = False) -> float:
        if not success:
            self.consecutive_errors += 1
            return self.interval

        self.consecutive_errors = 0
        if has_changes:
            self.reset()
        else:
            self.consecutive_no_changes += 1
            if self.consecutive_no_changes >= IDLE_THRESHOLD:
                self.idle_level = min(self.idle_level + 1, len(POLL_INTERVALS_IDLE) - 1)
        return self.interval

    def reset(self) -> None:
        self.consecutive_no_changes = 0
        self.idle_level = 0


async def _fire(callback: Optional[Callback], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except Exception as e:
        logger.error(f"Sync callback failed: {e}")


class SyncClient:
    """Pushes this device's records and pulls everyone else's.

    Args:
        store: Local store to keep in sync; its race_id, device_id and
            device_name identify the caller.
        base_url: Coordinator base URL (e.g. "http://timing.local:8000").
        token: Bearer token from /api/v1/auth/token, if the race has a PIN.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass an ASGITransport).
        sync_faults: Also push/pull fault records on every poll.
        on_entry_rejected: Called with (entry, error) when the coordinator
            refuses an entry with a non-retryable 4xx. The entry is then kept
            out of later polls until it changes locally.
    """

    def __init__(
        self,
        store: LocalStore,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = FETCH_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_faults: bool = False,
        on_cross_device_duplicate: Optional[Callback] = None,
        on_photo_skipped: Optional[Callback] = None,
        on_race_deleted: Optional[Callback] = None,
        on_auth_expired: Optional[Callback] = None,
        on_entry_rejected: Optional[Callback] = None,
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.transport = transport
        self.sync_faults = sync_faults
        self.on_cross_device_duplicate = on_cross_device_duplicate
        self.on_photo_skipped = on_photo_skipped
        self.on_race_deleted = on_race_deleted
        self.on_auth_expired = on_auth_expired
        self.on_entry_rejected = on_entry_rejected
        # entries the coordinator refused outright; not re-sent until edited
        self.rejected: dict[tuple[str, str], Entry] = {}
        self.scheduler = PollScheduler()
        self.last_updated: Optional[int] = None

    # ----- transport -----

    def _headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_data: Any = None,
    ) -> tuple[Optional[httpx.Response], Optional[str]]:
        """Send one request.

        Returns:
            Tuple of (response, error_message). Any response, including 4xx/5xx,
            comes back as the first item; transport failures as the second.
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(
                    method, path, params=params, json=json_data, headers=self._headers()
                )
            return response, None
        except httpx.TimeoutException:
            logger.warning(f"{method} {path} timed out")
            return None, "timeout"
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            return None, f"network: {e}"

    async def _handle_unauthorized(self, response: httpx.Response) -> None:
        data = _json(response)
        if data.get("expired"):
            logger.info("Auth token expired; re-authentication needed")
            self.token = None
            self.store.sync_status = SyncStatus.DISCONNECTED
            await _fire(self.on_auth_expired, data)

    def _set_failure_status(self, response: Optional[httpx.Response], error: Optional[str]) -> None:
        if response is None and error and error.startswith("network"):
            self.store.sync_status = SyncStatus.OFFLINE
        else:
            self.store.sync_status = SyncStatus.ERROR

    def _race_params(self) -> dict:
        return {"raceId": self.store.race_id}

    # ----- entries -----

    async def push_entry(self, entry: Entry) -> bool:
        """POST one entry. Returns False on any failure; the next poll retries."""
        if not self.store.race_id:
            return False
        response, error = await self._request(
            "POST",
            SYNC_PATH,
            params=self._race_params(),
            json_data={
                "entry": entry.to_dict(),
                "deviceId": self.store.device_id,
                "deviceName": self.store.device_name,
            },
        )
        if response is None:
            return False
        if response.status_code == 401:
            await self._handle_unauthorized(response)
            return False
        if response.status_code != 200:
            error = _json(response).get("error")
            logger.warning(f"Entry {entry.id} rejected: HTTP {response.status_code} {error}")
            if 400 <= response.status_code < 500 and response.status_code not in RETRYABLE_CLIENT_ERRORS:
                self.rejected[entry.key] = entry
                await _fire(self.on_entry_rejected, entry, error)
            return False

        self.rejected.pop(entry.key, None)
        data = _json(response)
        if data.get("deleted"):
            await self._race_deleted(data)
            return False

        synced_at = None
        for e in data.get("entries") or []:
            if str(e.get("id")) == entry.id and e.get("deviceId") == self.store.device_id:
                synced_at = e.get("syncedAt")
                break
        self.store.mark_entry_synced(entry.id, synced_at)
        self.store.update_cloud_aggregates(data.get("deviceCount"), data.get("highestBib"))

        if data.get("photoSkipped"):
            await _fire(self.on_photo_skipped, entry)
        if data.get("crossDeviceDuplicate"):
            await _fire(self.on_cross_device_duplicate, data["crossDeviceDuplicate"])

        self.scheduler.reset()
        return True

    async def push_unsynced(self) -> int:
        pushed = 0
        for entry in self.store.unsynced_entries():
            if self.rejected.get(entry.key) == entry:
                continue
            if await self.push_entry(entry):
                pushed += 1
        return pushed

    async def poll(self) -> PollResult:
        """Re-push unsynced entries, then pull the race and merge it into the store."""
        if not self.store.race_id:
            return PollResult(ok=False, error="No race selected")

        if self.store.sync_status in (SyncStatus.CONNECTED, SyncStatus.CONNECTING):
            self.store.sync_status = SyncStatus.SYNCING

        await self.push_unsynced()

        response, error = await self._request(
            "GET",
            SYNC_PATH,
            params={
                "raceId": self.store.race_id,
                "deviceId": self.store.device_id,
                "deviceName": self.store.device_name,
            },
        )
        if response is not None and response.status_code == 401:
            await self._handle_unauthorized(response)
            self.scheduler.record(False)
            return PollResult(ok=False, error="unauthorized")
        if response is None or response.status_code != 200:
            self._set_failure_status(response, error)
            self.scheduler.record(False)
            return PollResult(ok=False, error=error or f"HTTP {response.status_code}")

        data = _json(response)
        if data.get("deleted"):
            await self._race_deleted(data)
            return PollResult(ok=True, race_deleted=True)

        self.store.sync_status = SyncStatus.CONNECTED
        self.store.update_cloud_aggregates(data.get("deviceCount"), data.get("highestBib"))

        deleted_ids = [i for i in data.get("deletedIds") or [] if isinstance(i, str) and i]
        removed = self.store.remove_deleted_cloud_entries(deleted_ids)
        added = self.store.merge_cloud_entries(data.get("entries") or [], deleted_ids)
        self.last_updated = data.get("lastUpdated")

        has_changes = bool(added or removed)
        if self.sync_faults:
            has_changes = await self.sync_fault_records() or has_changes

        self.scheduler.record(True, has_changes)
        if added:
            logger.info(f"Merged {added} entries from other devices")
        return PollResult(ok=True, has_changes=has_changes, added=added, removed=removed)

    async def check_race_exists(self) -> Optional[dict]:
        """{"exists": bool, "entryCount": int}, or None when the coordinator is unreachable."""
        response, _ = await self._request(
            "GET", SYNC_PATH, params={"raceId": self.store.race_id, "checkOnly": "true"}
        )
        if response is None or response.status_code != 200:
            return None
        data = _json(response)
        return {"exists": bool(data.get("exists")), "entryCount": data.get("entryCount") or 0}

    async def delete_entry_from_cloud(self, entry_id: str, device_id: Optional[str] = None) -> bool:
        """Remote follow-up to a local undo or delete. Best effort."""
        response, _ = await self._request(
            "DELETE",
            SYNC_PATH,
            params=self._race_params(),
            json_data={
                "entryId": str(entry_id),
                "deviceId": device_id or self.store.device_id,
                "deviceName": self.store.device_name,
            },
        )
        if response is not None and response.status_code == 401:
            await self._handle_unauthorized(response)
        return response is not None and response.status_code == 200

    # ----- faults -----

    async def push_fault(self, fault: FaultEntry, is_ready: bool = False, first_gate_color: str = "red") -> bool:
        if not self.store.race_id:
            return False
        response, _ = await self._request(
            "POST",
            FAULTS_PATH,
            params=self._race_params(),
            json_data={
                "fault": fault.to_dict(),
                "deviceId": self.store.device_id,
                "deviceName": self.store.device_name,
                "gateRange": list(fault.gate_range) if fault.gate_range else None,
                "isReady": is_ready,
                "firstGateColor": first_gate_color,
            },
        )
        if response is None:
            return False
        if response.status_code == 401:
            await self._handle_unauthorized(response)
            return False
        if response.status_code != 200:
            logger.warning(f"Fault {fault.id} rejected: HTTP {response.status_code} {_json(response).get('error')}")
            return False
        self.store.mark_fault_synced(fault.id, fault.current_version)
        return True

    async def fetch_faults(self) -> Optional[int]:
        """Pull the race's faults into the store. Returns the number of local changes, None on failure."""
        response, _ = await self._request("GET", FAULTS_PATH, params=self._race_params())
        if response is None or response.status_code != 200:
            if response is not None and response.status_code == 401:
                await self._handle_unauthorized(response)
            return None
        data = _json(response)
        deleted_ids = [i for i in data.get("deletedIds") or [] if isinstance(i, str) and i]
        removed = self.store.remove_deleted_cloud_faults(deleted_ids)
        touched = self.store.merge_cloud_faults(data.get("faults") or [], deleted_ids)
        return removed + touched

    async def sync_fault_records(self) -> bool:
        for fault in self.store.unsynced_faults():
            await self.push_fault(fault)
        changes = await self.fetch_faults()
        return bool(changes)

    async def delete_fault_from_cloud(
        self, fault_id: str, device_id: Optional[str] = None, approved_by: Optional[str] = None
    ) -> bool:
        response, _ = await self._request(
            "DELETE",
            FAULTS_PATH,
            params=self._race_params(),
            json_data={
                "faultId": str(fault_id),
                "deviceId": device_id or "",
                "deviceName": self.store.device_name,
                "approvedBy": approved_by or self.store.device_name,
            },
        )
        if response is not None and response.status_code == 401:
            await self._handle_unauthorized(response)
        return response is not None and response.status_code == 200

    # ----- loop -----

    async def _race_deleted(self, data: dict) -> None:
        logger.info(f"Race {self.store.race_id} was deleted: {data.get('message')}")
        self.store.sync_status = SyncStatus.DISCONNECTED
        await _fire(self.on_race_deleted, data)

    async def sync_loop(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll until `stop_event` is set, waiting the scheduler's interval in between."""
        stop_event = stop_event or asyncio.Event()
        self.store.sync_status = SyncStatus.CONNECTING
        logger.info(f"Starting sync loop for race {self.store.race_id}")

        while not stop_event.is_set():
            try:
                result = await self.poll()
                if result.race_deleted:
                    break
            except Exception as e:
                logger.error(f"Sync loop error: {e}")
                self.scheduler.record(False)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.scheduler.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync loop stopped")


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
