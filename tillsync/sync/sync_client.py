"""Sync client for pushing queued changes to the gateway and pulling deltas.

Handles network synchronization with retry logic, batching and an
in-flight guard so that only one cycle runs per terminal at a time.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from ..time_utils import utcnow
from .change_log import ChangeLog, ChangeRecord

if TYPE_CHECKING:
    from ..terminal.local_store import LocalStore

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Where the client is in its cycle."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    BACKOFF = "backoff"  # Last cycle hit a transport failure


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some changes rejected by the server
    FAILED = "failed"
    OFFLINE = "offline"  # Server unreachable
    AUTH_FAILED = "auth_failed"
    SKIPPED = "skipped"  # A cycle was already in flight


# Statuses that end a cycle before the pull phase
_FATAL_PUSH_STATUSES = {SyncStatus.FAILED, SyncStatus.OFFLINE, SyncStatus.AUTH_FAILED}


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    changes_pushed: int = 0
    changes_failed: int = 0
    changes_pulled: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for synchronizing one terminal with the sync gateway.

    Supports:
    - Push: Send pending changes from the change log
    - Pull: Fetch rows changed since the stored watermark
    - Full cycle: push then pull, guarded and bounded by a timeout

    Uses exponential backoff for retries within a request. Transport
    failures leave changes pending; authentication failures halt the
    client until new credentials are supplied.
    """

    def __init__(
        self,
        change_log: ChangeLog,
        local_store: "LocalStore",
        server_url: str | None = None,
        api_key: str | None = None,
        store_id: str | None = None,
        batch_size: int = 50,
        max_retries: int = 3,
        timeout: float = 30.0,
        cycle_timeout: float = 120.0,
    ):
        """Initialize the sync client.

        Args:
            change_log: Queue of pending local changes.
            local_store: Local store that pulled rows are merged into.
            server_url: Base URL of the gateway (e.g., "http://hq:8000").
            api_key: Key presented to the gateway.
            store_id: Store this terminal syncs; defaults to the local store's.
            batch_size: Maximum changes per push.
            max_retries: Maximum attempts per request.
            timeout: Per-request timeout in seconds.
            cycle_timeout: Upper bound for one full push/pull cycle.
        """
        self.change_log = change_log
        self.local_store = local_store
        self.server_url = server_url
        self.api_key = api_key
        self.store_id = store_id or local_store.store_id
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.cycle_timeout = cycle_timeout

        self.state = SyncState.IDLE
        self._online = False
        self._in_flight = False
        self._auth_failed = False
        self._last_sync: datetime | None = None
        self._last_error: str | None = None
        self._consecutive_failures = 0
        self._inflight_batch: list[ChangeRecord] = []

    def _headers(self) -> dict[str, str]:
        if self.api_key:
            return {"X-API-Key": self.api_key}
        return {}

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
    ) -> tuple[Any, str | None, SyncStatus | None]:
        """Make HTTP request with exponential backoff retry.

        Server errors, connection errors and timeouts are retried; other
        client errors are returned immediately.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to server_url.
            json_data: Optional JSON body.

        Returns:
            Tuple of (response_data, error_message, failure_status).
            failure_status is None on success.
        """
        if not self.server_url:
            return None, "No server URL configured", SyncStatus.FAILED

        url = f"{self.server_url.rstrip('/')}{path}"
        backoff = 1.0
        failure = SyncStatus.FAILED

        async with httpx.AsyncClient(timeout=self.timeout, headers=self._headers()) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}", SyncStatus.FAILED

                    if 200 <= response.status_code < 300:
                        self._online = True
                        return response.json(), None, None

                    elif response.status_code in (401, 403):
                        return (
                            None,
                            f"HTTP {response.status_code}: {response.text}",
                            SyncStatus.AUTH_FAILED,
                        )

                    elif response.status_code >= 500:
                        # Server error, retry
                        failure = SyncStatus.FAILED
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return (
                            None,
                            f"HTTP {response.status_code}: {response.text}",
                            SyncStatus.FAILED,
                        )

                except httpx.ConnectError:
                    failure = SyncStatus.OFFLINE
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    failure = SyncStatus.OFFLINE
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except Exception as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e), SyncStatus.FAILED

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        if failure is SyncStatus.OFFLINE:
            self._online = False
        return None, f"Max retries ({self.max_retries}) exceeded", failure

    def _handle_failure(
        self,
        failure: SyncStatus,
        error: str,
        changes: list[ChangeRecord] | None = None,
    ) -> SyncResult:
        """Bookkeeping for a request that produced no usable response."""
        self._last_error = error

        if failure is SyncStatus.AUTH_FAILED:
            self._auth_failed = True
            self.state = SyncState.IDLE
            logger.error(f"Sync halted, server rejected credentials: {error}")
            return SyncResult(status=SyncStatus.AUTH_FAILED, error=error)

        if changes:
            self.change_log.record_attempt([c.id for c in changes], error)

        self._consecutive_failures += 1
        self.state = SyncState.BACKOFF
        return SyncResult(status=failure, error=error)

    async def push_changes(self) -> SyncResult:
        """Push one batch of pending changes.

        Changes the server reports in its errors list are marked failed;
        every other change in the batch is marked processed and removed.

        Returns:
            SyncResult with push statistics.
        """
        if not self.server_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No server URL configured",
            )

        changes = self.change_log.list_pending(limit=self.batch_size)
        if not changes:
            return SyncResult(
                status=SyncStatus.SUCCESS,
                changes_pushed=0,
                timestamp=utcnow(),
            )

        self._inflight_batch = changes
        self.state = SyncState.PUSHING
        payload = {
            "storeId": self.store_id,
            "changes": [c.to_wire() for c in changes],
        }

        data, error, failure = await self._request_with_retry(
            "POST", "/api/sync/push", payload
        )
        self._inflight_batch = []

        if error:
            return self._handle_failure(failure, error, changes)

        rejected: dict[str, str] = {}
        for item in (data.get("results") or {}).get("errors", []):
            change = item.get("change")
            if not isinstance(change, dict):
                continue
            rejected[str(change.get("changeId"))] = item.get("error") or "Rejected by server"

        pushed = 0
        for change in changes:
            reason = rejected.get(change.change_id)
            if reason is not None:
                self.change_log.mark_failed(change.id, reason)
                logger.warning(
                    f"Change {change.change_id} ({change.entity_type.value}/"
                    f"{change.record_id}) rejected: {reason}"
                )
            else:
                self.change_log.mark_processed(change.id)
                self.change_log.remove(change.id)
                pushed += 1

        return SyncResult(
            status=SyncStatus.PARTIAL if rejected else SyncStatus.SUCCESS,
            changes_pushed=pushed,
            changes_failed=len(changes) - pushed,
            timestamp=utcnow(),
        )

    async def pull_changes(self) -> SyncResult:
        """Pull rows changed since the stored watermark and merge them.

        The watermark advances to the server's as-of timestamp from the
        response, never to the local receipt time.

        Returns:
            SyncResult with pull statistics.
        """
        if not self.server_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No server URL configured",
            )

        self.state = SyncState.PULLING
        payload = {
            "storeId": self.store_id,
            "lastSyncTime": self.local_store.get_watermark(self.store_id),
        }

        data, error, failure = await self._request_with_retry(
            "POST", "/api/sync/pull", payload
        )

        if error:
            return self._handle_failure(failure, error)

        applied = self.local_store.merge_pull(data.get("changes") or {})

        server_time = data.get("timestamp")
        if server_time:
            try:
                self.local_store.set_watermark(server_time, self.store_id)
            except ValueError as e:
                logger.warning(f"Pull response timestamp {server_time!r} unusable: {e}")
        else:
            logger.warning("Pull response carried no timestamp, watermark unchanged")

        return SyncResult(
            status=SyncStatus.SUCCESS,
            changes_pulled=applied,
            timestamp=utcnow(),
        )

    async def _run_cycle(self) -> SyncResult:
        push_result = await self.push_changes()
        if push_result.status in _FATAL_PUSH_STATUSES:
            return push_result

        pull_result = await self.pull_changes()
        if pull_result.status is not SyncStatus.SUCCESS:
            pull_result.changes_pushed = push_result.changes_pushed
            pull_result.changes_failed = push_result.changes_failed
            return pull_result

        self.state = SyncState.IDLE
        self._consecutive_failures = 0
        self._last_error = None
        self._last_sync = utcnow()

        return SyncResult(
            status=push_result.status,
            changes_pushed=push_result.changes_pushed,
            changes_failed=push_result.changes_failed,
            changes_pulled=pull_result.changes_pulled,
            timestamp=self._last_sync,
        )

    async def sync_now(self) -> SyncResult:
        """Run one push/pull cycle.

        A call made while another cycle is in flight is dropped, not
        queued. The cycle is bounded by ``cycle_timeout`` so a stalled
        request always releases the guard.

        Returns:
            Combined SyncResult.
        """
        if self._auth_failed:
            return SyncResult(
                status=SyncStatus.AUTH_FAILED,
                error="Credentials rejected; waiting for new credentials",
            )

        if self._in_flight:
            logger.debug("Sync already in progress, trigger dropped")
            return SyncResult(status=SyncStatus.SKIPPED)

        self._in_flight = True
        try:
            if not self._online and not await self.check_connection():
                return SyncResult(status=SyncStatus.OFFLINE, error="Server unreachable")

            try:
                result = await asyncio.wait_for(self._run_cycle(), timeout=self.cycle_timeout)
            except asyncio.TimeoutError:
                error = f"Sync cycle timed out after {self.cycle_timeout}s"
                logger.warning(error)
                if self._inflight_batch:
                    self.change_log.record_attempt(
                        [c.id for c in self._inflight_batch], error
                    )
                    self._inflight_batch = []
                self._consecutive_failures += 1
                self._last_error = error
                self.state = SyncState.BACKOFF
                result = SyncResult(status=SyncStatus.FAILED, error=error)

            logger.info(
                f"Sync: {result.status.value}, "
                f"pushed={result.changes_pushed}, "
                f"failed={result.changes_failed}, "
                f"pulled={result.changes_pulled}"
            )
            return result
        finally:
            self._in_flight = False
            if self.state in (SyncState.PUSHING, SyncState.PULLING):
                self.state = SyncState.IDLE

    async def check_connection(self) -> bool:
        """Probe the gateway health endpoint and update the online flag.

        Returns:
            True if the server answered.
        """
        if not self.server_url:
            self._online = False
            return False

        url = f"{self.server_url.rstrip('/')}/api/health"
        try:
            async with httpx.AsyncClient(timeout=min(self.timeout, 5.0)) as client:
                response = await client.get(url)
            online = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            online = False

        if online != self._online:
            logger.info(f"Sync server {'reachable' if online else 'unreachable'} at {self.server_url}")
        self._online = online
        return online

    def update_credentials(self, api_key: str) -> None:
        """Replace the API key and lift an authentication halt."""
        self.api_key = api_key
        if self._auth_failed:
            logger.info("Credentials updated, sync resumed")
        self._auth_failed = False
        self._last_error = None
        self.state = SyncState.IDLE

    def set_server_url(self, url: str) -> None:
        self.server_url = url
        self._online = False
        logger.info(f"Server URL set to {url}")

    @property
    def online(self) -> bool:
        return self._online

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        log_stats = self.change_log.get_stats()

        return {
            "server_url": self.server_url,
            "store_id": self.store_id,
            "state": self.state.value,
            "online": self._online,
            "auth_failed": self._auth_failed,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "last_error": self._last_error,
            "consecutive_failures": self._consecutive_failures,
            "pending_changes": log_stats["pending_changes"],
            "failed_changes": log_stats["failed_changes"],
            "watermark": self.local_store.get_watermark(self.store_id),
        }
