"""Background timer that drives the sync client.

One asyncio task per terminal. Cycles run on the configured interval,
back off after failures, and can be requested early with :meth:`trigger`
(for example right after a local change is recorded).
"""

import asyncio
import logging

from .change_log import ChangeRecord
from .sync_client import SyncClient

logger = logging.getLogger(__name__)

# Ceiling for the failure backoff
MAX_BACKOFF_SECONDS = 3600


class SyncScheduler:
    """Runs sync cycles on a timer with an on-demand trigger."""

    def __init__(
        self,
        client: SyncClient,
        interval_seconds: float = 30,
        connectivity_check_seconds: float = 10,
    ):
        """Initialize the scheduler.

        Args:
            client: Sync client whose cycles are scheduled.
            interval_seconds: Seconds between cycles while healthy.
            connectivity_check_seconds: Seconds between probes while offline.
        """
        self.client = client
        self.interval_seconds = interval_seconds
        self.connectivity_check_seconds = connectivity_check_seconds

        self._task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._stopping = False
        self._cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop. A second call is a no-op."""
        if self.running:
            return

        self._stopping = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Sync scheduler started with {self.interval_seconds}s interval")

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the loop, letting an in-flight cycle finish.

        Args:
            timeout: Seconds to wait for the in-flight cycle; defaults to
                the client's cycle timeout plus a small margin. The task
                is cancelled only if this expires.
        """
        if self._task is None:
            return

        self._stopping = True
        if self._wake:
            self._wake.set()

        wait = timeout if timeout is not None else self.client.cycle_timeout + 5
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=wait)
        except asyncio.TimeoutError:
            logger.warning("Sync cycle did not finish in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._task = None
        logger.info("Sync scheduler stopped")

    def trigger(self) -> bool:
        """Request a cycle now.

        Returns:
            False if the request was dropped (cycle in flight or not running).
        """
        if not self.running or self._stopping:
            return False
        if self.client.in_flight:
            logger.debug("Sync trigger dropped, cycle in flight")
            return False

        self._wake.set()
        return True

    def on_local_change(self, change: ChangeRecord) -> None:
        """Change-listener hook: sync right away when the server is reachable."""
        if self.client.online:
            self.trigger()

    def reconfigure(self, interval_seconds: float) -> None:
        """Change the interval. Applies from the next wait."""
        logger.info(f"Sync interval changed {self.interval_seconds}s -> {interval_seconds}s")
        self.interval_seconds = interval_seconds

    def next_delay(self) -> float:
        """Seconds to wait before the next cycle."""
        failures = self.client.consecutive_failures
        if failures > 0:
            return min(self.interval_seconds * (2 ** failures), MAX_BACKOFF_SECONDS)
        if not self.client.online:
            return min(self.connectivity_check_seconds, self.interval_seconds)
        return self.interval_seconds

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.client.sync_now()
                self._cycles += 1
            except Exception as e:
                logger.error(f"Sync loop error: {e}", exc_info=True)

            if self._stopping:
                break

            wait_time = self.next_delay()
            if wait_time > self.interval_seconds:
                logger.debug(f"Backing off sync for {wait_time}s")

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=wait_time)
            except asyncio.TimeoutError:
                pass  # Normal timeout, next cycle
            self._wake.clear()

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "next_delay_seconds": self.next_delay(),
            "cycles": self._cycles,
        }
