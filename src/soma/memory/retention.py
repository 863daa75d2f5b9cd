"""Background retention sweep for the long-term store."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from ..errors import StorageError
from .models import PurgeResult

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from .store import MemoryStore

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


class RetentionSweeper:
    """Prunes messages and sessions older than the retention horizon.

    Started once by the service that owns it. After a warm-up delay it
    runs a single purge; with `interval_seconds` set it keeps sweeping on
    that period. The purge itself runs in a worker thread on its own
    database connection, so request handling is never blocked by it.
    """

    def __init__(
        self,
        store: MemoryStore,
        retention_days: float = 30,
        warmup_seconds: float = 5.0,
        interval_seconds: float | None = None,
        event_logger: JSONLLogger | None = None,
    ) -> None:
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")
        self.store = store
        self.retention_days = retention_days
        self.warmup_seconds = warmup_seconds
        self.interval_seconds = interval_seconds
        self.event_logger = event_logger
        self.last_result: PurgeResult | None = None
        self.runs = 0
        self._task: asyncio.Task | None = None
        self._started = False

    def horizon(self) -> int:
        """Cutoff timestamp in ms; anything strictly older is purged."""
        return self.store.now_ms() - int(self.retention_days * MS_PER_DAY)

    def sweep(self) -> PurgeResult | None:
        """Run one purge now.

        Returns:
            Deleted row counts, or None if the store failed.
        """
        horizon = self.horizon()
        start = time.time()
        try:
            result = self.store.purge_older_than(horizon)
        except StorageError as e:
            logger.warning("Retention sweep failed: %s", e)
            if self.event_logger:
                self.event_logger.log_retention_sweep(0, 0, horizon=horizon, error=str(e))
            return None
        duration_ms = (time.time() - start) * 1000

        self.runs += 1
        self.last_result = result
        logger.info(
            "Retention sweep: %d message(s), %d session(s) deleted",
            result.messages_deleted,
            result.sessions_deleted,
        )
        if self.event_logger:
            self.event_logger.log_retention_sweep(
                result.messages_deleted,
                result.sessions_deleted,
                horizon=horizon,
                duration_ms=duration_ms,
            )
        return result

    async def _run(self) -> None:
        """Background task: warm up, sweep, and optionally repeat."""
        try:
            await asyncio.sleep(self.warmup_seconds)
            while True:
                await asyncio.to_thread(self.sweep)
                if not self.interval_seconds:
                    break
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the background sweep on the running event loop.

        Only the first call schedules anything; later calls are no-ops even
        after the one-shot sweep has finished.
        """
        if self._started:
            return
        self._started = True
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the background sweep if it is still pending."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
