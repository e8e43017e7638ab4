"""
Debounced commit-and-push of working tree changes.
Change events mark the manager dirty; once no event has arrived for the
quiescence window a single cycle commits everything and pushes it.
"""
import asyncio
import logging
from typing import Callable, Optional

from serde import serde

from gitmount.gitsync.changes import ChangeChannel, ChangeEvent
from gitmount.gitsync.repository import GitRepository, PermanentSyncError, SyncError

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 1.0
DEFAULT_QUIESCENCE = 2.0
DEFAULT_MAX_RETRIES = 5


@serde
class SyncStatus:
    dirty: bool
    suspended: bool
    consecutive_failures: int
    cycles: int
    pending_events: int
    dropped_events: int
    last_change_time: Optional[float]
    last_sync_time: Optional[float]
    last_error: Optional[str]


class SyncManager:
    """
    Consumes change events and schedules sync cycles.
    The lock is held while ingesting events and for the whole of a cycle, so
    an event arriving mid-cycle is never lost to the cycle's completion.
    """
    repository: GitRepository
    changes: ChangeChannel
    lock: asyncio.Lock
    dirty: bool
    suspended: bool
    consecutive_failures: int
    cycles: int

    def __init__(self, repository: GitRepository, changes: ChangeChannel,
                 period: float = DEFAULT_PERIOD, quiescence: float = DEFAULT_QUIESCENCE,
                 max_retries: int = DEFAULT_MAX_RETRIES, clock: Optional[Callable[[], float]] = None):
        self.repository = repository
        self.changes = changes
        self.period = period
        self.quiescence = quiescence
        self.max_retries = max_retries
        # Event timestamps come from the channel clock, so share it
        self.clock = clock or changes.clock
        self.lock = asyncio.Lock()
        self.dirty = False
        self.suspended = False
        self.consecutive_failures = 0
        self.cycles = 0
        self.last_change_time: Optional[float] = None
        self.last_sync_time: Optional[float] = None
        self.last_error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def ingest(self, event: ChangeEvent) -> None:
        """Mark dirty and restart the quiescence window. Caller holds the lock."""
        self.dirty = True
        self.last_change_time = event.timestamp
        if self.suspended:
            logger.info("Change to %s received, resuming sync", event.path)
        self.suspended = False
        self.consecutive_failures = 0

    async def consume(self, event: ChangeEvent) -> None:
        async with self.lock:
            self.ingest(event)

    def _drain(self) -> int:
        count = 0
        while True:
            event = self.changes.get_nowait()
            if event is None:
                return count
            self.ingest(event)
            count += 1

    def should_sync(self) -> bool:
        if not self.dirty or self.suspended or self.last_change_time is None:
            return False
        return self.clock() - self.last_change_time >= self.quiescence

    async def tick(self) -> bool:
        """
        Run one cycle if the tree is dirty and quiescent.

        Returns:
            True if a cycle ran and succeeded
        """
        async with self.lock:
            self._drain()
            if not self.should_sync():
                return False
            return await self._cycle()

    async def sync_now(self) -> bool:
        """Force a cycle regardless of the debounce window or suspension."""
        async with self.lock:
            self._drain()
            self.suspended = False
            self.consecutive_failures = 0
            return await self._cycle()

    async def _cycle(self) -> bool:
        logger.info("Starting sync cycle")
        try:
            # Staged on the event loop: no flush can rewrite the working tree mid-stage
            oid = self.repository.commit_all()
            await asyncio.to_thread(self.repository.push)
        except PermanentSyncError as err:
            self.consecutive_failures += 1
            self.last_error = str(err)
            self.suspended = True
            logger.error("Sync failed, suspending retries until the next change: %s", err)
            return False
        except SyncError as err:
            self.consecutive_failures += 1
            self.last_error = str(err)
            if self.consecutive_failures >= self.max_retries:
                self.suspended = True
                logger.error("Sync failed %d times in a row, suspending retries until the next change: %s",
                             self.consecutive_failures, err)
            else:
                logger.error("Sync failed (attempt %d of %d), will retry: %s",
                             self.consecutive_failures, self.max_retries, err)
            return False

        self.dirty = False
        self.consecutive_failures = 0
        self.last_error = None
        self.cycles += 1
        self.last_sync_time = self.clock()
        if oid is None:
            logger.info("Sync cycle complete, nothing new to commit")
        else:
            logger.info("Sync cycle complete, pushed commit %s", oid)
        return True

    async def _consume_loop(self) -> None:
        while True:
            event = await self.changes.get()
            await self.consume(event)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.period)
            try:
                await self.tick()
            except Exception:
                logger.exception("Unexpected error in sync loop")

    async def run(self) -> None:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._consume_loop())
            tg.create_task(self._tick_loop())

    async def start(self) -> None:
        """Start consuming events and ticking in the background."""
        if self._task is None:
            logger.info("Sync manager started (period %.1fs, quiescence %.1fs)", self.period, self.quiescence)
            self._task = asyncio.create_task(self.run())

    async def stop(self, final_flush: bool = True) -> None:
        """Stop the background task, then sync whatever is still pending."""
        async with self.lock:
            # Taken under the lock so an in-flight cycle completes first
            if self._task is not None:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None
            if not final_flush:
                return
            self._drain()
            if self.dirty:
                logger.info("Running final sync before shutdown")
                await self._cycle()

    def status(self) -> SyncStatus:
        return SyncStatus(
            dirty=self.dirty,
            suspended=self.suspended,
            consecutive_failures=self.consecutive_failures,
            cycles=self.cycles,
            pending_events=len(self.changes),
            dropped_events=self.changes.dropped,
            last_change_time=self.last_change_time,
            last_sync_time=self.last_sync_time,
            last_error=self.last_error,
        )
