"""
Change notification channel between filesystem nodes and the sync manager.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


class ChangeKind(Enum):
    CREATE = "create"
    WRITE = "write"
    DELETE = "delete"
    MKDIR = "mkdir"
    RMDIR = "rmdir"


@dataclass(frozen=True)
class ChangeEvent:
    path: str
    kind: ChangeKind
    timestamp: float


class ChangeChannel:
    """
    Bounded queue of change events.
    Emitting never blocks: when the queue is full the newest event is dropped.
    The sync manager stages everything that changed in the working tree, so a
    dropped event only loses a liveness signal, never data.
    """
    queue: asyncio.Queue
    clock: Callable[[], float]
    dropped: int

    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], float] = time.monotonic):
        self.queue = asyncio.Queue(maxsize=capacity)
        self.clock = clock
        self.dropped = 0

    def emit(self, path: str, kind: ChangeKind) -> bool:
        event = ChangeEvent(path, kind, self.clock())
        logger.debug("NotifyChange: %s (%s)", path, kind.value)
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Change notification buffer is full, dropping change for %s", path)
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def get_nowait(self) -> Optional[ChangeEvent]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def __len__(self) -> int:
        return self.queue.qsize()
