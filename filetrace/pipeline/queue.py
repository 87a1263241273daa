"""Hand-off queue between event source threads and the dispatch loop.

Producers run on OS-managed threads and enqueue without blocking; the
single consumer awaits records on the event loop. Records are moved onto
the loop with ``call_soon_threadsafe``, which keeps each producer's order.

The queue has no capacity limit. Depth, high-water mark and drop counters
make backpressure visible instead.
"""

import asyncio
import logging
import threading

from pydantic import BaseModel

from filetrace.schemas.telemetry import TelemetryRecord

logger = logging.getLogger(__name__)


class QueueStats(BaseModel):
    """Point-in-time counters for the event queue."""

    enqueued: int = 0
    dequeued: int = 0
    dropped: int = 0
    depth: int = 0
    high_water: int = 0


class EventQueue:
    """Multi-producer, single-consumer queue of TelemetryRecords.

    Usage::

        queue = EventQueue(asyncio.get_running_loop())
        queue.put_threadsafe(record)      # from any thread
        record = await queue.get()        # from the dispatch loop

    After ``close`` every further record is dropped and counted.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue: asyncio.Queue[TelemetryRecord] = asyncio.Queue()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._enqueued = 0
        self._dequeued = 0
        self._dropped = 0
        self._high_water = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Stop accepting records. Records already queued stay available."""
        self._closed.set()

    def put_threadsafe(self, record: TelemetryRecord) -> bool:
        """Enqueue *record* from any thread. Never blocks.

        Returns False if the record was dropped because the queue is closed.
        """
        if self._closed.is_set():
            self._count_drop()
            return False
        try:
            self._loop.call_soon_threadsafe(self._accept, record)
        except RuntimeError:
            # event loop already closed
            self._count_drop()
            return False
        return True

    def _accept(self, record: TelemetryRecord) -> None:
        if self._closed.is_set():
            self._count_drop()
            return
        self._queue.put_nowait(record)
        depth = self._queue.qsize()
        with self._lock:
            self._enqueued += 1
            if depth > self._high_water:
                self._high_water = depth

    def _count_drop(self) -> None:
        with self._lock:
            self._dropped += 1

    async def get(self) -> TelemetryRecord:
        """Wait for the next record. Cancelling the caller leaves the queue intact."""
        record = await self._queue.get()
        with self._lock:
            self._dequeued += 1
        return record

    def get_nowait(self) -> TelemetryRecord | None:
        """Return the next record, or None when the queue is empty."""
        try:
            record = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        with self._lock:
            self._dequeued += 1
        return record

    def qsize(self) -> int:
        return self._queue.qsize()

    def stats(self) -> QueueStats:
        with self._lock:
            return QueueStats(
                enqueued=self._enqueued,
                dequeued=self._dequeued,
                dropped=self._dropped,
                depth=self._queue.qsize(),
                high_water=self._high_water,
            )
