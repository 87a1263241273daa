"""Dispatch loop: drain the event queue into the telemetry sink.

A single consumer. Each iteration takes one record, logs it at debug level
and sends it as a ``FileAccess`` event. When at least ``metric_interval``
seconds have passed since the last report, the cumulative events-lost
counter is sent first, inline with the record, so metric reports never race
record sends.
"""

import asyncio
import logging
import time
from collections.abc import Callable

from filetrace.integrations.sink import (
    EVENTS_LOST_METRIC,
    FILE_ACCESS_EVENT,
    TelemetrySink,
    report_exception,
)
from filetrace.pipeline.queue import EventQueue
from filetrace.schemas.telemetry import TelemetryRecord

logger = logging.getLogger(__name__)

DEFAULT_METRIC_INTERVAL = 60.0


class DispatchLoop:
    """Forwards queued TelemetryRecords to the sink until cancelled."""

    def __init__(
        self,
        queue: EventQueue,
        sink: TelemetrySink,
        *,
        events_lost: Callable[[], int],
        metric_interval: float = DEFAULT_METRIC_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._sink = sink
        self._events_lost = events_lost
        self._metric_interval = metric_interval
        self._clock = clock
        self._last_report = clock()
        self._in_flight: asyncio.Task | None = None
        self.dispatched = 0
        self.failed = 0

    async def run(self) -> None:
        """Dispatch records until the task is cancelled.

        Cancelling only interrupts the wait for the next record. A record that
        is already being sent keeps going and is awaited by ``drain``.
        """
        logger.debug("Dispatch loop started")
        try:
            while True:
                record = await self._queue.get()
                self._in_flight = asyncio.create_task(self._process(record))
                await asyncio.shield(self._in_flight)
                self._in_flight = None
        except asyncio.CancelledError:
            logger.debug("Dispatch loop cancelled after %d records", self.dispatched)
            raise

    async def drain(self) -> int:
        """Finish the record in flight, then dispatch whatever is already queued."""
        drained = 0
        in_flight, self._in_flight = self._in_flight, None
        if in_flight is not None:
            await in_flight
            drained += 1
        while (record := self._queue.get_nowait()) is not None:
            await self._process(record)
            drained += 1
        if drained:
            logger.info("Drained %d queued record(s)", drained)
        return drained

    async def _process(self, record: TelemetryRecord) -> None:
        try:
            await self._maybe_report_loss()
        except Exception as exc:
            logger.exception("Failed to report the events-lost metric")
            await report_exception(self._sink, exc)

        try:
            logger.debug("%s", record)
            await self._sink.send_event(FILE_ACCESS_EVENT, record.to_properties())
            self.dispatched += 1
        except Exception as exc:
            self.failed += 1
            logger.exception("Failed to dispatch record")
            await report_exception(self._sink, exc)

    async def _maybe_report_loss(self) -> None:
        now = self._clock()
        if now - self._last_report < self._metric_interval:
            return
        self._last_report = now
        lost = self._events_lost()
        logger.info("Events lost so far: %d (queue: %s)", lost, self._queue.stats())
        await self._sink.send_metric(EVENTS_LOST_METRIC, lost)
