"""Service lifecycle: wires event sources, queue, dispatch loop and baseliner.

States: stopped → starting → running → stopping → stopped.

Event sources call back on their own threads; records are scrubbed there and
handed to the queue. The dispatch loop and the snapshot baseliner run as
supervised asyncio tasks whose faults are logged and reported to the sink
instead of crashing the service.
"""

import asyncio
import logging
import threading
from collections.abc import Coroutine, Sequence
from pathlib import Path
from typing import Any

from filetrace.capture.scrubber import build_record
from filetrace.capture.source import EventSource
from filetrace.integrations.sink import TelemetrySink, report_exception
from filetrace.pipeline.dispatch import DEFAULT_METRIC_INTERVAL, DispatchLoop
from filetrace.pipeline.queue import EventQueue
from filetrace.pipeline.snapshot import SnapshotBaseliner
from filetrace.schemas.service import ServiceState
from filetrace.schemas.telemetry import DeviceIdentity, RawFileEvent

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 5.0


class FileTraceService:
    """Long-running file access telemetry service.

    Usage::

        service = FileTraceService(sources=[feed], sink=sink, identity=identity,
                                   state_dir="/var/lib/filetrace")
        await service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        *,
        sources: Sequence[EventSource],
        sink: TelemetrySink,
        identity: DeviceIdentity,
        state_dir: str | Path,
        metric_interval: float = DEFAULT_METRIC_INTERVAL,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
        snapshot_enabled: bool = True,
        snapshot_volumes: Sequence[str] | None = None,
    ) -> None:
        self._sources = list(sources)
        self._sink = sink
        self._identity = identity
        self._metric_interval = metric_interval
        self._drain_timeout = drain_timeout
        self._snapshot_enabled = snapshot_enabled
        self._baseliner = SnapshotBaseliner(
            sink, state_dir, identity.build_version, volumes=snapshot_volumes
        )

        self._state = ServiceState.STOPPED
        self._stopping = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: EventQueue | None = None
        self._dispatch: DispatchLoop | None = None
        self._started_sources: list[EventSource] = []
        self._dispatch_task: asyncio.Task | None = None
        self._snapshot_task: asyncio.Task | None = None
        self._reports: set[asyncio.Task] = set()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def queue(self) -> EventQueue | None:
        return self._queue

    @property
    def dispatch_loop(self) -> DispatchLoop | None:
        return self._dispatch

    @property
    def snapshot_task(self) -> asyncio.Task | None:
        return self._snapshot_task

    def events_lost(self) -> int:
        return sum(source.events_lost for source in self._sources)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start sources and background tasks.

        A source that fails to start (e.g. the kernel trace session cannot be
        opened) aborts the start: everything already started is stopped again
        and the error propagates.
        """
        if self._state is not ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._loop = asyncio.get_running_loop()
        self._stopping.clear()
        self._queue = EventQueue(self._loop)
        self._dispatch = DispatchLoop(
            self._queue,
            self._sink,
            events_lost=self.events_lost,
            metric_interval=self._metric_interval,
        )
        logger.info(
            "Starting service (device id %s, build %s)",
            self._identity.device_id,
            self._identity.build_version,
        )

        for source in self._sources:
            try:
                await asyncio.to_thread(source.start, self._on_raw_event, self._on_source_error)
            except Exception:
                logger.error("Failed to start %s event source", source.name)
                await self.stop()
                raise
            self._started_sources.append(source)

        self._dispatch_task = asyncio.create_task(
            self._supervise("dispatch", self._dispatch.run()), name="filetrace-dispatch"
        )
        if self._snapshot_enabled:
            self._snapshot_task = asyncio.create_task(
                self._supervise("snapshot", self._baseliner.run_once(self._stopping)),
                name="filetrace-snapshot",
            )

        self._state = ServiceState.RUNNING
        logger.info("Service running")

    async def stop(self) -> None:
        """Stop sources, then wait for the dispatch loop and baseliner to exit.

        Safe to call in any state, including after a failed ``start``.
        """
        if self._state is ServiceState.STOPPED and self._queue is None:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping service")

        self._stopping.set()
        if self._queue is not None:
            self._queue.close()

        # No more producers past this point
        for source in reversed(self._started_sources):
            try:
                await asyncio.to_thread(source.stop)
            except Exception:
                logger.exception("Error stopping %s event source", source.name)
        self._started_sources.clear()

        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
            await self._drain()

        if self._snapshot_task is not None:
            await asyncio.gather(self._snapshot_task, return_exceptions=True)

        if self._reports:
            await asyncio.gather(*self._reports, return_exceptions=True)

        if self._queue is not None:
            logger.info("Queue at shutdown: %s", self._queue.stats())
        self._queue = None
        self._state = ServiceState.STOPPED
        logger.info("Service stopped")

    async def _drain(self) -> None:
        try:
            await asyncio.wait_for(self._dispatch.drain(), timeout=self._drain_timeout)
        except TimeoutError:
            logger.warning(
                "Drain timed out after %.1fs; %d record(s) discarded",
                self._drain_timeout,
                self._queue.qsize(),
            )

    async def _supervise(self, name: str, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run a background task, reporting its fault instead of losing it."""
        try:
            result = await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s task failed", name.capitalize())
            await report_exception(self._sink, exc)
            return None
        if result is not None:
            logger.info("%s task finished: %s", name.capitalize(), result)
        return result

    # ------------------------------------------------------------------
    # Source callbacks (run on source threads)
    # ------------------------------------------------------------------

    def _on_raw_event(self, event: RawFileEvent) -> None:
        if self._stopping.is_set():
            return
        self._queue.put_threadsafe(build_record(event, self._identity))

    def _on_source_error(self, error: BaseException) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._spawn_report, error)
        except RuntimeError:
            logger.warning("Event loop closed; fault not reported: %r", error)

    def _spawn_report(self, error: BaseException) -> None:
        task = asyncio.create_task(report_exception(self._sink, error))
        self._reports.add(task)
        task.add_done_callback(self._reports.discard)
