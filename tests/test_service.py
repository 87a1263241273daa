"""End-to-end tests for the service lifecycle."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from filetrace.capture.kernel import KernelTraceFeed, TraceSessionError
from filetrace.capture.scrubber import SCRUBBED_USER, hash_name
from filetrace.integrations.sink import EVENTS_LOST_METRIC, FILE_ACCESS_EVENT, SNAPSHOT_EVENT
from filetrace.pipeline.service import FileTraceService
from filetrace.pipeline.snapshot import SnapshotBaseliner
from filetrace.schemas.service import ServiceState
from filetrace.schemas.telemetry import DriveType, OperationKind
from filetrace.schemas.trace import (
    FileCreatePayload,
    OpEndPayload,
    TraceCategory,
    TraceEvent,
)

T = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _create(path: str, process_name: str = "word.exe") -> TraceEvent:
    return TraceEvent(
        category=TraceCategory.FILE_CREATE,
        process_name=process_name,
        timestamp=T,
        payload=FileCreatePayload(file_name=path),
    )


class ManualSource:
    """Source driven directly by the test."""

    name = "manual"
    events_lost = 0

    def __init__(self) -> None:
        self.on_event = None
        self.on_error = None
        self.started = False
        self.stopped = False

    def start(self, on_event, on_error) -> None:
        self.on_event = on_event
        self.on_error = on_error
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class LateSource(ManualSource):
    """Delivers one more event while it is being stopped."""

    def __init__(self, event) -> None:
        super().__init__()
        self._event = event

    def stop(self) -> None:
        self.on_event(self._event)
        super().stop()


@pytest.fixture()
def make_service(sink, identity, tmp_path):
    def _make(sources, **kwargs):
        kwargs.setdefault("snapshot_enabled", False)
        kwargs.setdefault("state_dir", tmp_path / "state")
        return FileTraceService(sources=sources, sink=sink, identity=identity, **kwargs)

    return _make


@pytest.fixture()
def kernel_feed(trace_session):
    return KernelTraceFeed(lambda: trace_session)


class TestEndToEnd:
    async def test_user_document_create(self, make_service, kernel_feed, trace_session, sink, eventually):
        service = make_service([kernel_feed])
        await service.start()
        try:
            with (
                patch("filetrace.capture.scrubber.file_size", return_value=2048),
                patch(
                    "filetrace.capture.scrubber.resolve_drive_type",
                    return_value=DriveType.FIXED,
                ),
            ):
                await asyncio.to_thread(
                    trace_session.emit, _create(r"C:\Users\alice\Documents\report.docx")
                )
                await eventually(lambda: len(sink.named(FILE_ACCESS_EVENT)) == 1)
        finally:
            await service.stop()

        props = sink.named(FILE_ACCESS_EVENT)[0]
        assert props["fileExtension"] == ".docx"
        assert props["fileSize"] == "2048"
        assert props["driveType"] == "Fixed"
        assert SCRUBBED_USER in props["fileDirectoryScrubbed"]
        assert "alice" not in props["fileDirectoryScrubbed"]
        assert props["fileNameHashed"] == hash_name("report.docx")
        assert props["processName"] == "word.exe"
        assert props["accessType"] == OperationKind.CREATE
        assert props["timestamp"] == T.isoformat()
        assert props["deviceId"] == "device-123"

    async def test_event_without_path_produces_nothing(self, make_service, kernel_feed, trace_session, sink):
        service = make_service([kernel_feed])
        await service.start()
        await asyncio.to_thread(trace_session.emit, _create(""))
        await asyncio.to_thread(
            trace_session.emit,
            TraceEvent(category=TraceCategory.WRITE, timestamp=T, payload=OpEndPayload()),
        )
        queued = service.queue.stats().enqueued
        await service.stop()

        assert queued == 0
        assert sink.named(FILE_ACCESS_EVENT) == []
        assert kernel_feed.events_without_path == 2

    async def test_events_lost_metric(self, make_service, kernel_feed, trace_session, sink, eventually):
        trace_session.events_lost = 5
        service = make_service([kernel_feed], metric_interval=0)
        await service.start()
        try:
            await asyncio.to_thread(trace_session.emit, _create("/data/a.txt"))
            await eventually(lambda: len(sink.metrics) == 1)
        finally:
            await service.stop()

        assert sink.metrics == [(EVENTS_LOST_METRIC, 5)]
        assert service.events_lost() == 5


class TestLifecycle:
    async def test_start_then_stop_immediately(self, make_service, kernel_feed, sink):
        service = make_service([kernel_feed])
        await service.start()
        assert service.state == ServiceState.RUNNING

        await asyncio.wait_for(service.stop(), timeout=5)

        assert service.state == ServiceState.STOPPED
        assert sink.named(FILE_ACCESS_EVENT) == []

    async def test_event_during_stop_not_dispatched(self, make_service, make_raw_event, sink):
        source = LateSource(make_raw_event())
        service = make_service([source])
        await service.start()
        await service.stop()

        assert source.stopped
        assert sink.named(FILE_ACCESS_EVENT) == []

    async def test_fatal_source_stops_started_ones(self, make_service, make_trace_session):
        good = ManualSource()
        broken = KernelTraceFeed(
            lambda: make_trace_session(fail_enable=PermissionError("access denied"))
        )
        service = make_service([good, broken])

        with pytest.raises(TraceSessionError):
            await service.start()

        assert good.started
        assert good.stopped
        assert service.state == ServiceState.STOPPED

    async def test_stop_without_start(self, make_service):
        service = make_service([ManualSource()])
        await service.stop()
        assert service.state == ServiceState.STOPPED

    async def test_start_twice_rejected(self, make_service):
        service = make_service([ManualSource()])
        await service.start()
        try:
            with pytest.raises(RuntimeError):
                await service.start()
        finally:
            await service.stop()

    async def test_restart_after_stop(self, make_service, make_raw_event, sink, eventually):
        source = ManualSource()
        service = make_service([source])
        await service.start()
        await service.stop()
        await service.start()
        try:
            await asyncio.to_thread(source.on_event, make_raw_event())
            await eventually(lambda: len(sink.named(FILE_ACCESS_EVENT)) == 1)
        finally:
            await service.stop()


class TestSnapshot:
    async def test_snapshot_runs_alongside_capture(self, make_service, sink, tmp_path, eventually):
        volume = tmp_path / "volume"
        volume.mkdir()
        (volume / "a.txt").write_text("a")
        service = make_service(
            [ManualSource()], snapshot_enabled=True, snapshot_volumes=[str(volume)]
        )
        await service.start()
        try:
            await asyncio.wait_for(service.snapshot_task, timeout=5)
        finally:
            await service.stop()

        assert len(sink.named(SNAPSHOT_EVENT)) == 1
        assert (tmp_path / "state" / "snapshot-1.2.3").exists()

    async def test_snapshot_send_fault_reported(self, make_service, sink, tmp_path):
        volume = tmp_path / "volume"
        volume.mkdir()
        (volume / "a.txt").write_text("a")

        async def broken(name, properties):
            raise ConnectionError("collector down")

        sink.send_event = broken
        service = make_service(
            [ManualSource()], snapshot_enabled=True, snapshot_volumes=[str(volume)]
        )
        await service.start()
        try:
            await asyncio.wait_for(service.snapshot_task, timeout=5)
        finally:
            await service.stop()

        assert len(sink.exceptions) == 1
        assert isinstance(sink.exceptions[0], ConnectionError)
        assert service.state == ServiceState.STOPPED

    async def test_snapshot_task_fault_reported(self, make_service, sink):
        service = make_service([ManualSource()], snapshot_enabled=True)
        with patch.object(
            SnapshotBaseliner, "run_once", side_effect=OSError("state dir is read-only")
        ):
            await service.start()
            try:
                assert await asyncio.wait_for(service.snapshot_task, timeout=5) is None
            finally:
                await service.stop()

        assert len(sink.exceptions) == 1
        assert isinstance(sink.exceptions[0], OSError)


class TestFaults:
    async def test_record_assembly_fault_reported(
        self, make_service, kernel_feed, trace_session, sink, eventually
    ):
        service = make_service([kernel_feed])
        await service.start()
        try:
            with patch(
                "filetrace.pipeline.service.build_record", side_effect=ValueError("bad path")
            ):
                await asyncio.to_thread(trace_session.emit, _create("/data/a.txt"))
                await eventually(lambda: len(sink.exceptions) == 1)
        finally:
            await service.stop()

        assert isinstance(sink.exceptions[0], ValueError)
        assert sink.named(FILE_ACCESS_EVENT) == []

    async def test_stop_finishes_record_being_sent(self, make_service, make_raw_event, sink):
        sending = asyncio.Event()
        original = sink.send_event

        async def slow_send(name, properties):
            sending.set()
            await asyncio.sleep(0.2)
            await original(name, properties)

        sink.send_event = slow_send
        source = ManualSource()
        service = make_service([source])
        await service.start()
        await asyncio.to_thread(source.on_event, make_raw_event())
        await asyncio.wait_for(sending.wait(), timeout=2)

        await service.stop()

        assert len(sink.named(FILE_ACCESS_EVENT)) == 1
        assert service.dispatch_loop.dispatched == 1
