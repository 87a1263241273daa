"""Shared fixtures for filetrace tests."""

import asyncio
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import pytest

from filetrace.schemas.telemetry import DeviceIdentity, OperationKind, RawFileEvent
from filetrace.schemas.trace import TraceCategory, TraceEvent, TraceKeyword


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("FILETRACE_USE_SOPS", "false")


class RecordingSink:
    """In-memory telemetry sink."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, str]]] = []
        self.exceptions: list[BaseException] = []
        self.metrics: list[tuple[str, float]] = []

    async def __aenter__(self) -> "RecordingSink":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def send_event(self, name: str, properties: dict[str, str]) -> None:
        self.events.append((name, dict(properties)))

    async def send_exception(self, error: BaseException) -> None:
        self.exceptions.append(error)

    async def send_metric(self, name: str, value: float) -> None:
        self.metrics.append((name, value))

    def named(self, name: str) -> list[dict[str, str]]:
        return [props for event_name, props in self.events if event_name == name]


class FakeTraceSession:
    """Stand-in for a kernel trace session; tests push events with ``emit``."""

    def __init__(
        self,
        *,
        fail_enable: BaseException | None = None,
        fail_subscribe: BaseException | None = None,
    ) -> None:
        self.fail_enable = fail_enable
        self.fail_subscribe = fail_subscribe
        self.keywords: tuple[TraceKeyword, ...] = ()
        self.buffer_size_mb: int | None = None
        self.categories: tuple[TraceCategory, ...] = ()
        self.callback: Callable[[TraceEvent], None] | None = None
        self.events_lost = 0
        self.processing = threading.Event()
        self.stopped = threading.Event()

    def enable(self, keywords: Iterable[TraceKeyword], *, buffer_size_mb: int) -> None:
        if self.fail_enable is not None:
            raise self.fail_enable
        self.keywords = tuple(keywords)
        self.buffer_size_mb = buffer_size_mb

    def subscribe(self, categories, callback) -> None:
        if self.fail_subscribe is not None:
            raise self.fail_subscribe
        self.categories = tuple(categories)
        self.callback = callback

    def process(self) -> None:
        self.processing.set()
        self.stopped.wait()

    def stop(self) -> None:
        self.stopped.set()

    def emit(self, event: TraceEvent) -> None:
        self.callback(event)


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture()
def trace_session():
    return FakeTraceSession()


@pytest.fixture()
def identity():
    return DeviceIdentity(device_id="device-123", build_version="1.2.3")


@pytest.fixture()
def make_raw_event():
    def _make(
        path: str = "/data/report.docx",
        operation: OperationKind = OperationKind.CREATE,
        process_name: str = "word.exe",
    ) -> RawFileEvent:
        return RawFileEvent(
            path=path,
            operation=operation,
            process_name=process_name,
            timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        )

    return _make


@pytest.fixture()
def eventually():
    """Poll an async-side predicate until it holds or the timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture()
def make_trace_session():
    return FakeTraceSession
