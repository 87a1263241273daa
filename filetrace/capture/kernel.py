"""Kernel trace feed: file I/O events from a kernel-level trace session.

The trace session itself is an OS collaborator (ETW on Windows, or any
provider that decodes kernel file I/O records into ``TraceEvent`` objects).
It is loaded from a ``module:callable`` factory so the feed can ship without
a hard dependency on a particular tracing backend.
"""

import importlib
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Protocol

from filetrace.capture.source import ErrorCallback, EventCallback
from filetrace.schemas.telemetry import RawFileEvent
from filetrace.schemas.trace import (
    FileCreatePayload,
    FileInfoPayload,
    OpEndPayload,
    ReadWritePayload,
    SimpleOpPayload,
    TraceCategory,
    TraceEvent,
    TraceKeyword,
    TracePayload,
)

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE_MB = 128
STOP_JOIN_TIMEOUT = 10.0

SUBSCRIBED_CATEGORIES = (
    TraceCategory.FILE_CREATE,
    TraceCategory.DELETE,
    TraceCategory.RENAME,
    TraceCategory.READ,
    TraceCategory.WRITE,
    TraceCategory.FLUSH,
)


class TraceSessionError(RuntimeError):
    """The kernel trace session could not be opened or enabled."""


class TraceSession(Protocol):
    """The kernel tracing collaborator."""

    def enable(self, keywords: Iterable[TraceKeyword], *, buffer_size_mb: int) -> None: ...

    def subscribe(
        self, categories: Iterable[TraceCategory], callback: Callable[[TraceEvent], None]
    ) -> None: ...

    def process(self) -> None:
        """Pump events to subscribers; blocks until ``stop`` is called."""
        ...

    def stop(self) -> None: ...

    @property
    def events_lost(self) -> int: ...


TraceSessionFactory = Callable[[], TraceSession]


def load_session_factory(target: str) -> TraceSessionFactory:
    """Resolve a ``package.module:callable`` reference to a session factory.

    Raises:
        TraceSessionError: If the reference is malformed or cannot be imported.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise TraceSessionError(f"Trace session must be 'module:callable', got {target!r}")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise TraceSessionError(f"Cannot load trace session {target!r}: {exc}") from exc
    if not callable(factory):
        raise TraceSessionError(f"Trace session {target!r} is not callable")
    return factory


def _close_quietly(session: TraceSession) -> None:
    try:
        session.stop()
    except Exception:
        logger.exception("Error stopping kernel trace session")


def extract_path(payload: TracePayload) -> str | None:
    """Return the file path carried by *payload*, if any."""
    match payload:
        case (
            FileCreatePayload(file_name=name)
            | FileInfoPayload(file_name=name)
            | SimpleOpPayload(file_name=name)
            | ReadWritePayload(file_name=name)
        ):
            return name or None
        case OpEndPayload():
            return None
    return None


class KernelTraceFeed:
    """Event source backed by a kernel file I/O trace session.

    The session is opened in ``start``. Failing to open or enable it is
    fatal and raises ``TraceSessionError``. Event processing then runs on a
    dedicated thread until ``stop``.
    """

    name = "kernel"

    def __init__(
        self,
        session_factory: TraceSessionFactory,
        *,
        buffer_size_mb: int = DEFAULT_BUFFER_SIZE_MB,
    ) -> None:
        self._session_factory = session_factory
        self._buffer_size_mb = buffer_size_mb
        self._session: TraceSession | None = None
        self._thread: threading.Thread | None = None
        self._on_event: EventCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self.events_seen = 0
        self.events_without_path = 0

    @property
    def events_lost(self) -> int:
        session = self._session
        if session is None:
            return 0
        try:
            return session.events_lost
        except Exception:
            logger.debug("Trace session did not report a loss counter", exc_info=True)
            return 0

    def start(self, on_event: EventCallback, on_error: ErrorCallback) -> None:
        self._on_event = on_event
        self._on_error = on_error
        self._stopped.clear()

        session = None
        try:
            session = self._session_factory()
            session.enable(
                (TraceKeyword.DISK_FILE_IO, TraceKeyword.FILE_IO_INIT),
                buffer_size_mb=self._buffer_size_mb,
            )
            session.subscribe(SUBSCRIBED_CATEGORIES, self._handle_trace_event)
        except Exception as exc:
            # The OS session outlives this process unless it is stopped
            if session is not None:
                _close_quietly(session)
            if isinstance(exc, TraceSessionError):
                raise
            raise TraceSessionError(f"Failed to open kernel trace session: {exc}") from exc

        self._session = session
        self._thread = threading.Thread(
            target=self._process, name="kernel-trace", daemon=True
        )
        self._thread.start()
        logger.info("Kernel trace session started (buffer=%d MB)", self._buffer_size_mb)

    def _process(self) -> None:
        try:
            self._session.process()
        except Exception as exc:
            logger.exception("Kernel trace processing stopped unexpectedly")
            if self._on_error is not None:
                self._on_error(exc)
        finally:
            logger.debug("Kernel trace processing thread exiting")

    def _handle_trace_event(self, event: TraceEvent) -> None:
        """Per-event callback; runs on the trace processing thread."""
        if self._stopped.is_set():
            return
        try:
            with self._lock:
                self.events_seen += 1
            path = extract_path(event.payload)
            if path is None:
                with self._lock:
                    self.events_without_path += 1
                return
            self._on_event(
                RawFileEvent(
                    path=path,
                    operation=event.category.operation,
                    process_name=event.process_name,
                    timestamp=event.timestamp,
                )
            )
        except Exception as exc:
            logger.exception("Failed to handle %s trace event", event.category)
            self._on_error(exc)

    def stop(self) -> None:
        self._stopped.set()
        if self._session is None or self._thread is None:
            return
        _close_quietly(self._session)
        self._thread.join(timeout=STOP_JOIN_TIMEOUT)
        if self._thread.is_alive():
            logger.warning("Kernel trace thread did not exit within %.0fs", STOP_JOIN_TIMEOUT)
        self._thread = None
        logger.info("Kernel trace session stopped (events lost: %d)", self.events_lost)
