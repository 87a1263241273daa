"""Pick the event source(s) for a run."""

import logging

from filetrace.capture.kernel import KernelTraceFeed, TraceSessionError, load_session_factory
from filetrace.capture.source import EventSource
from filetrace.capture.watcher import DEFAULT_EXCLUDE, DirectoryWatchFeed
from filetrace.schemas.service import EventSourceKind, ServiceSettings

logger = logging.getLogger(__name__)


def resolve_kind(settings: ServiceSettings) -> EventSourceKind:
    """Resolve ``auto``: the kernel feed when a trace session is configured."""
    if settings.event_source is not EventSourceKind.AUTO:
        return settings.event_source
    return EventSourceKind.KERNEL if settings.trace_session else EventSourceKind.WATCH


def build_sources(settings: ServiceSettings) -> list[EventSource]:
    """Construct the configured event sources (not yet started).

    Raises:
        TraceSessionError: If the kernel feed is requested without a usable
            trace session factory.
    """
    kind = resolve_kind(settings)
    sources: list[EventSource] = []

    if kind in (EventSourceKind.KERNEL, EventSourceKind.BOTH):
        if not settings.trace_session:
            raise TraceSessionError(
                "Kernel trace feed requested but no trace session is configured "
                "(set FILETRACE_TRACE_SESSION)"
            )
        factory = load_session_factory(settings.trace_session)
        sources.append(KernelTraceFeed(factory, buffer_size_mb=settings.trace_buffer_mb))

    if kind in (EventSourceKind.WATCH, EventSourceKind.BOTH):
        sources.append(
            DirectoryWatchFeed(
                settings.watch_paths or None,
                exclude=settings.watch_exclude or DEFAULT_EXCLUDE,
            )
        )

    logger.info("Event source(s): %s", ", ".join(s.name for s in sources))
    return sources
