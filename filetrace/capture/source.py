"""The event source contract shared by the kernel trace and directory watch feeds."""

from collections.abc import Callable
from typing import Protocol

from filetrace.schemas.telemetry import RawFileEvent

EventCallback = Callable[[RawFileEvent], None]
ErrorCallback = Callable[[BaseException], None]


class EventSource(Protocol):
    """Delivers RawFileEvents to a callback until stopped.

    ``start`` returns once delivery is running on the source's own
    thread(s). Callbacks run on those threads. A failing callback is
    reported through ``on_error`` and never stops the feed.
    """

    name: str

    def start(self, on_event: EventCallback, on_error: ErrorCallback) -> None: ...

    def stop(self) -> None: ...

    @property
    def events_lost(self) -> int:
        """Events the OS discarded before this process saw them."""
        ...
