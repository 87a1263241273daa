"""The telemetry sink contract and a log-only sink for unconfigured hosts."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

FILE_ACCESS_EVENT = "FileAccess"
SNAPSHOT_EVENT = "Snapshot"
EVENTS_LOST_METRIC = "EventsLost"


class TelemetrySink(Protocol):
    """Where scrubbed records end up. All property values are strings."""

    async def send_event(self, name: str, properties: dict[str, str]) -> None: ...

    async def send_exception(self, error: BaseException) -> None: ...

    async def send_metric(self, name: str, value: float) -> None: ...


async def report_exception(sink: TelemetrySink, error: BaseException) -> None:
    """Forward *error* to the sink. Never raises."""
    try:
        await sink.send_exception(error)
    except Exception:
        logger.exception("Failed to report %s to telemetry", type(error).__name__)


class LogSink:
    """Writes telemetry to the log instead of a collector.

    Used when no collector URL is configured, so the agent still runs and
    its output can be inspected locally.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level
        self.events_sent = 0

    async def __aenter__(self) -> "LogSink":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    async def send_event(self, name: str, properties: dict[str, str]) -> None:
        self.events_sent += 1
        logger.log(self._level, "%s %s", name, properties)

    async def send_exception(self, error: BaseException) -> None:
        logger.log(self._level, "Exception %s: %s", type(error).__name__, error)

    async def send_metric(self, name: str, value: float) -> None:
        logger.log(self._level, "Metric %s=%s", name, value)
