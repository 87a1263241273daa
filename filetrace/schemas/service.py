"""Schemas for the service lifecycle and its runtime settings."""

from enum import StrEnum

from pydantic import BaseModel, Field


class ServiceState(StrEnum):
    """States of the service lifecycle state machine."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class EventSourceKind(StrEnum):
    """Which event source(s) feed the pipeline."""

    AUTO = "auto"
    KERNEL = "kernel"
    WATCH = "watch"
    BOTH = "both"


class ServiceSettings(BaseModel):
    """Validated runtime settings for one service instance."""

    collector_url: str = ""
    collector_api_key: str = Field(default="", repr=False)
    state_dir: str
    event_source: EventSourceKind = EventSourceKind.AUTO
    trace_session: str = Field(
        default="",
        description="'module:callable' factory returning a kernel trace session",
    )
    trace_buffer_mb: int = Field(default=128, gt=0)
    watch_paths: list[str] = Field(
        default_factory=list,
        description="Roots to watch; empty means every mounted volume",
    )
    watch_exclude: str = ""
    metric_interval_seconds: float = Field(default=60.0, gt=0)
    drain_timeout_seconds: float = Field(default=5.0, ge=0)
    snapshot_enabled: bool = True
    build_version: str = ""
