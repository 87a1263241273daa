"""Schemas for the one-shot snapshot baseline."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class SnapshotStatus(StrEnum):
    """Outcome of a baseline run."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class SnapshotResult(BaseModel):
    """Summary of one ``SnapshotBaseliner.run_once`` call."""

    status: SnapshotStatus
    build_version: str
    marker_path: str
    started_at: datetime | None = None
    files_emitted: int = Field(default=0, ge=0)
    files_failed: int = Field(default=0, ge=0)
    volumes: list[str] = Field(default_factory=list)
