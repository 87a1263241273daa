"""Schemas for kernel file I/O trace events.

Each trace category delivers a differently shaped payload. The payloads form
a tagged union on ``kind`` so that path extraction is a single match over
the variants.
"""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from filetrace.schemas.telemetry import OperationKind


class TraceKeyword(StrEnum):
    """Kernel provider keywords enabled for the trace session."""

    DISK_FILE_IO = "DiskFileIO"
    FILE_IO_INIT = "FileIOInit"


class TraceCategory(StrEnum):
    """File I/O event categories the kernel feed subscribes to."""

    FILE_CREATE = "FileIO/Create"
    DELETE = "FileIO/Delete"
    RENAME = "FileIO/Rename"
    READ = "FileIO/Read"
    WRITE = "FileIO/Write"
    FLUSH = "FileIO/Flush"

    @property
    def operation(self) -> OperationKind:
        return _CATEGORY_OPERATIONS[self]


_CATEGORY_OPERATIONS = {
    TraceCategory.FILE_CREATE: OperationKind.CREATE,
    TraceCategory.DELETE: OperationKind.DELETE,
    TraceCategory.RENAME: OperationKind.RENAME,
    TraceCategory.READ: OperationKind.READ,
    TraceCategory.WRITE: OperationKind.WRITE,
    TraceCategory.FLUSH: OperationKind.FLUSH,
}


class FileCreatePayload(BaseModel):
    """Payload of FileIO/Create."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["create"] = "create"
    file_name: str = ""
    create_options: int = 0
    share_access: int = 0


class FileInfoPayload(BaseModel):
    """Payload of FileIO/Delete and FileIO/Rename (set-information events)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["info"] = "info"
    file_name: str = ""
    info_class: int = 0


class SimpleOpPayload(BaseModel):
    """Payload of FileIO/Flush, FileIO/Close and FileIO/Cleanup."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["simple_op"] = "simple_op"
    file_name: str = ""


class ReadWritePayload(BaseModel):
    """Payload of FileIO/Read and FileIO/Write."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["read_write"] = "read_write"
    file_name: str = ""
    offset: int = 0
    io_size: int = 0


class OpEndPayload(BaseModel):
    """Completion record; carries a status but no file name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["op_end"] = "op_end"
    status: int = 0


TracePayload = Annotated[
    FileCreatePayload | FileInfoPayload | SimpleOpPayload | ReadWritePayload | OpEndPayload,
    Field(discriminator="kind"),
]


class TraceEvent(BaseModel):
    """A decoded kernel trace event as delivered by the trace session."""

    model_config = ConfigDict(frozen=True)

    category: TraceCategory
    process_name: str = ""
    timestamp: datetime
    payload: TracePayload
