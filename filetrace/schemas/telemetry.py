"""Schemas for the file access telemetry pipeline.

Covers: raw activity events from an event source, the privacy-scrubbed file
info derived from a path, and the flat telemetry record shipped to the
collector.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

SIZE_UNAVAILABLE = -1


class OperationKind(StrEnum):
    """Kind of file activity observed by an event source."""

    CREATE = "Create"
    DELETE = "Delete"
    RENAME = "Rename"
    READ = "Read"
    WRITE = "Write"
    FLUSH = "Flush"
    CHANGED = "Changed"


class DriveType(StrEnum):
    """Type of the volume a file lives on."""

    FIXED = "Fixed"
    REMOVABLE = "Removable"
    NETWORK = "Network"
    CDROM = "CDRom"
    RAM = "Ram"
    UNKNOWN = "Unknown"


class RawFileEvent(BaseModel):
    """A single file activity notification, before scrubbing."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(min_length=1, description="Absolute path of the affected file")
    operation: OperationKind
    process_name: str = Field(default="", description="Image name of the acting process")
    timestamp: datetime


class ScrubbedFileInfo(BaseModel):
    """Privacy-safe description of a file path."""

    model_config = ConfigDict(frozen=True)

    directory_scrubbed: str = Field(
        description="Parent directory with any user-profile segment redacted"
    )
    name_hashed: str = Field(description="Base64 SHA-256 of the base file name")
    extension: str = Field(default="", description="Final dot-suffix, including the dot")
    size_bytes: int = Field(
        default=SIZE_UNAVAILABLE,
        ge=SIZE_UNAVAILABLE,
        description="File size, or -1 when it could not be read",
    )
    drive_type: DriveType = DriveType.UNKNOWN

    def to_properties(self) -> dict[str, str]:
        return {
            "fileNameHashed": self.name_hashed,
            "fileDirectoryScrubbed": self.directory_scrubbed,
            "fileExtension": self.extension,
            "fileSize": str(self.size_bytes),
            "driveType": self.drive_type.value,
        }


class DeviceIdentity(BaseModel):
    """Process-wide identity attached to every record."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    build_version: str


class TelemetryRecord(BaseModel):
    """A scrubbed file activity record ready for dispatch."""

    model_config = ConfigDict(frozen=True)

    file_info: ScrubbedFileInfo
    operation: OperationKind
    process_name: str
    timestamp: datetime
    device_id: str
    build_version: str

    def to_properties(self) -> dict[str, str]:
        """Flatten into the string-valued property map sent to the collector."""
        properties = {
            "processName": self.process_name,
            "accessType": self.operation.value,
            "timestamp": self.timestamp.isoformat(),
            "deviceId": self.device_id,
            "buildVersion": self.build_version,
        }
        properties.update(self.file_info.to_properties())
        return properties

    def __str__(self) -> str:
        info = self.file_info
        return (
            f"{self.operation.value} by {self.process_name or '?'}: "
            f"dir={info.directory_scrubbed} name={info.name_hashed} ext={info.extension} "
            f"size={info.size_bytes} drive={info.drive_type.value}"
        )
