"""Path scrubbing: turn a raw file path into privacy-safe telemetry fields.

The scrubber never raises. Anything that cannot be determined (file already
deleted, access denied, unknown volume) degrades to a sentinel value so the
event still flows through the pipeline.
"""

import base64
import hashlib
import logging
import ntpath
import os
import posixpath
import re
import stat

from filetrace.capture.drives import resolve_drive_type
from filetrace.schemas.telemetry import (
    SIZE_UNAVAILABLE,
    DeviceIdentity,
    DriveType,
    RawFileEvent,
    ScrubbedFileInfo,
    TelemetryRecord,
)

logger = logging.getLogger(__name__)

SCRUBBED_USER = "<scrubbed-user>"

# <drive>:\Users\<name>[\...] and the POSIX home equivalents
_WINDOWS_PROFILE = re.compile(
    r"^(?P<prefix>[a-z]:[\\/]users[\\/])(?P<user>[^\\/]+)", re.IGNORECASE
)
_POSIX_PROFILE = re.compile(r"^(?P<prefix>/(?:home|Users)/)(?P<user>[^/]+)")

_WINDOWS_DRIVE = re.compile(r"^[a-z]:[\\/]", re.IGNORECASE)


def _is_windows_path(path: str) -> bool:
    return bool(_WINDOWS_DRIVE.match(path)) or path.startswith("\\\\")


def split_path(path: str) -> tuple[str, str]:
    """Split *path* into (directory, base name) using its own separator style."""
    # ntpath accepts both separators and keeps the ones it finds
    module = ntpath if _is_windows_path(path) or "/" not in path else posixpath
    return module.split(path)


def scrub_directory(directory: str) -> str:
    """Replace the user-profile segment of *directory* with a fixed token.

    Directories outside a user profile are returned unchanged.
    """
    for pattern in (_WINDOWS_PROFILE, _POSIX_PROFILE):
        match = pattern.match(directory)
        if match:
            return match.group("prefix") + SCRUBBED_USER + directory[match.end("user"):]
    return directory


def _name_bytes(name: str) -> bytes:
    # Undecodable bytes from os.fsdecode come back as lone surrogates
    try:
        return name.encode("utf-8", "surrogateescape")
    except UnicodeEncodeError:
        return name.encode("utf-8", "surrogatepass")


def hash_name(name: str) -> str:
    """Stable, unsalted SHA-256 of a base file name (base64 text).

    Names holding bytes that are not valid UTF-8 hash their original bytes.
    """
    digest = hashlib.sha256(_name_bytes(name)).digest()
    return base64.b64encode(digest).decode("ascii")


def file_extension(name: str) -> str:
    """Final dot-suffix of *name* including the dot, or ``""``."""
    index = name.rfind(".")
    if index == -1 or index == len(name) - 1:
        return ""
    return name[index:]


def file_size(path: str) -> int:
    """Size of a regular file in bytes, or -1 when it cannot be read."""
    try:
        st = os.stat(path)
    except (OSError, ValueError):
        return SIZE_UNAVAILABLE
    if not stat.S_ISREG(st.st_mode):
        return SIZE_UNAVAILABLE
    return st.st_size


def scrub(raw_path: str) -> ScrubbedFileInfo:
    """Derive the privacy-safe description of *raw_path*."""
    directory, name = split_path(raw_path)

    try:
        drive_type = resolve_drive_type(raw_path)
    except Exception:
        logger.debug("Drive type lookup failed for a path on %s", directory[:3], exc_info=True)
        drive_type = DriveType.UNKNOWN

    return ScrubbedFileInfo(
        directory_scrubbed=scrub_directory(directory),
        name_hashed=hash_name(name),
        extension=file_extension(name),
        size_bytes=file_size(raw_path),
        drive_type=drive_type,
    )


def build_record(event: RawFileEvent, identity: DeviceIdentity) -> TelemetryRecord:
    """Scrub a raw event and tag it with the device identity."""
    return TelemetryRecord(
        file_info=scrub(event.path),
        operation=event.operation,
        process_name=event.process_name,
        timestamp=event.timestamp,
        device_id=identity.device_id,
        build_version=identity.build_version,
    )
