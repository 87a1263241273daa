"""Device identity: a stable per-machine id combined with the build version."""

import hashlib
import logging
import sys
import uuid
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from filetrace.schemas.telemetry import DeviceIdentity

logger = logging.getLogger(__name__)

NO_BUILD_VERSION = "no-build-version"

_MACHINE_ID_FILES = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
)


def get_build_version() -> str:
    """Installed version of this package, or a fixed placeholder."""
    try:
        return version("filetrace")
    except PackageNotFoundError:
        return NO_BUILD_VERSION


def _windows_machine_guid() -> str | None:
    import winreg

    try:
        with winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE,
            r"SOFTWARE\Microsoft\Cryptography",
            0,
            winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
        ) as key:
            value, _ = winreg.QueryValueEx(key, "MachineGuid")
    except OSError:
        return None
    return str(value).strip() or None


def get_machine_id() -> str:
    """Best available machine-unique identifier for this host."""
    if sys.platform == "win32":
        guid = _windows_machine_guid()
        if guid:
            return guid

    for path in _MACHINE_ID_FILES:
        try:
            machine_id = path.read_text().strip()
        except OSError:
            continue
        if machine_id:
            return machine_id

    logger.debug("No system machine id found; falling back to the MAC address")
    return f"{uuid.getnode():012x}"


def build_identity(build_version: str | None = None, machine_id: str | None = None) -> DeviceIdentity:
    """Compute the process-wide DeviceIdentity. Call once at startup."""
    build_version = build_version or get_build_version()
    machine_id = machine_id or get_machine_id()
    digest = hashlib.sha256(f"{machine_id}\n{build_version}".encode()).hexdigest()
    return DeviceIdentity(device_id=digest, build_version=build_version)
