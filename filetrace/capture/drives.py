"""Mounted volume discovery and drive type classification via psutil."""

import logging
import ntpath
import os
from functools import lru_cache

import psutil

from filetrace.schemas.telemetry import DriveType

logger = logging.getLogger(__name__)

# Windows reports the drive type in the partition opts ("rw,fixed")
_WINDOWS_OPTS = {
    "fixed": DriveType.FIXED,
    "removable": DriveType.REMOVABLE,
    "remote": DriveType.NETWORK,
    "cdrom": DriveType.CDROM,
    "ramdisk": DriveType.RAM,
}

_NETWORK_FSTYPES = frozenset({
    "nfs", "nfs4", "cifs", "smb", "smbfs", "smb3", "sshfs", "fuse.sshfs", "afpfs", "9p", "davfs",
})
_CDROM_FSTYPES = frozenset({"iso9660", "udf", "cd9660"})
_RAM_FSTYPES = frozenset({"tmpfs", "ramfs", "devtmpfs"})
_PSEUDO_FSTYPES = frozenset({
    "proc", "sysfs", "devpts", "cgroup", "cgroup2", "securityfs", "debugfs", "tracefs",
    "pstore", "bpf", "mqueue", "hugetlbfs", "configfs", "fusectl", "autofs", "overlay",
    "squashfs", "nsfs", "binfmt_misc",
})


def classify_partition(fstype: str, opts: str) -> DriveType:
    """Map a psutil partition's fstype/opts onto a DriveType."""
    for opt in opts.lower().split(","):
        if opt in _WINDOWS_OPTS:
            return _WINDOWS_OPTS[opt]

    fstype = fstype.lower()
    if fstype in _NETWORK_FSTYPES:
        return DriveType.NETWORK
    if fstype in _CDROM_FSTYPES:
        return DriveType.CDROM
    if fstype in _RAM_FSTYPES:
        return DriveType.RAM
    if not fstype or fstype in _PSEUDO_FSTYPES:
        return DriveType.UNKNOWN
    return DriveType.FIXED


@lru_cache(maxsize=1)
def _mount_table() -> tuple[tuple[str, DriveType], ...]:
    """Mountpoints with their drive type, longest mountpoint first."""
    try:
        partitions = psutil.disk_partitions(all=True)
    except (OSError, RuntimeError) as exc:
        logger.warning("Could not read the mount table: %s", exc)
        return ()

    table = [
        (_normalize_root(p.mountpoint), classify_partition(p.fstype, p.opts))
        for p in partitions
        if p.mountpoint
    ]
    table.sort(key=lambda entry: len(entry[0]), reverse=True)
    return tuple(table)


def refresh_mount_table() -> None:
    """Forget the cached mount table (after volumes are added or removed)."""
    _mount_table.cache_clear()


def _normalize_root(mountpoint: str) -> str:
    if ntpath.splitdrive(mountpoint)[0]:
        return mountpoint.rstrip("\\/").lower() + "\\"
    return mountpoint.rstrip("/") + "/"


def resolve_drive_type(path: str) -> DriveType:
    """Best-effort drive type of the volume holding *path*.

    Never raises; unresolvable roots map to ``DriveType.UNKNOWN``.
    """
    if ntpath.splitdrive(path)[0]:
        candidate = path.replace("/", "\\").lower()
        if not candidate.endswith("\\"):
            candidate += "\\"
    elif path.startswith("/"):
        candidate = path.rstrip("/") + "/"
    else:
        return DriveType.UNKNOWN

    for mountpoint, drive_type in _mount_table():
        if candidate.startswith(mountpoint):
            return drive_type
    return DriveType.UNKNOWN


def list_volumes() -> list[str]:
    """Mountpoints of the physical volumes currently mounted on this host."""
    try:
        partitions = psutil.disk_partitions(all=False)
    except (OSError, RuntimeError) as exc:
        logger.warning("Could not enumerate volumes: %s", exc)
        return []

    volumes: list[str] = []
    for partition in partitions:
        if not partition.mountpoint or partition.mountpoint in volumes:
            continue
        if classify_partition(partition.fstype, partition.opts) is DriveType.CDROM:
            continue
        if not os.path.isdir(partition.mountpoint):
            continue
        volumes.append(partition.mountpoint)
    return volumes
