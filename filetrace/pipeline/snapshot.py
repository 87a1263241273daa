"""Snapshot baseline: a one-time inventory of existing files per build version.

The walk runs on a worker thread. Each file is scrubbed there and its
``Snapshot`` event is handed to the sink on the event loop, one at a time,
so the walk never outpaces delivery. A zero-byte marker file named after
the build version is written only after a complete walk; its presence turns
later runs into no-ops.
"""

import asyncio
import logging
import os
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path

from filetrace.capture.drives import list_volumes
from filetrace.capture.scrubber import scrub
from filetrace.integrations.sink import SNAPSHOT_EVENT, TelemetrySink, report_exception
from filetrace.schemas.snapshot import SnapshotResult, SnapshotStatus

logger = logging.getLogger(__name__)


def marker_name(build_version: str) -> str:
    return f"snapshot-{build_version}"


def _ignore(error: OSError) -> None:
    logger.debug("Skipping inaccessible entry: %s", error.strerror)


def iter_files(root: str, cancel: threading.Event) -> Iterator[str]:
    """Yield every file below *root*, staying on root's filesystem.

    Inaccessible directories are skipped. Stops early once *cancel* is set.
    """
    try:
        root_dev = os.stat(root).st_dev
    except OSError as exc:
        _ignore(exc)
        return

    for dirpath, dirnames, filenames in os.walk(root, onerror=_ignore):
        if cancel.is_set():
            return
        # Other volumes are enumerated on their own
        kept = []
        for name in dirnames:
            try:
                if os.lstat(os.path.join(dirpath, name)).st_dev == root_dev:
                    kept.append(name)
            except OSError as exc:
                _ignore(exc)
        dirnames[:] = kept
        for name in filenames:
            yield os.path.join(dirpath, name)


class SnapshotBaseliner:
    """Runs the baseline at most once per (host, build version).

    Usage::

        baseliner = SnapshotBaseliner(sink, state_dir, "1.4.0")
        result = await baseliner.run_once(cancel_event)
    """

    def __init__(
        self,
        sink: TelemetrySink,
        state_dir: str | Path,
        build_version: str,
        *,
        volumes: Sequence[str] | None = None,
        volume_lister: Callable[[], list[str]] = list_volumes,
    ) -> None:
        self._sink = sink
        self._state_dir = Path(state_dir)
        self._build_version = build_version
        self._volumes = list(volumes) if volumes is not None else None
        self._volume_lister = volume_lister

    @property
    def marker_path(self) -> Path:
        return self._state_dir / marker_name(self._build_version)

    def is_done(self) -> bool:
        return self.marker_path.exists()

    async def run_once(self, cancel: threading.Event) -> SnapshotResult:
        """Enumerate and emit every file unless this build was already baselined."""
        if self.is_done():
            logger.info("Snapshot for build %s already taken; skipping", self._build_version)
            return SnapshotResult(
                status=SnapshotStatus.SKIPPED,
                build_version=self._build_version,
                marker_path=str(self.marker_path),
            )

        volumes = self._volumes if self._volumes is not None else self._volume_lister()
        started_at = datetime.now(UTC)
        logger.info("Starting snapshot of %d volume(s): %s", len(volumes), volumes)

        loop = asyncio.get_running_loop()
        emitted, failed, completed = await asyncio.to_thread(
            self._walk, loop, volumes, cancel, started_at
        )

        if not completed:
            logger.info("Snapshot cancelled after %d file(s); marker not written", emitted)
            status = SnapshotStatus.CANCELLED
        else:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            self.marker_path.touch()
            logger.info("Snapshot complete: %d file(s), %d not sent", emitted, failed)
            status = SnapshotStatus.COMPLETED

        return SnapshotResult(
            status=status,
            build_version=self._build_version,
            marker_path=str(self.marker_path),
            started_at=started_at,
            files_emitted=emitted,
            files_failed=failed,
            volumes=volumes,
        )

    def _walk(
        self,
        loop: asyncio.AbstractEventLoop,
        volumes: list[str],
        cancel: threading.Event,
        started_at: datetime,
    ) -> tuple[int, int, bool]:
        """Worker thread body. Returns (files emitted, files failed, walk completed).

        A file that cannot be scrubbed or sent is reported and skipped.
        """
        snapshot_timestamp = started_at.isoformat()
        emitted = failed = 0
        for volume in volumes:
            for path in iter_files(volume, cancel):
                if cancel.is_set():
                    return emitted, failed, False
                try:
                    properties = scrub(path).to_properties()
                    properties["snapshotTimestamp"] = snapshot_timestamp
                    asyncio.run_coroutine_threadsafe(
                        self._sink.send_event(SNAPSHOT_EVENT, properties), loop
                    ).result()
                except Exception as exc:
                    failed += 1
                    logger.warning("Snapshot event not sent: %s", exc)
                    asyncio.run_coroutine_threadsafe(
                        report_exception(self._sink, exc), loop
                    ).result()
                    continue
                emitted += 1
            if cancel.is_set():
                return emitted, failed, False
        return emitted, failed, True
