"""Single source of truth for all configuration.

All modules import settings from here, never from os.environ directly.

Each setting is read from the ``FILETRACE_<KEY>`` environment variable
first, then from ``secrets/agent.env`` (or the SOPS-encrypted
``secrets/agent.env.enc`` when FILETRACE_USE_SOPS=true), then falls back to
its default.
"""

import os
import sys
from pathlib import Path

from filetrace.capture.watcher import DEFAULT_EXCLUDE
from filetrace.secrets import read_env_file

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_PREFIX = "FILETRACE_"

USE_SOPS = os.environ.get("FILETRACE_USE_SOPS", "false").lower() == "true"


_file = (
    read_env_file(PROJECT_ROOT / "secrets/agent.env.enc", encrypted=True)
    if USE_SOPS
    else read_env_file(PROJECT_ROOT / "secrets/agent.env")
)


def _get(key: str, default: str = "") -> str:
    value = os.environ.get(ENV_PREFIX + key)
    if value is None:
        value = _file.get(key)
    return default if value is None else value


def _default_state_dir() -> str:
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return str(Path(base) / "FileTrace")
    base = os.environ.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return str(Path(base) / "filetrace")


# --- Collector ---
COLLECTOR_URL: str = _get("COLLECTOR_URL")
COLLECTOR_API_KEY: str = _get("COLLECTOR_API_KEY")

# --- Local state (snapshot markers) ---
STATE_DIR: str = _get("STATE_DIR", _default_state_dir())

# --- Event sources ---
EVENT_SOURCE: str = _get("EVENT_SOURCE", "auto")
TRACE_SESSION: str = _get("TRACE_SESSION")
TRACE_BUFFER_MB: int = int(_get("TRACE_BUFFER_MB", "128"))
WATCH_PATHS: str = _get("WATCH_PATHS")
WATCH_EXCLUDE: str = _get("WATCH_EXCLUDE", DEFAULT_EXCLUDE)

# --- Pipeline ---
METRIC_INTERVAL_SECONDS: float = float(_get("METRIC_INTERVAL_SECONDS", "60"))
DRAIN_TIMEOUT_SECONDS: float = float(_get("DRAIN_TIMEOUT_SECONDS", "5"))
SNAPSHOT_ENABLED: bool = _get("SNAPSHOT_ENABLED", "true").lower() == "true"
BUILD_VERSION: str = _get("BUILD_VERSION")
