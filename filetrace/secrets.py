"""Reading the agent's settings file, plain or SOPS-encrypted."""

import logging
import subprocess
from io import StringIO
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

SOPS_TIMEOUT = 30


def _sops_decrypt(path: Path) -> str:
    result = subprocess.run(
        ["sops", "--decrypt", "--input-type", "dotenv", "--output-type", "dotenv", str(path)],
        capture_output=True,
        text=True,
        check=True,
        timeout=SOPS_TIMEOUT,
    )
    return result.stdout


def read_env_file(path: str | Path, *, encrypted: bool = False) -> dict[str, str | None]:
    """Return the key-value pairs of a .env settings file.

    An absent file yields an empty mapping; the agent is then configured
    through FILETRACE_* environment variables alone.

    Raises:
        subprocess.CalledProcessError: If SOPS fails to decrypt the file.
    """
    path = Path(path)
    if not path.exists():
        logger.debug("No settings file at %s", path)
        return {}

    if encrypted:
        return dict(dotenv_values(stream=StringIO(_sops_decrypt(path))))
    return dict(dotenv_values(path))
