"""Locate node and faucet executables and read their versions."""

import logging
import re
import shutil
import subprocess
from pathlib import Path

from localnet.error_handling import ConfigurationError

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+(?:[-+][\w.]+)?)")


def resolve_binary(explicit: Path | None, configured: Path | None, name: str) -> Path:
    """Pick the binary from the command line, the config file, or PATH."""
    for candidate in (explicit, configured):
        if candidate is not None:
            if not candidate.exists():
                raise ConfigurationError(f"{name} binary not found at {candidate}")
            return candidate

    found = shutil.which(name)
    if not found:
        raise ConfigurationError(
            f"Could not find '{name}' on PATH",
            solution="Pass the binary path explicitly or set it in the configuration file",
        )
    return Path(found)


def get_binary_version(path: Path, timeout: float = 10.0) -> str | None:
    """Run ``<binary> --version`` and pull out the version number."""
    try:
        result = subprocess.run(
            [str(path), "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.warning("Could not read version of %s: %s", path, e)
        return None

    if result.returncode != 0:
        logger.warning("%s --version exited with %s", path, result.returncode)
        return None

    match = VERSION_PATTERN.search(result.stdout)
    return match.group(1) if match else None
