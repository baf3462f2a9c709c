"""Configuration management for Localnet."""

from enum import Enum
from pathlib import Path
from typing import Literal

import tomli
from pydantic import BaseModel, Field, field_validator


class LogFormat(Enum):
    """Log format handed to node and faucet processes."""

    DEFAULT = "default"
    JSON = "json"


class LocalnetConfig(BaseModel):
    """Main configuration for Localnet."""

    # Paths
    data_dir: Path = Field(default=Path("~/.local/share/localnet"))
    log_dir: Path = Field(default=Path("~/.local/share/localnet/logs"))

    # Service management: "process" spawns detached processes directly,
    # "systemd" installs user units
    service_manager: Literal["process", "systemd"] = Field(default="process")

    # Binaries, resolved from PATH when not set
    node_bin_path: Path | None = None
    faucet_bin_path: Path | None = None

    # Network launch defaults
    interval: int = Field(default=200, ge=0)  # milliseconds between node starts
    log_format: LogFormat = Field(default=LogFormat.DEFAULT)

    # Timeout Settings (seconds)
    validation_timeout: float = Field(default=30.0, gt=0)
    probe_retry_interval: float = Field(default=0.5, gt=0)
    stop_timeout: float = Field(default=10.0, gt=0)
    command_timeout: float = Field(default=10.0, gt=0)

    # Teardown
    kill_workers: int = Field(default=4, ge=1)

    @field_validator(
        "data_dir",
        "log_dir",
        "node_bin_path",
        "faucet_bin_path",
        mode="before",
    )
    @classmethod
    def expand_paths(cls, v: Path | str | None) -> Path | None:
        """Expand user home directory in paths."""
        if v is None:
            return None
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @property
    def registry_path(self) -> Path:
        """Location of the local node registry."""
        return self.data_dir / "local_node_registry.json"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / "registry.lock"

    @property
    def nodes_dir(self) -> Path:
        """Parent of every node's data and log directories."""
        return self.data_dir / "nodes"

    @property
    def services_dir(self) -> Path:
        """Service definitions kept by the process controller."""
        return self.data_dir / "services"

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        for dir_path in [self.data_dir, self.log_dir, self.nodes_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


def load_config(config_path: Path | None = None) -> LocalnetConfig:
    """Load configuration from file or defaults."""
    if config_path is None:
        possible_paths = [
            Path.home() / ".config" / "localnet" / "config.toml",
            Path.cwd() / "localnet.toml",
        ]

        for path in possible_paths:
            if path.exists():
                config_path = path
                break

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            config_data = tomli.load(f)
        return LocalnetConfig(**config_data)
    return LocalnetConfig()


def create_sample_config(path: Path) -> None:
    """Create a sample configuration file."""
    sample_config = """# Localnet Configuration
# ======================

# Where the node registry, node directories and service definitions live
data_dir = "~/.local/share/localnet"
log_dir = "~/.local/share/localnet/logs"

# "process" runs nodes as detached processes, "systemd" as user units
service_manager = "process"

# Binaries (looked up on PATH when omitted)
# node_bin_path = "~/.local/bin/safenode"
# faucet_bin_path = "~/.local/bin/faucet"

# Milliseconds to wait between starting successive nodes
interval = 200

# Log format passed to the nodes: "default" or "json"
log_format = "default"

# Timeouts (seconds)
validation_timeout = 30.0
probe_retry_interval = 0.5
stop_timeout = 10.0
command_timeout = 10.0

# Number of services torn down in parallel by 'localnet kill'
kill_workers = 4
"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(sample_config)
