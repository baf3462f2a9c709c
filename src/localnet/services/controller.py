"""Service controller interface over the host's process manager."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from localnet.config import LocalnetConfig


class ProcessStatus(Enum):
    """Live state of a service as seen by the process manager."""

    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(frozen=True)
class ProcessState:
    """Status of a service plus its pid when running."""

    status: ProcessStatus
    pid: int | None = None

    @classmethod
    def running(cls, pid: int) -> "ProcessState":
        return cls(ProcessStatus.RUNNING, pid)

    @classmethod
    def stopped(cls) -> "ProcessState":
        return cls(ProcessStatus.STOPPED)

    @classmethod
    def crashed(cls) -> "ProcessState":
        return cls(ProcessStatus.CRASHED)

    @classmethod
    def unknown(cls) -> "ProcessState":
        return cls(ProcessStatus.UNKNOWN)

    @property
    def is_running(self) -> bool:
        return self.status == ProcessStatus.RUNNING


class ServiceController(ABC):
    """Install, start, stop, query and remove services by name.

    This is the only layer that touches OS process primitives. Failures are
    raised as ``StartError`` (install/start) or ``StopError`` (stop/remove).
    """

    @abstractmethod
    def install(
        self,
        service_name: str,
        exe_path: Path,
        args: list[str],
        working_dir: Path,
    ) -> None:
        """Register a service definition without starting it."""

    @abstractmethod
    def start(self, service_name: str) -> int | None:
        """Start an installed service, returning its pid when known."""

    @abstractmethod
    def stop(self, service_name: str) -> None:
        """Stop a service. Stopping a stopped service succeeds."""

    @abstractmethod
    def status(self, service_name: str) -> ProcessState:
        """Query the live state of a service."""

    @abstractmethod
    def remove(self, service_name: str) -> None:
        """Uninstall a service. Fails while it is still running."""


def create_controller(config: "LocalnetConfig") -> ServiceController:
    """Build the controller selected by ``config.service_manager``."""
    if config.service_manager == "systemd":
        from .systemd import SystemdController

        return SystemdController(command_timeout=config.command_timeout)

    from .process import LocalProcessController

    return LocalProcessController(
        config.services_dir,
        stop_timeout=config.stop_timeout,
    )
