"""Service controller backed by systemd user units."""

import logging
import shlex
import subprocess
from pathlib import Path

from localnet.error_handling import StartError, StopError

from .controller import ProcessState, ProcessStatus, ServiceController

logger = logging.getLogger(__name__)

UNIT_TEMPLATE = """[Unit]
Description=Localnet service {service_name}

[Service]
Type=simple
WorkingDirectory={working_dir}
ExecStart={exec_start}
Restart=no

[Install]
WantedBy=default.target
"""


class SystemdController(ServiceController):
    """Drives ``systemctl --user`` for each node service."""

    def __init__(
        self,
        unit_dir: Path | None = None,
        *,
        command_timeout: float = 10.0,
    ):
        self.unit_dir = unit_dir or Path.home() / ".config" / "systemd" / "user"
        self.command_timeout = command_timeout

    def _unit_path(self, service_name: str) -> Path:
        return self.unit_dir / f"{service_name}.service"

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["systemctl", "--user", *args],
            check=False,
            capture_output=True,
            text=True,
            timeout=self.command_timeout,
        )

    def _run_or_raise(self, error_cls: type, service_name: str, stage: str, *args: str) -> None:
        try:
            result = self._systemctl(*args)
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            raise error_cls(service_name, str(e), stage=stage, original_error=e) from e
        if result.returncode != 0:
            raise error_cls(
                service_name,
                result.stderr.strip() or f"systemctl exited with {result.returncode}",
                stage=stage,
            )

    def install(
        self,
        service_name: str,
        exe_path: Path,
        args: list[str],
        working_dir: Path,
    ) -> None:
        if not exe_path.exists():
            raise StartError(service_name, f"binary not found: {exe_path}", stage="install")

        unit = UNIT_TEMPLATE.format(
            service_name=service_name,
            working_dir=working_dir,
            exec_start=shlex.join([str(exe_path), *args]),
        )
        try:
            working_dir.mkdir(parents=True, exist_ok=True)
            self.unit_dir.mkdir(parents=True, exist_ok=True)
            self._unit_path(service_name).write_text(unit)
        except OSError as e:
            raise StartError(service_name, str(e), stage="install", original_error=e) from e

        self._run_or_raise(StartError, service_name, "install", "daemon-reload")
        logger.debug("Installed unit %s", self._unit_path(service_name))

    def start(self, service_name: str) -> int | None:
        if self.status(service_name).is_running:
            raise StartError(service_name, "already running")
        self._run_or_raise(StartError, service_name, "start", "start", f"{service_name}.service")
        state = self.status(service_name)
        logger.info("Started %s (PID %s)", service_name, state.pid)
        return state.pid

    def stop(self, service_name: str) -> None:
        if not self._unit_path(service_name).exists():
            return
        self._run_or_raise(StopError, service_name, "stop", "stop", f"{service_name}.service")
        logger.info("Stopped %s", service_name)

    def status(self, service_name: str) -> ProcessState:
        try:
            result = self._systemctl(
                "show",
                f"{service_name}.service",
                "--property=LoadState,ActiveState,MainPID",
            )
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            logger.warning("Could not query %s: %s", service_name, e)
            return ProcessState.unknown()

        properties = {}
        for line in result.stdout.splitlines():
            key, _, value = line.partition("=")
            properties[key] = value.strip()

        if result.returncode != 0 or properties.get("LoadState") in (None, "not-found"):
            return ProcessState.unknown()

        active_state = properties.get("ActiveState")
        if active_state in ("active", "activating", "reloading"):
            pid = int(properties.get("MainPID") or 0)
            return ProcessState(ProcessStatus.RUNNING, pid or None)
        if active_state == "failed":
            return ProcessState.crashed()
        return ProcessState.stopped()

    def remove(self, service_name: str) -> None:
        unit_path = self._unit_path(service_name)
        if not unit_path.exists():
            return
        if self.status(service_name).is_running:
            raise StopError(service_name, "service is still running", stage="remove")

        try:
            unit_path.unlink()
        except OSError as e:
            raise StopError(service_name, str(e), stage="remove", original_error=e) from e
        self._run_or_raise(StopError, service_name, "remove", "daemon-reload")
        try:
            self._systemctl("reset-failed", f"{service_name}.service")
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            logger.warning("reset-failed for %s did not complete: %s", service_name, e)
        logger.debug("Removed unit %s", unit_path)
