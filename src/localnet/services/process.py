"""Service controller that runs nodes as detached child processes."""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from localnet.error_handling import StartError, StopError

from .controller import ProcessState, ServiceController

logger = logging.getLogger(__name__)


class ServiceDefinition(BaseModel):
    """What the controller needs to (re)start and track one service."""

    service_name: str
    exe_path: Path
    args: list[str] = Field(default_factory=list)
    working_dir: Path
    pid: int | None = None


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        os.kill(pid, 0)
        return True
    except (OSError, ProcessLookupError):
        return False


class LocalProcessController(ServiceController):
    """Tracks services as JSON definitions plus the pid of the live process.

    Processes are started in their own session so they outlive the command
    that launched them; later invocations find them again through the pid
    stored in the definition.
    """

    def __init__(self, services_dir: Path, *, stop_timeout: float = 10.0):
        self.services_dir = services_dir
        self.stop_timeout = stop_timeout
        # Children started by this process, so they can be reaped
        self._children: dict[str, subprocess.Popen] = {}

    def _definition_path(self, service_name: str) -> Path:
        return self.services_dir / f"{service_name}.json"

    def _read(self, service_name: str) -> ServiceDefinition | None:
        path = self._definition_path(service_name)
        if not path.exists():
            return None
        try:
            return ServiceDefinition.model_validate_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.warning("Unreadable service definition %s: %s", path, e)
            return None

    def _write(self, definition: ServiceDefinition) -> None:
        self.services_dir.mkdir(parents=True, exist_ok=True)
        path = self._definition_path(definition.service_name)
        path.write_text(definition.model_dump_json(indent=2))

    def _is_alive(self, service_name: str, pid: int) -> bool:
        child = self._children.get(service_name)
        if child is not None and child.pid == pid:
            return child.poll() is None
        return is_process_running(pid)

    def install(
        self,
        service_name: str,
        exe_path: Path,
        args: list[str],
        working_dir: Path,
    ) -> None:
        if not exe_path.exists():
            raise StartError(service_name, f"binary not found: {exe_path}", stage="install")

        existing = self._read(service_name)
        if existing and existing.pid and self._is_alive(service_name, existing.pid):
            raise StartError(
                service_name,
                f"already installed and running (PID {existing.pid})",
                stage="install",
            )

        try:
            self._write(
                ServiceDefinition(
                    service_name=service_name,
                    exe_path=exe_path,
                    args=args,
                    working_dir=working_dir,
                ),
            )
        except OSError as e:
            raise StartError(service_name, str(e), stage="install", original_error=e) from e
        logger.debug("Installed %s: %s %s", service_name, exe_path, " ".join(args))

    def start(self, service_name: str) -> int | None:
        definition = self._read(service_name)
        if definition is None:
            raise StartError(service_name, "service is not installed")
        if definition.pid and self._is_alive(service_name, definition.pid):
            raise StartError(service_name, f"already running (PID {definition.pid})")

        try:
            definition.working_dir.mkdir(parents=True, exist_ok=True)
            with open(definition.working_dir / "stdout.log", "ab") as output:
                child = subprocess.Popen(
                    [str(definition.exe_path), *definition.args],
                    cwd=definition.working_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise StartError(service_name, str(e), original_error=e) from e

        self._children[service_name] = child
        definition.pid = child.pid
        try:
            self._write(definition)
        except OSError as e:
            # Nothing else records this pid, so it cannot be left running
            self._terminate(service_name, child.pid)
            self._children.pop(service_name, None)
            raise StartError(service_name, str(e), original_error=e) from e
        logger.info("Started %s (PID %s)", service_name, child.pid)
        return child.pid

    def stop(self, service_name: str) -> None:
        definition = self._read(service_name)
        if definition is None or definition.pid is None:
            return

        pid = definition.pid
        if self._is_alive(service_name, pid) and not self._terminate(service_name, pid):
            raise StopError(service_name, f"process {pid} did not exit")

        self._children.pop(service_name, None)
        definition.pid = None
        try:
            self._write(definition)
        except OSError as e:
            raise StopError(service_name, str(e), original_error=e) from e
        logger.info("Stopped %s (PID %s)", service_name, pid)

    def _terminate(self, service_name: str, pid: int) -> bool:
        """Stop a process gracefully, then forcefully if needed."""
        child = self._children.get(service_name)
        if child is not None and child.pid == pid:
            child.terminate()
            try:
                child.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                child.kill()
                try:
                    child.wait(timeout=self.stop_timeout)
                except subprocess.TimeoutExpired:
                    return False
            return True

        try:
            os.kill(pid, signal.SIGTERM)

            deadline = time.monotonic() + self.stop_timeout
            while time.monotonic() < deadline:
                if not is_process_running(pid):
                    return True
                time.sleep(0.1)

            os.kill(pid, signal.SIGKILL)
            time.sleep(0.5)
            return not is_process_running(pid)

        except (OSError, ProcessLookupError):
            return True

    def status(self, service_name: str) -> ProcessState:
        definition = self._read(service_name)
        if definition is None:
            return ProcessState.unknown()
        if definition.pid is None:
            return ProcessState.stopped()
        if self._is_alive(service_name, definition.pid):
            return ProcessState.running(definition.pid)
        # Exited without being asked to
        return ProcessState.crashed()

    def remove(self, service_name: str) -> None:
        definition = self._read(service_name)
        if definition is None:
            path = self._definition_path(service_name)
            path.unlink(missing_ok=True)
            return
        if definition.pid and self._is_alive(service_name, definition.pid):
            raise StopError(service_name, "service is still running", stage="remove")

        try:
            self._definition_path(service_name).unlink(missing_ok=True)
        except OSError as e:
            raise StopError(service_name, str(e), stage="remove", original_error=e) from e
        logger.debug("Removed service definition for %s", service_name)
