"""Shared test configuration and fixtures."""

import itertools
import logging
from pathlib import Path

import pytest

from localnet.cli import cleanup_logging
from localnet.config import LocalnetConfig
from localnet.core.orchestrator import NetworkOrchestrator
from localnet.error_handling import StartError, StopError, ValidationTimeoutError
from localnet.registry import NodeRegistry
from localnet.services.controller import ProcessState, ServiceController
from localnet.services.rpc import NodeInfo


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)


class FakeClock:
    """Clock whose time only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StubController(ServiceController):
    """In-memory service controller that records every call."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.installed: dict[str, dict] = {}
        self.running: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.start_times: list[float] = []
        self.states: dict[str, ProcessState] = {}
        self.fail_start: set[str] = set()
        self.fail_stop: set[str] = set()
        self.fail_remove: set[str] = set()
        self.on_start = None
        self._pids = itertools.count(1000)

    def install(self, service_name, exe_path, args, working_dir):
        self.calls.append(("install", service_name))
        self.installed[service_name] = {
            "exe_path": exe_path,
            "args": args,
            "working_dir": working_dir,
        }

    def start(self, service_name):
        self.calls.append(("start", service_name))
        if self.on_start is not None:
            self.on_start(service_name)
        if service_name in self.fail_start:
            raise StartError(service_name, "permission denied")
        if self.clock is not None:
            self.start_times.append(self.clock.now)
        pid = next(self._pids)
        self.running[service_name] = pid
        return pid

    def stop(self, service_name):
        self.calls.append(("stop", service_name))
        if service_name in self.fail_stop:
            raise StopError(service_name, "process did not exit")
        self.running.pop(service_name, None)

    def status(self, service_name):
        self.calls.append(("status", service_name))
        if service_name in self.states:
            return self.states[service_name]
        if service_name in self.running:
            return ProcessState.running(self.running[service_name])
        if service_name in self.installed:
            return ProcessState.stopped()
        return ProcessState.unknown()

    def remove(self, service_name):
        self.calls.append(("remove", service_name))
        if service_name in self.fail_remove:
            raise StopError(service_name, "unit is busy", stage="remove")
        if service_name in self.running:
            raise StopError(service_name, "service is still running", stage="remove")
        self.installed.pop(service_name, None)

    def args_for(self, service_name: str) -> list[str]:
        return self.installed[service_name]["args"]


class StubProbe:
    """Health probe that answers for every node except those in ``fail``."""

    def __init__(self):
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self.connected_peers = 3
        self.unreachable_ports: set[int] = set()
        self.queried_ports: list[int] = []
        self.closed = False

    def wait_for_node(self, service_name, rpc_port, timeout):
        self.calls.append(service_name)
        if service_name in self.fail:
            raise ValidationTimeoutError(service_name, timeout)
        return NodeInfo(peer_id=f"peer-{service_name}", connected_peers=self.connected_peers)

    def query_node(self, rpc_port):
        self.queried_ports.append(rpc_port)
        if rpc_port in self.unreachable_ports:
            return None
        return NodeInfo(peer_id=f"peer-{rpc_port}", connected_peers=self.connected_peers)

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(clock):
    return StubController(clock)


@pytest.fixture
def probe():
    return StubProbe()


@pytest.fixture
def config(tmp_path):
    """Create test configuration."""
    return LocalnetConfig(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        validation_timeout=1.0,
    )


@pytest.fixture
def registry(config):
    return NodeRegistry.load(config.registry_path)


@pytest.fixture
def node_bin(tmp_path) -> Path:
    path = tmp_path / "bin" / "safenode"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def faucet_bin(tmp_path) -> Path:
    path = tmp_path / "bin" / "faucet"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def orchestrator(config, controller, probe, clock):
    ports = itertools.count(40000)
    return NetworkOrchestrator(
        config,
        controller,
        probe,
        sleep=clock.sleep,
        port_allocator=lambda: next(ports),
    )
