"""Bring a local node network up and tear it down again."""

import logging
import shutil
import socket
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from localnet.config import LocalnetConfig, LogFormat
from localnet.error_handling import (
    AlreadyRunningError,
    DuplicateNameError,
    NoPeersError,
    PartialFailureError,
    ServiceError,
    ServiceFailure,
    StartError,
    ValidationTimeoutError,
)
from localnet.registry import NodeRecord, NodeRegistry, NodeRole, NodeStatus
from localnet.services.controller import ServiceController
from localnet.services.rpc import NodeInfo

logger = logging.getLogger(__name__)

# Time a faucet gets to fall over before its liveness check
FAUCET_SETTLE_SECONDS = 1.0


class HealthProbe(Protocol):
    def wait_for_node(self, service_name: str, rpc_port: int, timeout: float) -> NodeInfo: ...


def get_free_port(attempts: int = 20) -> int:
    """Ask the OS for a localhost port currently free for both TCP and UDP.

    Nodes serve RPC over TCP and listen over QUIC, so a port handed out
    here must be usable by either.
    """
    for _ in range(attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as tcp:
            tcp.bind(("127.0.0.1", 0))
            port = tcp.getsockname()[1]
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
                try:
                    udp.bind(("127.0.0.1", port))
                except OSError:
                    continue
                return port
    raise OSError("no port free for both TCP and UDP on 127.0.0.1")


def listen_multiaddr(port: int, peer_id: str) -> str:
    return f"/ip4/127.0.0.1/udp/{port}/quic-v1/p2p/{peer_id}"


@dataclass(frozen=True)
class LocalNetworkOptions:
    """Everything one run or join needs, fixed for its duration."""

    node_bin_path: Path
    node_count: int = 25
    join: bool = False
    peers: tuple[str, ...] = ()
    interval: int = 200  # milliseconds
    node_version: str | None = None
    faucet_bin_path: Path | None = None
    faucet_version: str | None = None
    owner: str | None = None
    owner_prefix: str | None = None
    skip_validation: bool = False
    log_format: LogFormat | None = None


@dataclass
class RunSummary:
    """Outcome of a run or join."""

    requested: int
    running: list[str] = field(default_factory=list)
    failures: list[ServiceFailure] = field(default_factory=list)
    not_started: int = 0
    faucet_status: NodeStatus | None = None

    @property
    def running_count(self) -> int:
        return len(self.running)

    @property
    def failed_count(self) -> int:
        return len(self.failures)


@dataclass
class KillSummary:
    """Outcome of tearing down the registered services."""

    removed: list[str] = field(default_factory=list)
    failures: list[ServiceFailure] = field(default_factory=list)


class NetworkOrchestrator:
    """Drives the service controller to launch and destroy local networks.

    Nodes are started one after another, ``interval`` apart, and the registry
    is saved after every step so an interrupted run leaves behind an accurate
    record of what was actually started.
    """

    def __init__(
        self,
        config: LocalnetConfig,
        controller: ServiceController,
        probe: HealthProbe,
        *,
        sleep: Callable[[float], None] = time.sleep,
        port_allocator: Callable[[], int] = get_free_port,
    ):
        self.config = config
        self.controller = controller
        self.probe = probe
        self._sleep = sleep
        self._allocate_port = port_allocator

    def run(self, options: LocalNetworkOptions, registry: NodeRegistry) -> RunSummary:
        """Start ``options.node_count`` nodes, plus a faucet on fresh networks.

        Raises ``PartialFailureError`` once the batch is done if any service
        ended up failed; the registry then still describes every service.
        """
        if not options.join and not registry.is_empty():
            raise AlreadyRunningError(len(registry.active()))

        if options.join:
            seeds = list(options.peers) or registry.bootstrap_peers or registry.running_listen_addrs()
            if not seeds:
                raise NoPeersError()
        else:
            seeds = []

        first_number = registry.next_node_number()
        planned = [self._plan_node(options, first_number + i) for i in range(options.node_count)]
        faucet = None
        if options.faucet_bin_path and not options.join:
            faucet = self._plan_faucet(options)
            planned_all = [*planned, faucet]
        else:
            planned_all = planned
        for record in planned_all:
            if registry.find(record.service_name) is not None:
                raise DuplicateNameError(record.service_name)

        summary = RunSummary(requested=options.node_count)
        for index, record in enumerate(planned):
            if index > 0:
                self._sleep(options.interval / 1000)

            genesis = not options.join and index == 0
            failure = self._launch_node(record, options, [] if genesis else seeds, genesis, registry)
            if failure is None:
                summary.running.append(record.service_name)
                if genesis:
                    seeds = [record.listen_addr]
                    registry.bootstrap_peers = seeds
                    registry.save()
                continue

            summary.failures.append(failure)
            if genesis:
                summary.not_started = len(planned_all) - 1
                logger.error("Genesis node failed; not starting the remaining nodes")
                break

        if faucet is not None and seeds:
            self._sleep(options.interval / 1000)
            failure = self._launch_faucet(faucet, options, seeds, registry)
            summary.faucet_status = faucet.status
            if failure is not None:
                summary.failures.append(failure)

        logger.info(
            "Network launch finished: %d running, %d failed",
            summary.running_count,
            summary.failed_count,
        )
        if summary.failures or summary.not_started:
            error = PartialFailureError(
                "run",
                summary.failures,
                len(planned_all),
                skipped=summary.not_started,
            )
            error.summary = summary
            raise error
        return summary

    def _plan_node(self, options: LocalNetworkOptions, number: int) -> NodeRecord:
        if options.owner_prefix:
            service_name = f"{options.owner_prefix}-node{number}"
            owner = f"{options.owner_prefix}_{number}"
        else:
            service_name = f"node-local{number}"
            owner = options.owner

        service_dir = self.config.nodes_dir / service_name
        return NodeRecord(
            service_name=service_name,
            role=NodeRole.NODE,
            number=number,
            data_dir=service_dir / "data",
            log_dir=service_dir / "logs",
            bin_path=options.node_bin_path,
            version=options.node_version,
            owner=owner,
            owner_prefix=options.owner_prefix,
        )

    def _plan_faucet(self, options: LocalNetworkOptions) -> NodeRecord:
        service_name = f"{options.owner_prefix}-faucet" if options.owner_prefix else "faucet"
        service_dir = self.config.nodes_dir / service_name
        return NodeRecord(
            service_name=service_name,
            role=NodeRole.FAUCET,
            data_dir=service_dir / "data",
            log_dir=service_dir / "logs",
            bin_path=options.faucet_bin_path,
            version=options.faucet_version,
            owner_prefix=options.owner_prefix,
        )

    def _node_args(
        self,
        record: NodeRecord,
        options: LocalNetworkOptions,
        peers: list[str],
        genesis: bool,
    ) -> list[str]:
        args = [
            "--rpc",
            f"127.0.0.1:{record.rpc_port}",
            "--port",
            str(record.port),
            "--root-dir",
            str(record.data_dir),
            "--log-output-dest",
            str(record.log_dir),
            "--local",
        ]
        if genesis:
            args.append("--first")
        for peer in peers:
            args.extend(["--peer", peer])
        if record.owner:
            args.extend(["--owner", record.owner])
        if options.log_format == LogFormat.JSON:
            args.extend(["--log-format", "json"])
        return args

    def _faucet_args(
        self,
        record: NodeRecord,
        options: LocalNetworkOptions,
        peers: list[str],
    ) -> list[str]:
        args = ["--log-output-dest", str(record.log_dir)]
        for peer in peers:
            args.extend(["--peer", peer])
        if options.log_format == LogFormat.JSON:
            args.extend(["--log-format", "json"])
        args.append("server")
        return args

    def _install_and_start(
        self,
        record: NodeRecord,
        args: list[str],
        registry: NodeRegistry,
    ) -> ServiceFailure | None:
        """Register the record, then install and start its service."""
        registry.upsert(record, new=True)
        registry.save()

        try:
            record.data_dir.mkdir(parents=True, exist_ok=True)
            record.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return self._fail(record, registry, "install", str(e))

        try:
            self.controller.install(record.service_name, record.bin_path, args, record.data_dir)
            record.pid = self.controller.start(record.service_name)
        except StartError as e:
            logger.error("Failed to start %s: %s", record.service_name, e.reason)
            return self._fail(record, registry, e.stage, e.reason)

        record.set_status(NodeStatus.STARTING)
        registry.save()
        logger.info("%s started (PID %s)", record.service_name, record.pid)
        return None

    def _launch_node(
        self,
        record: NodeRecord,
        options: LocalNetworkOptions,
        peers: list[str],
        genesis: bool,
        registry: NodeRegistry,
    ) -> ServiceFailure | None:
        # Allocated at launch so earlier nodes have already bound theirs
        try:
            record.rpc_port = self._allocate_port()
            record.port = self._allocate_port()
            while record.port == record.rpc_port:
                record.port = self._allocate_port()
        except OSError as e:
            registry.upsert(record, new=True)
            return self._fail(record, registry, "install", f"no free port: {e}")

        args = self._node_args(record, options, peers, genesis)
        failure = self._install_and_start(record, args, registry)
        if failure is not None:
            return failure

        # The genesis node's address seeds every other node, so it is always probed
        if genesis or not options.skip_validation:
            try:
                info = self.probe.wait_for_node(
                    record.service_name,
                    record.rpc_port,
                    self.config.validation_timeout,
                )
            except ValidationTimeoutError as e:
                logger.error("%s failed validation: %s", record.service_name, e.message)
                return self._fail(record, registry, "validation", e.message)

            record.peer_id = info.peer_id
            record.pid = info.pid or record.pid
            record.connected_peers = info.connected_peers
            record.listen_addr = (
                info.listeners[0] if info.listeners else listen_multiaddr(record.port, info.peer_id)
            )

        record.set_status(NodeStatus.RUNNING)
        registry.save()
        return None

    def _launch_faucet(
        self,
        record: NodeRecord,
        options: LocalNetworkOptions,
        peers: list[str],
        registry: NodeRegistry,
    ) -> ServiceFailure | None:
        args = self._faucet_args(record, options, peers)
        failure = self._install_and_start(record, args, registry)
        if failure is not None:
            return failure

        if not options.skip_validation:
            # The faucet has no RPC endpoint; check it is still alive instead
            self._sleep(FAUCET_SETTLE_SECONDS)
            state = self.controller.status(record.service_name)
            if not state.is_running:
                return self._fail(
                    record,
                    registry,
                    "validation",
                    f"faucet is {state.status.value} after start",
                )
            record.pid = state.pid or record.pid

        record.set_status(NodeStatus.RUNNING)
        registry.save()
        logger.info("Faucet %s running", record.service_name)
        return None

    def _fail(
        self,
        record: NodeRecord,
        registry: NodeRegistry,
        stage: str,
        cause: str,
    ) -> ServiceFailure:
        record.set_status(NodeStatus.FAILED, reason=f"{stage}: {cause}")
        registry.save()
        return ServiceFailure(record.service_name, stage, cause)

    def kill(self, registry: NodeRegistry, *, keep_directories: bool = False) -> KillSummary:
        """Stop and uninstall every registered service.

        Services are torn down in parallel; registry updates happen only on
        the calling thread. Services that could not be torn down keep their
        records so a retry can target them.
        """
        targets = registry.active()
        summary = KillSummary()
        if not targets:
            return summary

        workers = min(self.config.kill_workers, len(targets))
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._teardown, record.service_name): record
                    for record in targets
                }
                for future in as_completed(futures):
                    record = futures[future]
                    failure = future.result()
                    if failure is None and not keep_directories:
                        failure = self._delete_directories(record)
                    if failure is not None:
                        logger.error("Could not tear down %s", failure)
                        summary.failures.append(failure)
                        continue

                    record.pid = None
                    record.set_status(NodeStatus.REMOVED)
                    summary.removed.append(record.service_name)
                    logger.info("Removed %s", record.service_name)
        finally:
            # Whatever was torn down before an interruption stays recorded
            registry.save()

        if summary.failures:
            error = PartialFailureError("kill", summary.failures, len(targets))
            error.summary = summary
            raise error
        return summary

    def _teardown(self, service_name: str) -> ServiceFailure | None:
        stage = "stop"
        try:
            self.controller.stop(service_name)
            stage = "remove"
            self.controller.remove(service_name)
        except ServiceError as e:
            return ServiceFailure(service_name, e.stage, e.reason)
        except Exception as e:
            logger.exception("Unexpected error tearing down %s", service_name)
            return ServiceFailure(service_name, stage, str(e) or type(e).__name__)
        return None

    def _delete_directories(self, record: NodeRecord) -> ServiceFailure | None:
        try:
            for directory in (record.data_dir, record.log_dir):
                if directory.exists():
                    shutil.rmtree(directory)
            parent = record.data_dir.parent
            if parent.exists() and not any(parent.iterdir()):
                parent.rmdir()
        except OSError as e:
            return ServiceFailure(record.service_name, "cleanup", str(e))
        return None
