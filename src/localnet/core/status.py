"""Reconcile the registry with live process state and report on it."""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from rich.table import Table

from localnet.error_handling import NodeNotRunningError
from localnet.registry import NodeRecord, NodeRegistry, NodeRole, NodeStatus
from localnet.services.controller import ProcessState, ProcessStatus, ServiceController
from localnet.services.rpc import NodeInfo

logger = logging.getLogger(__name__)


@dataclass
class NodeStatusEntry:
    """One row of a status report."""

    service_name: str
    role: str
    status: str
    pid: int | None
    peer_id: str | None
    connected_peers: int | None
    rpc_port: int | None
    listen_addr: str | None
    data_dir: str
    log_dir: str
    version: str | None
    owner: str | None
    failure_reason: str | None

    @classmethod
    def from_record(cls, record: NodeRecord) -> "NodeStatusEntry":
        return cls(
            service_name=record.service_name,
            role=record.role.value,
            status=record.status.value,
            pid=record.pid,
            peer_id=record.peer_id,
            connected_peers=record.connected_peers,
            rpc_port=record.rpc_port,
            listen_addr=record.listen_addr,
            data_dir=str(record.data_dir),
            log_dir=str(record.log_dir),
            version=record.version,
            owner=record.owner,
            failure_reason=record.failure_reason,
        )

    @property
    def is_running(self) -> bool:
        return self.status == NodeStatus.RUNNING.value


@dataclass
class StatusReport:
    """Status of every registered service after reconciliation."""

    entries: list[NodeStatusEntry] = field(default_factory=list)
    corrected: list[str] = field(default_factory=list)

    @property
    def not_running(self) -> list[str]:
        return [
            entry.service_name
            for entry in self.entries
            if not entry.is_running and entry.status != NodeStatus.REMOVED.value
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [asdict(entry) for entry in self.entries if entry.role == NodeRole.NODE.value],
            "faucet": next(
                (asdict(entry) for entry in self.entries if entry.role == NodeRole.FAUCET.value),
                None,
            ),
            "corrected": self.corrected,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def reconcile_status(current: NodeStatus, live: ProcessState) -> NodeStatus:
    """Status a record should have given what the process manager reports.

    Only processes that have died are acted on; anything else keeps its
    stored status.
    """
    if current not in (NodeStatus.STARTING, NodeStatus.RUNNING):
        return current
    if live.status == ProcessStatus.CRASHED:
        return NodeStatus.FAILED
    if live.status in (ProcessStatus.STOPPED, ProcessStatus.UNKNOWN):
        return NodeStatus.STOPPED
    return current


class NodeQuery(Protocol):
    def query_node(self, rpc_port: int) -> NodeInfo | None: ...


class StatusReporter:
    """Refreshes registry records from the service controller.

    With a ``probe``, running nodes are also asked over RPC for their
    current peer count.
    """

    def __init__(self, controller: ServiceController, probe: NodeQuery | None = None):
        self.controller = controller
        self.probe = probe

    def report(self, registry: NodeRegistry, *, fail: bool = False) -> StatusReport:
        """Reconcile every record, save the registry and build a report.

        With ``fail=True``, raises ``NodeNotRunningError`` after saving if
        any registered service is not running.
        """
        report = StatusReport()
        for record in registry.all():
            if record.is_active:
                self._refresh(record, report)
            report.entries.append(NodeStatusEntry.from_record(record))

        registry.save()

        if report.corrected:
            logger.info("Corrected status of %d services", len(report.corrected))
        if fail and report.not_running:
            raise NodeNotRunningError(report.not_running, report=report)
        return report

    def _refresh(self, record: NodeRecord, report: StatusReport) -> None:
        live = self.controller.status(record.service_name)
        new_status = reconcile_status(record.status, live)

        if new_status != record.status:
            logger.warning(
                "%s is recorded as %s but is %s",
                record.service_name,
                record.status.value,
                live.status.value,
            )
            reason = "process exited unexpectedly" if new_status == NodeStatus.FAILED else None
            record.set_status(new_status, reason=reason)
            record.pid = None
            report.corrected.append(record.service_name)
        elif live.is_running:
            if live.pid and live.pid != record.pid:
                record.pid = live.pid
            self._refresh_peers(record)

    def _refresh_peers(self, record: NodeRecord) -> None:
        if self.probe is None or record.role != NodeRole.NODE or record.rpc_port is None:
            return
        info = self.probe.query_node(record.rpc_port)
        if info is None:
            logger.debug("%s did not answer its RPC query", record.service_name)
            return
        record.connected_peers = info.connected_peers
        record.peer_id = record.peer_id or info.peer_id


def get_status_color(status: str) -> str:
    """Get color code for status display."""
    status_colors = {
        "added": "dim",
        "starting": "blue",
        "running": "green",
        "stopped": "yellow",
        "removed": "dim",
        "failed": "red",
    }
    return status_colors.get(status.lower(), "white")


def build_status_table(report: StatusReport, *, details: bool = False) -> Table:
    """Render a status report as a rich table."""
    table = Table()
    table.add_column("Service")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("PID", justify="right")
    table.add_column("Peers", justify="right")
    if details:
        table.add_column("Peer ID")
        table.add_column("RPC", justify="right")
        table.add_column("Version")
        table.add_column("Owner")
        table.add_column("Data Dir")
        table.add_column("Log Dir")

    for entry in report.entries:
        color = get_status_color(entry.status)
        row = [
            entry.service_name,
            entry.role.title(),
            f"[{color}]{entry.status.upper()}[/{color}]",
            str(entry.pid) if entry.pid else "-",
            str(entry.connected_peers) if entry.connected_peers is not None else "-",
        ]
        if details:
            row.extend(
                [
                    entry.peer_id or "-",
                    str(entry.rpc_port) if entry.rpc_port else "-",
                    entry.version or "-",
                    entry.owner or "-",
                    entry.data_dir,
                    entry.log_dir,
                ],
            )
        table.add_row(*row)

    return table
