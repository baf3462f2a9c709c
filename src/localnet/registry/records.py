"""Node record model and its status lifecycle."""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from localnet.error_handling import InvalidTransitionError


class NodeRole(Enum):
    """What a managed process is."""

    NODE = "node"
    FAUCET = "faucet"


class NodeStatus(Enum):
    """Lifecycle of a managed process."""

    ADDED = "added"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"
    FAILED = "failed"


# Position in the forward-only lifecycle; FAILED sits outside it
_LIFECYCLE_ORDER = {
    NodeStatus.ADDED: 0,
    NodeStatus.STARTING: 1,
    NodeStatus.RUNNING: 2,
    NodeStatus.STOPPED: 3,
    NodeStatus.REMOVED: 4,
}


def is_allowed_transition(current: NodeStatus, new: NodeStatus) -> bool:
    """Whether a record may move from ``current`` to ``new``."""
    if current == new:
        return True
    if new == NodeStatus.FAILED:
        return current != NodeStatus.REMOVED
    if current == NodeStatus.FAILED:
        # Failed records are only ever torn down
        return new == NodeStatus.REMOVED
    return _LIFECYCLE_ORDER[new] > _LIFECYCLE_ORDER[current]


class NodeRecord(BaseModel):
    """One node or faucet process managed on this host.

    Unknown fields in the registry file are ignored so that older builds can
    still read registries written by newer ones.
    """

    service_name: str
    role: NodeRole = NodeRole.NODE
    status: NodeStatus = NodeStatus.ADDED

    number: int = 0
    pid: int | None = None
    peer_id: str | None = None
    listen_addr: str | None = None
    rpc_port: int | None = None
    port: int | None = None

    data_dir: Path
    log_dir: Path
    bin_path: Path
    version: str | None = None

    owner: str | None = None
    owner_prefix: str | None = None
    connected_peers: int | None = None
    failure_reason: str | None = None

    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def set_status(self, status: NodeStatus, *, reason: str | None = None) -> None:
        """Move the record to ``status``, enforcing the lifecycle."""
        if not is_allowed_transition(self.status, status):
            raise InvalidTransitionError(
                self.service_name,
                self.status.value,
                status.value,
            )
        self.status = status
        if status == NodeStatus.FAILED:
            self.failure_reason = reason
        self.updated_at = datetime.now(UTC)

    @property
    def is_active(self) -> bool:
        """Whether the record still describes something to tear down."""
        return self.status != NodeStatus.REMOVED

    def __str__(self) -> str:
        return f"{self.service_name} ({self.status.value})"
