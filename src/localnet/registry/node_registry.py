"""File-backed registry of locally managed node processes."""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from localnet.error_handling import DuplicateNameError, PersistenceError

from .records import NodeRecord, NodeRole, NodeStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class RegistryDocument(BaseModel):
    """On-disk layout of the registry file."""

    schema_version: int = SCHEMA_VERSION
    bootstrap_peers: list[str] = Field(default_factory=list)
    nodes: list[NodeRecord] = Field(default_factory=list)


class NodeRegistry:
    """Ordered table of node records persisted as a single JSON file.

    All changes are made in memory and only reach disk through ``save``,
    which writes a temporary file beside the registry and renames it into
    place so a crash never leaves a truncated registry behind.
    """

    def __init__(
        self,
        path: Path,
        nodes: list[NodeRecord] | None = None,
        bootstrap_peers: list[str] | None = None,
    ):
        self.path = path
        self.nodes: list[NodeRecord] = list(nodes or [])
        self.bootstrap_peers: list[str] = list(bootstrap_peers or [])

    @classmethod
    def load(cls, path: Path) -> "NodeRegistry":
        """Load the registry at ``path``; a missing file is an empty registry."""
        if not path.exists():
            logger.debug("No registry at %s, starting empty", path)
            return cls(path)

        try:
            document = RegistryDocument.model_validate_json(path.read_bytes())
        except OSError as e:
            raise PersistenceError(
                f"Failed to read node registry: {e}",
                path=path,
                original_error=e,
            ) from e
        except ValidationError as e:
            raise PersistenceError(
                f"Node registry at {path} is corrupt",
                path=path,
                details=str(e),
                solution="Inspect the file, or remove it once no nodes are running",
                original_error=e,
            ) from e

        registry = cls(path, document.nodes, document.bootstrap_peers)
        registry._check_unique_names()
        logger.debug("Loaded %d records from %s", len(registry.nodes), path)
        return registry

    def save(self) -> None:
        """Atomically replace the on-disk registry with the in-memory one."""
        document = RegistryDocument(
            bootstrap_peers=self.bootstrap_peers,
            nodes=self.nodes,
        )
        payload = json.dumps(document.model_dump(mode="json"), indent=2)

        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise PersistenceError(
                f"Failed to save node registry: {e}",
                path=self.path,
                original_error=e,
            ) from e

        logger.debug("Saved %d records to %s", len(self.nodes), self.path)

    def delete(self) -> None:
        """Remove the registry file; a no-op if it is already gone."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Failed to delete node registry: {e}",
                path=self.path,
                original_error=e,
            ) from e
        logger.info("Deleted node registry %s", self.path)

    def upsert(self, record: NodeRecord, *, new: bool = False) -> None:
        """Insert or replace a record by service name.

        With ``new=True`` the record must not already exist.
        """
        for index, existing in enumerate(self.nodes):
            if existing.service_name == record.service_name:
                if new:
                    raise DuplicateNameError(record.service_name)
                self.nodes[index] = record
                return
        self.nodes.append(record)

    def remove(self, service_name: str) -> NodeRecord | None:
        """Drop a record, returning it if it was present."""
        record = self.find(service_name)
        if record is not None:
            self.nodes.remove(record)
        return record

    def find(self, service_name: str) -> NodeRecord | None:
        for record in self.nodes:
            if record.service_name == service_name:
                return record
        return None

    def all(self) -> list[NodeRecord]:
        return list(self.nodes)

    def active(self) -> list[NodeRecord]:
        """Records that have not been torn down."""
        return [record for record in self.nodes if record.is_active]

    def nodes_with_role(self, role: NodeRole) -> list[NodeRecord]:
        return [record for record in self.nodes if record.role == role]

    def running_listen_addrs(self) -> list[str]:
        """Listen addresses of running nodes, usable as join peers."""
        return [
            record.listen_addr
            for record in self.nodes
            if record.role == NodeRole.NODE
            and record.status == NodeStatus.RUNNING
            and record.listen_addr
        ]

    def next_node_number(self) -> int:
        """1-based number for the next node added to the registry."""
        numbers = [record.number for record in self.nodes_with_role(NodeRole.NODE)]
        return max(numbers, default=0) + 1

    def is_empty(self) -> bool:
        return not self.active()

    def _check_unique_names(self) -> None:
        seen: set[str] = set()
        for record in self.nodes:
            if record.service_name in seen:
                raise DuplicateNameError(
                    record.service_name,
                    details=f"Registry file: {self.path}",
                )
            seen.add(record.service_name)

    def __len__(self) -> int:
        return len(self.nodes)
