"""Persistent record of the node and faucet processes run on this host."""

from .lock import RegistryLock
from .node_registry import NodeRegistry
from .records import NodeRecord, NodeRole, NodeStatus

__all__ = [
    "NodeRecord",
    "NodeRegistry",
    "NodeRole",
    "NodeStatus",
    "RegistryLock",
]
