"""Host-facing services.

Wrappers for everything outside the registry: the process manager that
runs node services, the RPC health probe and binary discovery. Keeping
them here lets the orchestrator be tested against stubs.
"""

from .controller import (
    ProcessState,
    ProcessStatus,
    ServiceController,
    create_controller,
)
from .rpc import NodeInfo, NodeRpcClient

__all__ = [
    "NodeInfo",
    "NodeRpcClient",
    "ProcessState",
    "ProcessStatus",
    "ServiceController",
    "create_controller",
]
