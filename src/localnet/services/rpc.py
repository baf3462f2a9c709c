"""Health probe against a node's local RPC endpoint."""

import logging
import time

import httpx
from pydantic import BaseModel, Field, ValidationError

from localnet import __version__
from localnet.error_handling import ValidationTimeoutError

logger = logging.getLogger(__name__)


class NodeInfo(BaseModel):
    """What a node reports about itself over RPC."""

    peer_id: str
    pid: int | None = None
    listeners: list[str] = Field(default_factory=list)
    connected_peers: int = 0


class NodeRpcClient:
    """Queries ``/node_info`` on a node's RPC port."""

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        request_timeout: float = 5.0,
        retry_interval: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.host = host
        self.retry_interval = retry_interval
        self.client = httpx.Client(
            timeout=request_timeout,
            headers={"User-Agent": f"Localnet/{__version__}"},
            transport=transport,
        )

    def node_info(self, rpc_port: int) -> NodeInfo:
        """Fetch node info once.

        Raises httpx errors when the node cannot be reached, and
        ``ValueError`` (including pydantic's ``ValidationError``) when the
        reply is not a node info object.
        """
        response = self.client.get(f"http://{self.host}:{rpc_port}/node_info")
        response.raise_for_status()
        return NodeInfo.model_validate(response.json())

    def query_node(self, rpc_port: int) -> NodeInfo | None:
        """Single attempt at ``node_info``; None if the node did not answer."""
        try:
            return self.node_info(rpc_port)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("No node info from port %s: %s", rpc_port, e)
            return None

    def wait_for_node(self, service_name: str, rpc_port: int, timeout: float) -> NodeInfo:
        """Poll until the node answers or ``timeout`` seconds pass.

        Connection failures are expected while the node is still binding its
        listener, so they are retried until the deadline.
        """
        deadline = time.monotonic() + timeout
        last_error: Exception | None = None
        while True:
            try:
                return self.node_info(rpc_port)
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                last_error = e
                logger.debug("%s not answering on port %s yet: %s", service_name, rpc_port, e)
            except (ValidationError, ValueError) as e:
                last_error = e
                logger.debug("%s returned malformed node info: %s", service_name, e)

            if time.monotonic() + self.retry_interval > deadline:
                raise ValidationTimeoutError(
                    service_name,
                    timeout,
                    details=str(last_error) if last_error else None,
                    original_error=last_error,
                )
            time.sleep(self.retry_interval)

    def close(self) -> None:
        self.client.close()
