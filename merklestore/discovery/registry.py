"""
Node Registry

Membership is external: the registry is handed a list of node addresses
(from configuration) and only reports their liveness and capacity, probed
with the node protocol's PING.
"""

import asyncio
import logging
import time
from typing import Iterable, List

from .node import StorageNode
from ..errors import StorageError

logger = logging.getLogger(__name__)


class NodeRegistry:
    """Source of candidate storage nodes and their health signal."""

    async def list_nodes(self) -> List[StorageNode]:
        raise NotImplementedError


class StaticNodeRegistry(NodeRegistry):
    """
    Registry over a fixed set of addresses.

    Every list_nodes() call probes all nodes concurrently; a node that does
    not answer within probe_timeout is reported unhealthy.
    """

    def __init__(self, addresses: Iterable[str], transport, probe_timeout: float = 5.0):
        self.nodes = [StorageNode.from_address(a) for a in addresses]
        self.transport = transport
        self.probe_timeout = probe_timeout

    async def _probe(self, node: StorageNode) -> StorageNode:
        start = time.monotonic()
        try:
            status = await asyncio.wait_for(self.transport.ping(node), timeout=self.probe_timeout)
        except (StorageError, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Node {node.address} failed liveness probe: {e}")
            return StorageNode(node.host, node.port, healthy=False)

        return StorageNode(
            host=node.host,
            port=node.port,
            capacity=int(status.get('capacity', 0)),
            healthy=bool(status.get('healthy', True)),
            latency=time.monotonic() - start,
        )

    async def list_nodes(self) -> List[StorageNode]:
        nodes = await asyncio.gather(*(self._probe(n) for n in self.nodes))
        healthy = sum(1 for n in nodes if n.healthy)
        logger.debug(f"Registry probe: {healthy}/{len(nodes)} nodes healthy")
        return list(nodes)
