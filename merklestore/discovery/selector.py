"""
Node Selector

Design Decision: Selection Strategies
=====================================

Options Considered:
1. max         - largest free capacity first
2. round_robin - rotate the starting point on every call
3. random      - uniform shuffle
4. latency     - fastest liveness probe first

Decision: support all four, default "max".
- "max" spreads new data towards the emptiest nodes
- round_robin spreads load across repeated calls on the same selector
- Ties are broken by address so results are reproducible

Excluded and unhealthy nodes are filtered out before any strategy runs,
which is what lets a transfer retry while skipping nodes that failed.
"""

import logging
import random
from typing import Callable, Dict, Iterable, List, Optional

from .node import ReplicaSet, StorageNode
from .registry import NodeRegistry
from ..errors import InsufficientNodesError

logger = logging.getLogger(__name__)

STRATEGY_MAX = 'max'
STRATEGY_ROUND_ROBIN = 'round_robin'
STRATEGY_RANDOM = 'random'
STRATEGY_LATENCY = 'latency'


class NodeSelector:
    """Ranks and filters registry nodes for one transfer."""

    def __init__(self, registry: NodeRegistry, rng: Optional[random.Random] = None):
        self.registry = registry
        self._rng = rng or random.Random()
        self._cursor = 0
        self._strategies: Dict[str, Callable[[List[StorageNode]], List[StorageNode]]] = {
            STRATEGY_MAX: self._by_capacity,
            STRATEGY_ROUND_ROBIN: self._round_robin,
            STRATEGY_RANDOM: self._random,
            STRATEGY_LATENCY: self._by_latency,
        }

    @property
    def strategies(self) -> List[str]:
        return sorted(self._strategies)

    async def select(self, min_count: int, replica_count: int,
                     exclude: Iterable = (), strategy: str = STRATEGY_MAX) -> ReplicaSet:
        """
        Choose nodes for a transfer.

        Returns max(min_count, replica_count) nodes when that many are
        eligible, otherwise as many as exist, but never fewer than min_count.

        Args:
            min_count: Minimum number of usable nodes
            replica_count: Desired number of nodes
            exclude: Nodes or 'host:port' addresses never to return
            strategy: Ranking policy name

        Raises:
            InsufficientNodesError: fewer than min_count eligible nodes
            ValueError: unknown strategy
        """
        rank = self._strategies.get(strategy)
        if rank is None:
            raise ValueError(f"Unknown selection strategy {strategy!r}; "
                             f"expected one of {', '.join(self.strategies)}")

        excluded = {e.address if isinstance(e, StorageNode) else str(e) for e in exclude}
        nodes = await self.registry.list_nodes()

        eligible = sorted(
            (n for n in nodes if n.healthy and n.address not in excluded),
            key=lambda n: n.address
        )
        if len(eligible) < min_count:
            raise InsufficientNodesError(min_count, len(eligible))

        wanted = max(min_count, replica_count)
        chosen = rank(eligible)[:wanted]

        logger.debug(f"Selected {len(chosen)} nodes ({strategy}): "
                     f"{', '.join(n.address for n in chosen)}")
        return ReplicaSet(chosen)

    def _by_capacity(self, nodes: List[StorageNode]) -> List[StorageNode]:
        return sorted(nodes, key=lambda n: -n.capacity)

    def _by_latency(self, nodes: List[StorageNode]) -> List[StorageNode]:
        return sorted(nodes, key=lambda n: n.latency)

    def _random(self, nodes: List[StorageNode]) -> List[StorageNode]:
        nodes = list(nodes)
        self._rng.shuffle(nodes)
        return nodes

    def _round_robin(self, nodes: List[StorageNode]) -> List[StorageNode]:
        start = self._cursor % len(nodes) if nodes else 0
        self._cursor += 1
        return nodes[start:] + nodes[:start]
