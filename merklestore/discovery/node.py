"""
Storage Node Model

A StorageNode is a snapshot of what the registry reported about a remote
endpoint. The selector ranks snapshots; it never owns the node's state.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Tuple


@dataclass(frozen=True)
class StorageNode:
    """A remote storage endpoint and its last known health signal."""
    host: str
    port: int
    capacity: int = field(default=0, compare=False)  # free bytes reported by the node
    healthy: bool = field(default=True, compare=False)
    latency: float = field(default=0.0, compare=False)  # seconds, last probe

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_address(cls, address: str) -> 'StorageNode':
        """Parse a 'host:port' string."""
        host, _, port = address.strip().rpartition(':')
        if not host or not port:
            raise ValueError(f"Invalid node address: {address!r} (use host:port)")
        return cls(host=host, port=int(port))

    def __str__(self) -> str:
        return self.address


@dataclass
class ReplicaSet:
    """Ordered set of nodes chosen for one transfer."""
    nodes: List[StorageNode] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[StorageNode]:
        return iter(self.nodes)

    def __contains__(self, node: StorageNode) -> bool:
        return node in self.nodes

    @property
    def addresses(self) -> List[str]:
        return [n.address for n in self.nodes]

    def add(self, node: StorageNode):
        if node not in self.nodes:
            self.nodes.append(node)

    def key(self) -> Tuple[str, ...]:
        return tuple(self.addresses)
