"""
Discovery Module - Storage node selection

Turns the external node registry into ranked ReplicaSets for transfers.
"""

from .node import StorageNode, ReplicaSet
from .registry import NodeRegistry, StaticNodeRegistry
from .selector import (
    NodeSelector,
    STRATEGY_LATENCY,
    STRATEGY_MAX,
    STRATEGY_RANDOM,
    STRATEGY_ROUND_ROBIN,
)

__all__ = [
    'StorageNode',
    'ReplicaSet',
    'NodeRegistry',
    'StaticNodeRegistry',
    'NodeSelector',
    'STRATEGY_LATENCY',
    'STRATEGY_MAX',
    'STRATEGY_RANDOM',
    'STRATEGY_ROUND_ROBIN',
]
