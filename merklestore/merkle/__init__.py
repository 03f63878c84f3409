"""
Merkle Module - Trees, Proofs and Verification

The root hash of a file's chunk tree is the file's permanent identifier.
"""

from .tree import (
    EMPTY_ROOT,
    FileInfo,
    MerkleProof,
    MerkleTree,
    MerkleTreeBuilder,
    ProofStep,
    hash_leaf,
    hash_pair,
    path_shape,
)
from .verifier import Verifier, verify_chunk

__all__ = [
    'EMPTY_ROOT',
    'FileInfo',
    'MerkleProof',
    'MerkleTree',
    'MerkleTreeBuilder',
    'ProofStep',
    'Verifier',
    'hash_leaf',
    'hash_pair',
    'path_shape',
    'verify_chunk',
]
