"""
Merkle Tree

Design Decision: Tree Shape
===========================

Options Considered for an odd number of nodes at a level:
1. Duplicate the last node (Bitcoin style)
   - Different leaf lists can produce the same root (CVE-2012-2459)
2. Promote the lone node unchanged to the next level
   - No duplicated hashing, no ambiguity
3. Pad with a zero hash up to a power of two
   - Wastes work, makes proofs depend on the padding value

Decision: Promote the lone node unchanged.
This rule lives in exactly one place (`path_shape`) and is used both when
building trees and when checking proofs; any other rule breaks every proof.

Hashing:
- leaf   = sha256(0x00 || chunk_bytes)
- parent = sha256(0x01 || left || right)
- empty tree root = sha256(b"")

The prefixes keep leaf and internal hashes in separate domains, so an
internal node can never be passed off as a chunk.
"""

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

LEAF_PREFIX = b'\x00'
NODE_PREFIX = b'\x01'

EMPTY_ROOT = hashlib.sha256(b'').hexdigest()

LEFT = 'left'
RIGHT = 'right'

ChunkInput = Union[bytes, Tuple[int, bytes]]


def hash_leaf(data: bytes) -> bytes:
    """Hash a chunk's bytes into a leaf."""
    return hashlib.sha256(LEAF_PREFIX + data).digest()


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Hash two child nodes into their parent."""
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


def path_shape(index: int, leaf_count: int) -> List[Optional[str]]:
    """
    Sibling sides on the way from leaf `index` up to the root.

    One entry per level: LEFT/RIGHT for the side the sibling sits on, or
    None when the node is the lone last node of its level and is promoted.
    """
    if leaf_count <= 0 or not 0 <= index < leaf_count:
        raise IndexError(f"Leaf index {index} out of range for {leaf_count} leaves")

    shape: List[Optional[str]] = []
    position, width = index, leaf_count
    while width > 1:
        if position % 2 == 1:
            shape.append(LEFT)
        elif position + 1 < width:
            shape.append(RIGHT)
        else:
            shape.append(None)
        position //= 2
        width = (width + 1) // 2
    return shape


@dataclass(frozen=True)
class ProofStep:
    """One sibling hash on the path to the root."""
    sibling: str  # hex
    side: str  # LEFT or RIGHT

    def to_dict(self) -> Dict:
        return {'sibling': self.sibling, 'side': self.side}

    @classmethod
    def from_dict(cls, data: Dict) -> 'ProofStep':
        return cls(sibling=data['sibling'], side=data['side'])


@dataclass
class MerkleProof:
    """
    Inclusion proof for a single chunk.

    Steps are ordered leaf-to-root. Promoted levels contribute no step.
    """
    index: int
    leaf_count: int
    steps: List[ProofStep] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'leaf_count': self.leaf_count,
            'steps': [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MerkleProof':
        return cls(
            index=int(data['index']),
            leaf_count=int(data['leaf_count']),
            steps=[ProofStep.from_dict(s) for s in data.get('steps', [])],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> 'MerkleProof':
        return cls.from_dict(json.loads(json_str))


@dataclass(frozen=True)
class FileInfo:
    """Layout of a stored file: everything needed to fetch and reassemble it."""
    root: str
    size: int
    chunk_size: int
    chunk_count: int

    def expected_chunk_size(self, index: int) -> int:
        start = index * self.chunk_size
        return min(self.chunk_size, self.size - start)

    def is_consistent(self) -> bool:
        """Check that size, chunk size and chunk count agree."""
        if self.size < 0 or self.chunk_size <= 0:
            return False
        expected = (self.size + self.chunk_size - 1) // self.chunk_size
        return self.chunk_count == expected

    def to_dict(self) -> Dict:
        return {
            'root': self.root,
            'size': self.size,
            'chunk_size': self.chunk_size,
            'chunk_count': self.chunk_count,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'FileInfo':
        return cls(
            root=str(data['root']),
            size=int(data['size']),
            chunk_size=int(data['chunk_size']),
            chunk_count=int(data['chunk_count']),
        )


class MerkleTree:
    """
    Binary Merkle tree kept as a list of levels (leaves first).

    Only hashes are stored, never chunk data.
    """

    def __init__(self, levels: List[List[bytes]]):
        self._levels = levels

    @classmethod
    def from_leaves(cls, leaves: Sequence[bytes]) -> 'MerkleTree':
        levels = [list(leaves)]
        while len(levels[-1]) > 1:
            current = levels[-1]
            parents = [
                hash_pair(current[i], current[i + 1])
                for i in range(0, len(current) - 1, 2)
            ]
            if len(current) % 2 == 1:
                parents.append(current[-1])
            levels.append(parents)
        return cls(levels)

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def leaves(self) -> List[bytes]:
        return list(self._levels[0])

    @property
    def root(self) -> str:
        """Root hash as hex."""
        if self.leaf_count == 0:
            return EMPTY_ROOT
        return self._levels[-1][0].hex()

    def leaf(self, index: int) -> bytes:
        return self._levels[0][index]

    def proof(self, index: int) -> MerkleProof:
        """Build the inclusion proof for leaf `index`."""
        shape = path_shape(index, self.leaf_count)
        steps = []
        position = index
        for level, side in zip(self._levels, shape):
            if side == LEFT:
                steps.append(ProofStep(level[position - 1].hex(), LEFT))
            elif side == RIGHT:
                steps.append(ProofStep(level[position + 1].hex(), RIGHT))
            position //= 2
        return MerkleProof(index=index, leaf_count=self.leaf_count, steps=steps)


class MerkleTreeBuilder:
    """
    Builds Merkle trees over chunk sequences.

    Accepts either raw chunk bytes or the (index, bytes) pairs yielded by
    the Chunker; pairs must arrive in index order.
    """

    def leaf_hashes(self, chunks: Iterable[ChunkInput]) -> List[bytes]:
        leaves = []
        for position, item in enumerate(chunks):
            if isinstance(item, tuple):
                index, data = item
                if index != position:
                    raise ValueError(
                        f"Chunk {index} out of order, expected {position}"
                    )
            else:
                data = item
            leaves.append(hash_leaf(data))
        return leaves

    def build(self, chunks: Iterable[ChunkInput]) -> MerkleTree:
        return MerkleTree.from_leaves(self.leaf_hashes(chunks))

    def build_root(self, chunks: Iterable[ChunkInput]) -> str:
        return self.build(chunks).root

    def generate_proof(self, chunks: Iterable[ChunkInput], index: int) -> MerkleProof:
        return self.build(chunks).proof(index)

    async def build_from_file(self, chunker, file_path: Path) -> MerkleTree:
        """Stream a file through `chunker` and build its tree."""
        leaves = []
        async for index, data in chunker.iter_chunks(file_path):
            leaves.append(hash_leaf(data))
        return MerkleTree.from_leaves(leaves)
