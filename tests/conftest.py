"""Shared pytest fixtures for all tests."""

import asyncio
import hashlib
import os
from typing import Dict, List, Optional, Tuple

import pytest

from merklestore.chain import CommitService
from merklestore.config import Config
from merklestore.discovery import NodeRegistry, StorageNode
from merklestore.errors import ChainCommitError, ChunkTransferError, NodeUnavailableError
from merklestore.merkle import FileInfo, MerkleProof, ProofStep
from merklestore.transfer import NodeTransport


class FakeNode:
    """In-memory storage node with switchable misbehaviour."""

    def __init__(self, host: str, port: int, capacity: int = 10 ** 9):
        self.host = host
        self.port = port
        self.capacity = capacity
        self.down = False
        self.fail_push = False
        self.fail_pull = False
        self.tamper = False
        self.bad_proof = False
        self.delay = 0.0
        self.files: Dict[str, FileInfo] = {}
        self.chunks: Dict[Tuple[str, int], Tuple[bytes, MerkleProof]] = {}
        self.pushes = 0
        self.pulls = 0

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def snapshot(self) -> StorageNode:
        return StorageNode(self.host, self.port, capacity=self.capacity, healthy=not self.down)


class FakeNetwork(NodeRegistry, NodeTransport):
    """Registry and transport over a set of FakeNodes."""

    def __init__(self, count: int = 5):
        self.nodes: Dict[str, FakeNode] = {}
        for i in range(count):
            self.add_node(FakeNode('10.0.0.%d' % (i + 1), 5678, capacity=10 ** 9 - i))
        self.active = 0
        self.closed = 0

    def add_node(self, node: FakeNode) -> FakeNode:
        self.nodes[node.address] = node
        return node

    def node(self, index: int) -> FakeNode:
        return list(self.nodes.values())[index]

    def holders(self, root: str) -> List[FakeNode]:
        return [n for n in self.nodes.values() if root in n.files]

    async def list_nodes(self) -> List[StorageNode]:
        return [n.snapshot() for n in self.nodes.values()]

    async def _enter(self, node: StorageNode) -> FakeNode:
        fake = self.nodes[node.address]
        if fake.delay:
            await asyncio.sleep(fake.delay)
        if fake.down:
            raise NodeUnavailableError(node.address)
        return fake

    async def ping(self, node: StorageNode):
        fake = await self._enter(node)
        return {'capacity': fake.capacity}

    async def put_file_info(self, node: StorageNode, info: FileInfo):
        self.active += 1
        try:
            fake = await self._enter(node)
            fake.files[info.root] = info
        finally:
            self.active -= 1

    async def push_chunk(self, node: StorageNode, root: str, index: int,
                         data: bytes, proof: MerkleProof):
        self.active += 1
        try:
            fake = await self._enter(node)
            if fake.fail_push:
                raise ChunkTransferError(index, node.address, "push refused")
            fake.pushes += 1
            fake.chunks[(root, index)] = (bytes(data), proof)
        finally:
            self.active -= 1

    async def pull_chunk(self, node: StorageNode, root: str, index: int) -> bytes:
        self.active += 1
        try:
            fake = await self._enter(node)
            if fake.fail_pull or (root, index) not in fake.chunks:
                raise ChunkTransferError(index, node.address, "chunk not found")
            fake.pulls += 1
            data = fake.chunks[(root, index)][0]
            if fake.tamper and data:
                data = bytes([data[0] ^ 0xFF]) + data[1:]
            return data
        finally:
            self.active -= 1

    async def get_proof(self, node: StorageNode, root: str, index: int) -> MerkleProof:
        fake = await self._enter(node)
        if (root, index) not in fake.chunks:
            raise ChunkTransferError(index, node.address, "proof not found")
        proof = fake.chunks[(root, index)][1]
        if fake.bad_proof and proof.steps:
            forged = ProofStep('00' * 32, proof.steps[0].side)
            proof = MerkleProof(proof.index, proof.leaf_count, [forged] + proof.steps[1:])
        return proof

    async def get_file_info(self, node: StorageNode, root: str) -> Optional[FileInfo]:
        fake = await self._enter(node)
        return fake.files.get(root)

    async def close(self):
        self.closed += 1


class FakeCommitService(CommitService):
    """Records commitments in memory."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.commits = []

    async def commit(self, root, metadata):
        if self.fail:
            raise RuntimeError("rpc unreachable")
        self.commits.append((root, metadata))
        return '0x' + hashlib.sha256(f"{len(self.commits)}:{root}".encode()).hexdigest()


@pytest.fixture
def network():
    return FakeNetwork(5)


@pytest.fixture
def commits():
    return FakeCommitService()


@pytest.fixture
def config(tmp_path):
    return Config(
        chunk_size=1024,
        replica_count=1,
        download_replicas=5,
        workers=4,
        retry_budget=3,
        upload_timeout=10.0,
        download_timeout=10.0,
        ledger_path=tmp_path / 'ledger.db',
    )


@pytest.fixture
def make_file(tmp_path):
    """Write a file with `size` random bytes and return its path."""
    def _make(size: int, name: str = 'input.bin') -> os.PathLike:
        path = tmp_path / name
        path.write_bytes(os.urandom(size))
        return path
    return _make
