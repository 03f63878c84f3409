"""
Upload Coordinator

Upload Flow:
1. Chunk the file and build its Merkle tree (root known before any I/O)
2. Select a ReplicaSet
3. Commit the root on-chain (authoritative existence of the file)
4. Push every chunk to `replica_count` distinct nodes through a worker pool
5. Succeed only when every chunk is acknowledged by enough nodes

The whole call runs under a single deadline. On expiry every worker is
cancelled and its connection dropped; an already committed transaction is
left for the caller to inspect.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .protocol import NodeTransport
from .session import TransferSession, run_workers
from ..chain import CommitService
from ..discovery import NodeSelector, ReplicaSet, StorageNode, STRATEGY_MAX
from ..errors import (
    ChainCommitError,
    ChunkTransferError,
    InsufficientNodesError,
    IOReadError,
    NodeUnavailableError,
    UploadIncompleteError,
    UploadTimeoutError,
)
from ..file import Chunker
from ..merkle import FileInfo, MerkleTree, MerkleTreeBuilder, hash_leaf

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0  # 5 minutes


@dataclass
class UploadResult:
    """Outcome of a successful upload."""
    tx_hash: str
    root: str
    info: FileInfo
    replicas: List[str] = field(default_factory=list)


class Uploader:
    """
    Pushes one file at a time to a replicated set of storage nodes.

    An Uploader holds configuration only; all per-call state lives in the
    TransferSession created by upload().
    """

    def __init__(self, selector: NodeSelector, commit_service: CommitService,
                 transport: NodeTransport, chunker: Chunker = None,
                 replica_count: int = 1, workers: int = 8, retry_budget: int = 3,
                 timeout: float = DEFAULT_TIMEOUT, strategy: str = STRATEGY_MAX):
        self.selector = selector
        self.commit_service = commit_service
        self.transport = transport
        self.chunker = chunker or Chunker()
        self.builder = MerkleTreeBuilder()
        self.replica_count = replica_count
        self.workers = workers
        self.retry_budget = retry_budget
        self.timeout = timeout
        self.strategy = strategy

    async def upload(self, file_path: Path, replica_count: int = None) -> UploadResult:
        """
        Upload a file.

        Raises:
            IOReadError, InsufficientNodesError, ChainCommitError,
            UploadIncompleteError, UploadTimeoutError
        """
        replicas = replica_count or self.replica_count
        try:
            return await asyncio.wait_for(
                self._upload(Path(file_path), replicas),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Upload of {file_path} timed out after {self.timeout:g}s")
            raise UploadTimeoutError(self.timeout) from e

    async def _upload(self, file_path: Path, replica_count: int) -> UploadResult:
        size = self.chunker.file_size(file_path)
        tree = await self.builder.build_from_file(self.chunker, file_path)
        info = FileInfo(
            root=tree.root,
            size=size,
            chunk_size=self.chunker.chunk_size,
            chunk_count=tree.leaf_count,
        )
        logger.info(f"Uploading {file_path.name}: {size:,} bytes, "
                    f"{info.chunk_count} chunks, root {info.root[:16]}...")

        replica_set = await self.selector.select(
            min_count=replica_count,
            replica_count=replica_count,
            strategy=self.strategy,
        )

        tx_hash = await self._commit(info, file_path.name)
        logger.info(f"Committed root {info.root[:16]}... in tx {tx_hash}")

        push = _PushRun(self, file_path, tree, info, replica_set, replica_count)
        await push.run()

        logger.info(f"Upload complete: {info.chunk_count} chunks x {replica_count} replicas "
                    f"on {len(replica_set)} nodes")
        return UploadResult(
            tx_hash=tx_hash,
            root=info.root,
            info=info,
            replicas=push.holders(),
        )

    async def _commit(self, info: FileInfo, name: str) -> str:
        metadata = {
            'name': name,
            'size': info.size,
            'chunk_size': info.chunk_size,
            'chunk_count': info.chunk_count,
        }
        try:
            return await self.commit_service.commit(info.root, metadata)
        except ChainCommitError:
            raise
        except Exception as e:
            raise ChainCommitError(f"Failed to commit root {info.root}: {e}") from e


class _PushRun:
    """State of one upload's push phase."""

    def __init__(self, uploader: Uploader, file_path: Path, tree: MerkleTree,
                 info: FileInfo, replica_set: ReplicaSet, replica_count: int):
        self.uploader = uploader
        self.transport = uploader.transport
        self.file_path = file_path
        self.tree = tree
        self.info = info
        self.replica_set = replica_set
        self.replica_count = replica_count

        self.session = TransferSession(
            info.chunk_count,
            acks_required=replica_count,
            retry_budget=uploader.retry_budget,
        )
        self.queue: asyncio.Queue = asyncio.Queue()
        self.failed_nodes = set()
        self._announced: List[str] = []
        self._announcements: Dict[str, asyncio.Future] = {}
        self._reselect_lock = asyncio.Lock()

    def holders(self) -> List[str]:
        """Addresses of nodes that now hold at least part of the file."""
        if self.info.chunk_count == 0:
            return list(self._announced)
        acked = set()
        for state in self.session.chunks.values():
            acked |= state.acked
        return [address for address in self.replica_set.addresses if address in acked]

    async def run(self):
        if self.info.chunk_count == 0:
            await self._announce_empty()
            return

        targets = self.replica_set.nodes[:self.replica_count]
        for index in range(self.info.chunk_count):
            for node in targets:
                await self.session.assign(index, node.address)
                self.queue.put_nowait((index, node))

        try:
            await run_workers(self.session, self.queue, self._push, self.uploader.workers)
        finally:
            pending = list(self._announcements.values())
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        failed = self.session.failed_indices()
        if failed:
            raise UploadIncompleteError(failed, self.session.last_error)

    async def _announce_empty(self):
        """An empty file has no chunks; the layout alone must reach the replicas."""
        results = await asyncio.gather(
            *(self.transport.put_file_info(node, self.info) for node in self.replica_set),
            return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if not isinstance(error, (NodeUnavailableError, ChunkTransferError)):
                raise error
        self._announced = [
            node.address for node, result in zip(self.replica_set, results)
            if not isinstance(result, BaseException)
        ]
        if len(self._announced) < self.replica_count:
            raise UploadIncompleteError([], errors[-1] if errors else None)

    async def _announce(self, node: StorageNode):
        """Send the file layout to `node` once, shared by all workers."""
        future = self._announcements.get(node.address)
        if future is None:
            future = asyncio.ensure_future(self.transport.put_file_info(node, self.info))
            self._announcements[node.address] = future
        await asyncio.shield(future)

    async def _push(self, job: Tuple[int, StorageNode]):
        index, node = job
        if not await self.session.begin(index, node.address):
            return

        try:
            await self._announce(node)
            try:
                data = await self.uploader.chunker.read_chunk(self.file_path, index)
            except IndexError as e:
                raise IOReadError(self.file_path, f"{self.file_path} shrank during upload") from e
            if hash_leaf(data) != self.tree.leaf(index):
                raise IOReadError(self.file_path, f"{self.file_path} changed during upload")
            await self.transport.push_chunk(
                node, self.info.root, index, data, self.tree.proof(index)
            )
        except (ChunkTransferError, NodeUnavailableError) as e:
            await self._retry(index, node, e)
            return

        if await self.session.complete(index, node.address):
            logger.debug(f"Chunk {index} replicated ({self.session.done_count()}/"
                         f"{self.session.chunk_count})")

    async def _retry(self, index: int, node: StorageNode, error: Exception):
        self.failed_nodes.add(node.address)
        if not await self.session.fail(index, node.address, error):
            logger.warning(f"Chunk {index} failed permanently: {error}")
            return

        replacement = await self._replacement(index)
        if replacement is None:
            logger.warning(f"No replacement node left for chunk {index}")
            await self.session.abandon(index, error)
            return

        logger.debug(f"Retrying chunk {index} on {replacement.address} "
                     f"after failure on {node.address}: {error}")
        self.queue.put_nowait((index, replacement))

    async def _replacement(self, index: int) -> Optional[StorageNode]:
        """
        Pick a node for a retried chunk.

        Order: an unused healthy member of the ReplicaSet, then a newly
        selected node, then any member the chunk has not failed on yet.
        """
        state = self.session.state(index)

        for node in self.replica_set:
            if node.address not in state.used_nodes() and node.address not in self.failed_nodes:
                if await self.session.assign(index, node.address):
                    return node

        async with self._reselect_lock:
            for node in self.replica_set:
                if node.address not in state.used_nodes() and node.address not in self.failed_nodes:
                    if await self.session.assign(index, node.address):
                        return node
            try:
                chosen = await self.uploader.selector.select(
                    min_count=1,
                    replica_count=1,
                    exclude=set(self.replica_set.addresses) | self.failed_nodes,
                    strategy=self.uploader.strategy,
                )
            except InsufficientNodesError:
                chosen = ReplicaSet()

            for node in chosen:
                self.replica_set.add(node)
                logger.info(f"Added replacement node {node.address} to replica set")
                if await self.session.assign(index, node.address):
                    return node

        for node in self.replica_set:
            if node.address not in state.used_nodes():
                if await self.session.assign(index, node.address):
                    return node
        return None
