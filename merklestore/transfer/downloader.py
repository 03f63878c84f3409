"""
Download Coordinator

Design Decision: Download Strategy
===================================

Options Considered:
1. Sequential download from single node
   - Simple but slow, single point of failure
2. Parallel download, chunks spread round-robin over the ReplicaSet
   - Any subset of nodes may serve any subset of chunks
   - A bad chunk is simply fetched again from another node
3. Rarest-first chunk selection
   - Only matters when nodes hold partial copies

Decision: Parallel round-robin over the ReplicaSet.

Download Flow:
1. Select nodes, ask them for the file layout (size, chunk size, count)
2. Pull chunks through a worker pool
3. Verify each chunk's Merkle proof against the root before accepting it
4. Write verified chunks at their offsets in <destination>.part
5. Rename onto the destination once every chunk is in

Nothing reaches the destination path unless every chunk verified.
"""

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles
import aiofiles.os

from .protocol import NodeTransport
from .session import TransferSession, run_workers
from ..discovery import NodeSelector, StorageNode, STRATEGY_MAX
from ..errors import (
    ChunkTransferError,
    ChunkVerificationError,
    DownloadIncompleteError,
    DownloadTimeoutError,
    NodeUnavailableError,
)
from ..merkle import EMPTY_ROOT, FileInfo, Verifier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0  # 5 minutes


def normalize_root(root: str) -> str:
    """Lowercase hex without a 0x prefix."""
    root = root.strip().lower()
    if root.startswith('0x'):
        root = root[2:]
    return root


class Downloader:
    """
    Fetches and reassembles files by root hash.

    Like Uploader, holds configuration only; per-call state is created
    inside download().
    """

    def __init__(self, selector: NodeSelector, transport: NodeTransport,
                 replica_count: int = 3, workers: int = 8, retry_budget: int = 3,
                 timeout: float = DEFAULT_TIMEOUT, strategy: str = STRATEGY_MAX):
        self.selector = selector
        self.transport = transport
        self.replica_count = replica_count
        self.workers = workers
        self.retry_budget = retry_budget
        self.timeout = timeout
        self.strategy = strategy

    async def download(self, root: str, destination: Path, verify: bool = True) -> FileInfo:
        """
        Download the file identified by `root` to `destination`.

        Raises:
            InsufficientNodesError, ChunkVerificationError,
            DownloadIncompleteError, DownloadTimeoutError
        """
        try:
            return await asyncio.wait_for(
                self._download(normalize_root(root), Path(destination), verify),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Download of {root[:16]}... timed out after {self.timeout:g}s")
            raise DownloadTimeoutError(self.timeout) from e

    async def _download(self, root: str, destination: Path, verify: bool) -> FileInfo:
        replica_set = await self.selector.select(
            min_count=1,
            replica_count=self.replica_count,
            strategy=self.strategy,
        )

        info, holders = await self._discover(root, replica_set.nodes, verify)
        logger.info(f"Downloading {root[:16]}...: {info.size:,} bytes, "
                    f"{info.chunk_count} chunks from {len(holders)} nodes")

        await aiofiles.os.makedirs(destination.parent, exist_ok=True)
        part_path = destination.with_name(destination.name + '.part')

        fetch = _FetchRun(self, root, info, holders, verify)
        try:
            await fetch.run(part_path)
            await aiofiles.os.replace(part_path, destination)
        except BaseException:
            try:
                await aiofiles.os.remove(part_path)
            except FileNotFoundError:
                pass
            raise

        logger.info(f"Download complete: {destination}")
        return info

    async def _discover(self, root: str, nodes: List[StorageNode],
                        verify: bool) -> Tuple[FileInfo, List[StorageNode]]:
        """
        Ask every node for the file layout.

        The most common consistent answer wins; only nodes that gave it are
        used as chunk sources.
        """
        results = await asyncio.gather(
            *(self.transport.get_file_info(node, root) for node in nodes),
            return_exceptions=True
        )

        answers = []
        last_error: Optional[BaseException] = None
        for node, result in zip(nodes, results):
            if isinstance(result, (NodeUnavailableError, ChunkTransferError)):
                last_error = result
                logger.debug(f"{node.address} could not describe {root[:16]}...: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            if result is None:
                continue
            if result.root != root or not result.is_consistent():
                logger.warning(f"{node.address} returned an inconsistent layout for {root[:16]}...")
                continue
            if verify and result.chunk_count == 0 and root != EMPTY_ROOT:
                logger.warning(f"{node.address} claims {root[:16]}... is empty")
                continue
            answers.append((node, result))

        if not answers:
            raise DownloadIncompleteError(
                [], last_error, message=f"No storage node holds root {root}"
            )

        info, _ = Counter(result for _, result in answers).most_common(1)[0]
        holders = [node for node, result in answers if result == info]
        return info, holders


class _FetchRun:
    """State of one download's fetch phase."""

    def __init__(self, downloader: Downloader, root: str, info: FileInfo,
                 holders: List[StorageNode], verify: bool):
        self.downloader = downloader
        self.transport = downloader.transport
        self.root = root
        self.info = info
        self.holders = holders
        self.verify = verify
        self.verifier = Verifier()

        self.session = TransferSession(
            info.chunk_count,
            acks_required=1,
            retry_budget=downloader.retry_budget,
        )
        self.queue: asyncio.Queue = asyncio.Queue()
        self._write_lock = asyncio.Lock()
        self._file = None

    async def run(self, part_path: Path):
        for index in range(self.info.chunk_count):
            self.queue.put_nowait(index)

        async with aiofiles.open(part_path, 'wb') as f:
            self._file = f
            await run_workers(self.session, self.queue, self._fetch, self.downloader.workers)

        failed = self.session.failed_indices()
        if failed:
            raise self._terminal_error(failed)

    def _terminal_error(self, failed: List[int]) -> Exception:
        for index in failed:
            cause = self.session.state(index).last_error
            if isinstance(cause, ChunkVerificationError):
                attempts = self.session.state(index).attempts
                error = ChunkVerificationError(
                    index,
                    message=f"Chunk {index} failed verification after {attempts} attempts"
                )
                error.__cause__ = cause
                return error
        return DownloadIncompleteError(failed, self.session.last_error)

    def _pick_node(self, index: int) -> Optional[StorageNode]:
        state = self.session.state(index)
        candidates = [n for n in self.holders if n.address not in state.excluded]
        if not candidates:
            return None
        return candidates[(index + state.attempts) % len(candidates)]

    async def _fetch(self, index: int):
        node = self._pick_node(index)
        if node is None:
            logger.warning(f"No node left to fetch chunk {index} from")
            await self.session.abandon(index)
            return

        if not await self.session.begin(index, node.address):
            return

        try:
            data = await self._pull_verified(node, index)
        except (ChunkTransferError, ChunkVerificationError, NodeUnavailableError) as e:
            logger.warning(f"Chunk {index} from {node.address} rejected: {e}")
            if await self.session.fail(index, node.address, e):
                self.queue.put_nowait(index)
            return

        async with self._write_lock:
            await self._file.seek(index * self.info.chunk_size)
            await self._file.write(data)

        if await self.session.complete(index, node.address):
            logger.debug(f"Chunk {index} verified ({self.session.done_count()}/"
                         f"{self.session.chunk_count})")

    async def _pull_verified(self, node: StorageNode, index: int) -> bytes:
        data = await self.transport.pull_chunk(node, self.root, index)

        expected_size = self.info.expected_chunk_size(index)
        if len(data) != expected_size:
            raise ChunkVerificationError(
                index, node.address,
                f"Chunk {index} from {node.address} is {len(data)} bytes, "
                f"expected {expected_size}"
            )

        if self.verify:
            proof = await self.transport.get_proof(node, self.root, index)
            valid = (
                proof.leaf_count == self.info.chunk_count and
                self.verifier.verify(data, proof, self.root, expected_index=index)
            )
            if not valid:
                raise ChunkVerificationError(index, node.address)

        return data
