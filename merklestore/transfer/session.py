"""
Transfer Session

Design Decision: Retry Control Flow
===================================

Every chunk runs through an explicit, bounded state machine:

    pending -> in_flight -> done
                         -> (failure) -> pending        while attempts <= budget
                         -> (failure) -> failed         once the budget is spent

A chunk needs `acks_required` distinct nodes to succeed (the replica count
on upload, 1 on download). Each failure excludes the failing node for that
chunk, so a retry always goes somewhere else.

All transitions happen under one asyncio.Lock. complete() is idempotent:
a chunk re-completed by another worker after a retry is counted once.
A session lives for exactly one Upload/Download call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class ChunkStatus(Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChunkState:
    """Per-chunk transfer bookkeeping."""
    index: int
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = 0  # failed attempts so far
    in_flight: int = 0
    acked: Set[str] = field(default_factory=set)  # nodes that confirmed the chunk
    assigned: Set[str] = field(default_factory=set)  # nodes holding a queued or running job
    excluded: Set[str] = field(default_factory=set)  # nodes that failed this chunk
    last_error: Optional[BaseException] = None

    @property
    def settled(self) -> bool:
        return self.status in (ChunkStatus.DONE, ChunkStatus.FAILED)

    def used_nodes(self) -> Set[str]:
        return self.acked | self.assigned | self.excluded


class TransferSession:
    """Tracks completion of every chunk of one transfer."""

    def __init__(self, chunk_count: int, acks_required: int = 1, retry_budget: int = 3):
        if acks_required < 1:
            raise ValueError("acks_required must be at least 1")
        if retry_budget < 0:
            raise ValueError("retry_budget must not be negative")

        self.acks_required = acks_required
        self.retry_budget = retry_budget
        self.chunks: Dict[int, ChunkState] = {
            i: ChunkState(index=i) for i in range(chunk_count)
        }
        self._remaining = chunk_count
        self._lock = asyncio.Lock()
        self._settled = asyncio.Event()
        self.last_error: Optional[BaseException] = None

        if chunk_count == 0:
            self._settled.set()

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def finished(self) -> bool:
        return self._settled.is_set()

    def state(self, index: int) -> ChunkState:
        return self.chunks[index]

    def status(self, index: int) -> ChunkStatus:
        return self.chunks[index].status

    def done_count(self) -> int:
        return sum(1 for c in self.chunks.values() if c.status == ChunkStatus.DONE)

    def failed_indices(self) -> List[int]:
        return sorted(i for i, c in self.chunks.items() if c.status == ChunkStatus.FAILED)

    async def wait(self):
        """Block until every chunk is done or failed."""
        await self._settled.wait()

    def _settle(self, state: ChunkState, status: ChunkStatus):
        state.status = status
        self._remaining -= 1
        if self._remaining == 0:
            self._settled.set()

    def _release(self, state: ChunkState, node: str):
        state.assigned.discard(node)
        state.in_flight = max(0, state.in_flight - 1)

    async def assign(self, index: int, node: str) -> bool:
        """Reserve `node` for a queued job on chunk `index`."""
        async with self._lock:
            state = self.chunks[index]
            if state.settled or node in state.used_nodes():
                return False
            state.assigned.add(node)
            return True

    async def begin(self, index: int, node: str) -> bool:
        """pending -> in_flight. Returns False when the chunk is already settled."""
        async with self._lock:
            state = self.chunks[index]
            if state.settled:
                state.assigned.discard(node)
                return False
            state.assigned.add(node)
            state.in_flight += 1
            state.status = ChunkStatus.IN_FLIGHT
            return True

    async def complete(self, index: int, node: str) -> bool:
        """
        Record an acknowledgement from `node`.

        Returns True only for the call that moves the chunk to done.
        """
        async with self._lock:
            state = self.chunks[index]
            self._release(state, node)
            if state.settled:
                return False

            state.acked.add(node)
            if len(state.acked) >= self.acks_required:
                self._settle(state, ChunkStatus.DONE)
                return True

            state.status = ChunkStatus.IN_FLIGHT if state.in_flight else ChunkStatus.PENDING
            return False

    async def fail(self, index: int, node: str, error: BaseException) -> bool:
        """
        Record a failed attempt on `node`.

        Returns True when the chunk may be retried on another node.
        """
        async with self._lock:
            state = self.chunks[index]
            self._release(state, node)
            if state.settled:
                return False

            state.attempts += 1
            state.excluded.add(node)
            state.last_error = error
            self.last_error = error

            if state.attempts > self.retry_budget:
                self._settle(state, ChunkStatus.FAILED)
                logger.debug(f"Chunk {index} exhausted its retry budget")
                return False

            state.status = ChunkStatus.IN_FLIGHT if state.in_flight else ChunkStatus.PENDING
            return True

    async def abandon(self, index: int, error: Optional[BaseException] = None):
        """Fail a chunk terminally, e.g. when no node is left to try."""
        async with self._lock:
            state = self.chunks[index]
            if state.settled:
                return
            if error is not None:
                state.last_error = error
                self.last_error = error
            self._settle(state, ChunkStatus.FAILED)


async def run_workers(session: TransferSession, queue: asyncio.Queue,
                      handler: Callable[[object], Awaitable[None]], width: int):
    """
    Drain `queue` with `width` concurrent workers until the session settles.

    Handlers re-queue retries themselves. An exception escaping a handler
    is fatal to the whole transfer and is re-raised here. Workers are always
    cancelled and awaited before returning, so nothing outlives the call.
    """
    if session.finished:
        return

    async def worker():
        while True:
            job = await queue.get()
            try:
                await handler(job)
            finally:
                queue.task_done()

    workers = [asyncio.ensure_future(worker()) for _ in range(max(1, width))]
    settled = asyncio.ensure_future(session.wait())
    try:
        done, _ = await asyncio.wait(
            [settled, *workers], return_when=asyncio.FIRST_COMPLETED
        )
        for task in done:
            if task is not settled:
                task.result()
    finally:
        settled.cancel()
        for task in workers:
            task.cancel()
        await asyncio.gather(settled, *workers, return_exceptions=True)
