"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 64KB    | Short proofs per byte moved   | Deep trees, many node requests |
| 256KB   | Good balance, standard        | -                              |
| 1MB     | Fewer leaves                  | Coarse retries on failure      |

Decision: 256KB (262,144 bytes) by default, configurable per client.
- A failed chunk costs at most one chunk of re-transfer
- Small enough to spread a file across several nodes in parallel

Chunking Strategy: Fixed-Size
- Chunk i always starts at i * chunk_size, so any chunk can be re-read
  independently (upload workers never hold the whole file in memory)
- Only the last chunk may be short
- An empty file has zero chunks
"""

import logging
from pathlib import Path
from typing import AsyncIterator, Iterator, Tuple

import aiofiles

from ..errors import IOReadError

logger = logging.getLogger(__name__)

# Chunk size: 256KB
CHUNK_SIZE = 256 * 1024  # 262,144 bytes


class Chunker:
    """
    Splits files into fixed-size, index-ordered chunks.

    Iteration is lazy and restartable: every call to iter_chunks re-opens the
    source and starts again from chunk 0.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return (file_size + self.chunk_size - 1) // self.chunk_size

    def chunk_bounds(self, chunk_index: int, file_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, length) tuple
        """
        start = chunk_index * self.chunk_size
        length = min(self.chunk_size, file_size - start)
        return start, length

    def file_size(self, file_path: Path) -> int:
        try:
            return Path(file_path).stat().st_size
        except OSError as e:
            raise IOReadError(file_path, f"Cannot stat {file_path}: {e}") from e

    async def iter_chunks(self, file_path: Path) -> AsyncIterator[Tuple[int, bytes]]:
        """
        Split a file into chunks.

        Yields:
            (chunk_index, chunk_data) tuples
        """
        try:
            async with aiofiles.open(file_path, 'rb') as f:
                chunk_index = 0
                while True:
                    data = await f.read(self.chunk_size)
                    if not data:
                        break
                    yield chunk_index, data
                    chunk_index += 1
        except OSError as e:
            raise IOReadError(file_path, f"Error reading {file_path}: {e}") from e

    def iter_chunks_sync(self, file_path: Path) -> Iterator[Tuple[int, bytes]]:
        """Split a file into chunks (synchronous version)."""
        try:
            with open(file_path, 'rb') as f:
                chunk_index = 0
                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break
                    yield chunk_index, data
                    chunk_index += 1
        except OSError as e:
            raise IOReadError(file_path, f"Error reading {file_path}: {e}") from e

    async def read_chunk(self, file_path: Path, chunk_index: int) -> bytes:
        """Read a single chunk by index."""
        file_size = self.file_size(file_path)
        if chunk_index < 0 or chunk_index >= self.chunk_count(file_size):
            raise IndexError(f"Chunk index {chunk_index} out of range")

        start, length = self.chunk_bounds(chunk_index, file_size)
        try:
            async with aiofiles.open(file_path, 'rb') as f:
                await f.seek(start)
                data = await f.read(length)
        except OSError as e:
            raise IOReadError(file_path, f"Error reading {file_path}: {e}") from e

        if len(data) != length:
            raise IOReadError(
                file_path, f"Short read of chunk {chunk_index} from {file_path}"
            )
        return data

    def split_bytes(self, data: bytes) -> Iterator[Tuple[int, bytes]]:
        """Chunk an in-memory buffer the same way files are chunked."""
        for chunk_index, start in enumerate(range(0, len(data), self.chunk_size)):
            yield chunk_index, data[start:start + self.chunk_size]
