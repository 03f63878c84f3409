"""Unit tests for the file chunker."""

import pytest

from merklestore.errors import IOReadError
from merklestore.file import Chunker, CHUNK_SIZE


def test_default_chunk_size():
    assert Chunker().chunk_size == CHUNK_SIZE == 256 * 1024


def test_rejects_non_positive_chunk_size():
    with pytest.raises(ValueError):
        Chunker(0)


@pytest.mark.parametrize("size,expected", [(0, 0), (1, 1), (1024, 1), (1025, 2), (4096, 4)])
def test_chunk_count(size, expected):
    assert Chunker(1024).chunk_count(size) == expected


def test_chunk_bounds_last_chunk_is_short():
    chunker = Chunker(1024)
    assert chunker.chunk_bounds(0, 2500) == (0, 1024)
    assert chunker.chunk_bounds(2, 2500) == (2048, 452)


@pytest.mark.asyncio
async def test_iter_chunks_covers_file_without_gaps(make_file):
    path = make_file(1024 * 3 + 17)
    chunker = Chunker(1024)

    chunks = [c async for c in chunker.iter_chunks(path)]

    assert [i for i, _ in chunks] == [0, 1, 2, 3]
    assert [len(d) for _, d in chunks] == [1024, 1024, 1024, 17]
    assert b''.join(d for _, d in chunks) == path.read_bytes()


@pytest.mark.asyncio
async def test_iter_chunks_is_restartable(make_file):
    path = make_file(5000)
    chunker = Chunker(1024)

    first = [c async for c in chunker.iter_chunks(path)]
    second = [c async for c in chunker.iter_chunks(path)]

    assert first == second


@pytest.mark.asyncio
async def test_empty_file_has_no_chunks(make_file):
    path = make_file(0)
    assert [c async for c in Chunker(1024).iter_chunks(path)] == []
    assert list(Chunker(1024).iter_chunks_sync(path)) == []


def test_sync_and_split_bytes_agree(make_file):
    path = make_file(3000)
    chunker = Chunker(1024)
    assert list(chunker.iter_chunks_sync(path)) == list(chunker.split_bytes(path.read_bytes()))


@pytest.mark.asyncio
async def test_read_chunk_by_index(make_file):
    path = make_file(3000)
    data = path.read_bytes()
    chunker = Chunker(1024)

    assert await chunker.read_chunk(path, 1) == data[1024:2048]
    assert await chunker.read_chunk(path, 2) == data[2048:]

    with pytest.raises(IndexError):
        await chunker.read_chunk(path, 3)


@pytest.mark.asyncio
async def test_missing_file_raises_io_read_error(tmp_path):
    missing = tmp_path / 'missing.bin'
    chunker = Chunker(1024)

    with pytest.raises(IOReadError):
        [c async for c in chunker.iter_chunks(missing)]
    with pytest.raises(IOReadError):
        list(chunker.iter_chunks_sync(missing))
    with pytest.raises(IOReadError):
        chunker.file_size(missing)
