"""End-to-end tests for StorageClient over the in-memory network."""

import os

import pytest

from merklestore import StorageClient
from merklestore.file import Chunker
from merklestore.merkle import EMPTY_ROOT, MerkleTreeBuilder


def make_client(config, commits, network):
    return StorageClient(config, commits, registry=network, transport_factory=lambda: network)


class TestRoundTrip:

    @pytest.mark.asyncio
    @pytest.mark.parametrize('size', [0, 1, 1024, 1025, 3 * 1024 - 1])
    async def test_edge_sizes(self, size, config, commits, network, make_file, tmp_path):
        source = make_file(size)
        client = make_client(config, commits, network)

        tx_hash, root = await client.aupload_file(source)
        await client.adownload_file(root, tmp_path / 'out.bin')

        assert tx_hash.startswith('0x')
        assert (tmp_path / 'out.bin').read_bytes() == source.read_bytes()
        if size == 0:
            assert root == EMPTY_ROOT

    @pytest.mark.asyncio
    async def test_ten_megabyte_file_on_five_nodes(self, config, commits, network, tmp_path):
        config.chunk_size = 256 * 1024
        config.replica_count = 3
        data = os.urandom(10 * 1024 * 1024)
        source = tmp_path / 'big.bin'
        source.write_bytes(data)
        client = make_client(config, commits, network)

        result = await client.upload(source)

        assert result.info.chunk_count == 40
        assert result.root == MerkleTreeBuilder().build_root(Chunker(256 * 1024).split_bytes(data))
        assert len(commits.commits) == 1
        assert len(result.replicas) == 3
        assert sum(len(n.chunks) for n in network.nodes.values()) == 120

        await client.download(result.root, tmp_path / 'copy.bin')
        assert (tmp_path / 'copy.bin').read_bytes() == data

    @pytest.mark.asyncio
    async def test_replica_count_override(self, config, commits, network, make_file):
        result = await make_client(config, commits, network).upload(make_file(2048), replica_count=4)

        assert len(network.holders(result.root)) == 4

    @pytest.mark.asyncio
    async def test_transport_closed_after_each_call(self, config, commits, network, make_file, tmp_path):
        client = make_client(config, commits, network)

        _, root = await client.aupload_file(make_file(100))
        await client.adownload_file(root, tmp_path / 'out.bin')

        assert network.closed == 2
        assert network.active == 0


def test_blocking_calls(config, commits, network, make_file, tmp_path):
    source = make_file(5000)
    client = make_client(config, commits, network)

    _, root = client.upload_file(source)
    client.download_file(root, tmp_path / 'out.bin')

    assert (tmp_path / 'out.bin').read_bytes() == source.read_bytes()


def test_invalid_config_rejected(config, commits, network):
    config.workers = 0
    with pytest.raises(ValueError):
        make_client(config, commits, network)
