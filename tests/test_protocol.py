"""Tests for the node wire protocol and the TCP transport."""

import asyncio
import struct

import pytest

from merklestore.chain import LedgerCommitService
from merklestore.discovery import NodeSelector, StaticNodeRegistry, StorageNode
from merklestore.errors import ChunkTransferError, NodeUnavailableError
from merklestore.file import Chunker
from merklestore.merkle import FileInfo, MerkleProof, MerkleTreeBuilder
from merklestore.transfer import Downloader, Message, MessageType, TcpNodeTransport, Uploader
from merklestore.transfer.protocol import ProtocolError


class NodeServer:
    """Minimal storage node speaking the wire protocol, for tests only."""

    def __init__(self, capacity=10 ** 9):
        self.capacity = capacity
        self.files = {}
        self.chunks = {}
        self.server = None
        self.port = None
        self.garbled_pulls = False

    async def start(self):
        self.server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self):
        self.server.close()
        await self.server.wait_closed()

    @property
    def node(self):
        return StorageNode('127.0.0.1', self.port)

    async def _handle(self, reader, writer):
        try:
            while True:
                message = await Message.from_reader(reader)
                if message is None:
                    break
                if self.garbled_pulls and message.type == MessageType.PULL_CHUNK:
                    writer.write(raw_frame(b'[]'))
                else:
                    writer.write(self._answer(message).to_bytes())
                await writer.drain()
        except (ProtocolError, ConnectionError):
            pass
        finally:
            writer.close()

    def _answer(self, message):
        h = message.headers
        if message.type == MessageType.PING:
            return Message(MessageType.PONG, {'capacity': self.capacity})
        if message.type == MessageType.PUT_FILE_INFO:
            info = FileInfo.from_dict(h['file_info'])
            self.files[info.root] = info
            return Message(MessageType.ACK, {})
        if message.type == MessageType.GET_FILE_INFO:
            info = self.files.get(h['root'])
            if info is None:
                return Message(MessageType.NOT_FOUND, {})
            return Message(MessageType.FILE_INFO, {'file_info': info.to_dict()})
        if message.type == MessageType.PUSH_CHUNK:
            self.chunks[(h['root'], h['index'])] = (message.data, h['proof'])
            return Message(MessageType.ACK, {})
        key = (h.get('root'), h.get('index'))
        if key not in self.chunks:
            return Message(MessageType.NOT_FOUND, {})
        if message.type == MessageType.PULL_CHUNK:
            return Message(MessageType.CHUNK_DATA, {}, data=self.chunks[key][0])
        if message.type == MessageType.GET_PROOF:
            return Message(MessageType.PROOF_DATA, {'proof': self.chunks[key][1]})
        return Message(MessageType.ERROR, {'message': 'unsupported'})


def raw_frame(header: bytes, data: bytes = b'') -> bytes:
    return struct.pack('>II', len(header) + len(data), len(header)) + header + data


def frame_reader(raw: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(raw)
    reader.feed_eof()
    return reader


class TestFraming:

    @pytest.mark.asyncio
    async def test_message_round_trip(self):
        message = Message(MessageType.PUSH_CHUNK, {'root': 'ab', 'index': 3}, data=b'\x00\x01payload')
        decoded = await Message.from_reader(frame_reader(message.to_bytes()))

        assert decoded == message

    @pytest.mark.asyncio
    async def test_frame_layout(self):
        raw = Message(MessageType.PING, {}).to_bytes()
        total, header_len = struct.unpack('>II', raw[:8])
        assert total == header_len == len(raw) - 8

    @pytest.mark.asyncio
    async def test_clean_eof_returns_none(self):
        assert await Message.from_reader(frame_reader(b'')) is None

    @pytest.mark.asyncio
    async def test_truncated_frame_raises(self):
        raw = Message(MessageType.PING, {}).to_bytes()
        with pytest.raises(ProtocolError):
            await Message.from_reader(frame_reader(raw[:-3]))

    @pytest.mark.asyncio
    async def test_oversized_frame_raises(self):
        with pytest.raises(ProtocolError):
            await Message.from_reader(frame_reader(struct.pack('>II', 2 ** 31, 10)))

    @pytest.mark.asyncio
    async def test_unknown_type_raises(self):
        header = b'{"type": "NOPE"}'
        raw = struct.pack('>II', len(header), len(header)) + header
        with pytest.raises(ProtocolError):
            await Message.from_reader(frame_reader(raw))

    @pytest.mark.asyncio
    @pytest.mark.parametrize('header', [b'[]', b'5', b'"PING"', b'null', b'{"type": []}'])
    async def test_non_object_header_raises(self, header):
        with pytest.raises(ProtocolError):
            await Message.from_reader(frame_reader(raw_frame(header)))


class TestTcpTransport:

    @pytest.mark.asyncio
    async def test_chunk_operations(self):
        server = NodeServer(capacity=4096)
        await server.start()
        transport = TcpNodeTransport(request_timeout=5)
        tree = MerkleTreeBuilder().build([b'one', b'two', b'three'])
        info = FileInfo(tree.root, 11, 5, 3)
        try:
            assert (await transport.ping(server.node))['capacity'] == 4096

            await transport.put_file_info(server.node, info)
            await transport.push_chunk(server.node, tree.root, 1, b'two', tree.proof(1))

            assert await transport.get_file_info(server.node, tree.root) == info
            assert await transport.get_file_info(server.node, 'ff' * 32) is None
            assert await transport.pull_chunk(server.node, tree.root, 1) == b'two'
            assert await transport.get_proof(server.node, tree.root, 1) == tree.proof(1)

            with pytest.raises(ChunkTransferError) as exc_info:
                await transport.pull_chunk(server.node, tree.root, 2)
            assert exc_info.value.index == 2
        finally:
            await transport.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_unreachable_node(self):
        server = NodeServer()
        await server.start()
        node = server.node
        await server.stop()

        transport = TcpNodeTransport(request_timeout=1, connect_timeout=1)
        with pytest.raises(NodeUnavailableError):
            await transport.ping(node)
        with pytest.raises(ChunkTransferError):
            await transport.pull_chunk(node, 'ab', 0)
        await transport.close()

    @pytest.mark.asyncio
    async def test_round_trip_over_tcp(self, tmp_path, make_file):
        servers = [NodeServer(capacity=1000 + i) for i in range(3)]
        for server in servers:
            await server.start()
        addresses = [s.node.address for s in servers]
        source = make_file(10_000)
        target = tmp_path / 'out' / 'copy.bin'

        transport = TcpNodeTransport(request_timeout=5)
        selector = NodeSelector(StaticNodeRegistry(addresses, transport))
        try:
            async with LedgerCommitService(tmp_path / 'ledger.db') as ledger:
                uploader = Uploader(selector, ledger, transport, Chunker(1024), replica_count=2)
                result = await uploader.upload(source)
                assert len(await ledger.lookup(result.root)) == 1

            downloader = Downloader(selector, transport, replica_count=3)
            info = await downloader.download(result.root, target)
        finally:
            await transport.close()
            for server in servers:
                await server.stop()

        assert info.chunk_count == 10
        assert target.read_bytes() == source.read_bytes()
        stored = sum(1 for s in servers for key in s.chunks if key[0] == result.root)
        assert stored == 20

    @pytest.mark.asyncio
    async def test_garbled_replies_are_routed_around(self, tmp_path, make_file):
        servers = [NodeServer(capacity=1000 + i) for i in range(2)]
        for server in servers:
            await server.start()
        source = make_file(6000)
        target = tmp_path / 'copy.bin'

        transport = TcpNodeTransport(request_timeout=5)
        selector = NodeSelector(StaticNodeRegistry([s.node.address for s in servers], transport))
        try:
            async with LedgerCommitService(tmp_path / 'ledger.db') as ledger:
                uploader = Uploader(selector, ledger, transport, Chunker(1024), replica_count=2)
                result = await uploader.upload(source)

            servers[0].garbled_pulls = True
            downloader = Downloader(selector, transport, replica_count=2)
            await downloader.download(result.root, target)

            with pytest.raises(ChunkTransferError):
                await transport.pull_chunk(servers[0].node, result.root, 0)
        finally:
            await transport.close()
            for server in servers:
                await server.stop()

        assert target.read_bytes() == source.read_bytes()
