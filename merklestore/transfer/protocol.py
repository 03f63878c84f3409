"""
Node Transfer Protocol (client side)

Design Decision: Transfer Protocol
===================================

Options Considered:
1. HTTP - Standard, well-supported
   - One request per chunk, heavy framing per 256KB payload
2. Raw TCP with custom framing
   - Lightweight, connections stay open across chunks
3. gRPC streaming
   - Heavy dependency for a handful of verbs

Decision: TCP with Length-Prefixed Messages
- 4-byte total length + 4-byte header length + JSON header + binary data
- One persistent connection per storage node, one request in flight per
  connection (requests on the same node queue on a lock)

Message Format:
```
+----------------+----------------+----------------+----------------+
| Length (4B)    | Header len (4B)| Header (JSON)  | Data (binary)  |
+----------------+----------------+----------------+----------------+
```

Verbs:
    PUT_FILE_INFO {file_info}              -> ACK
    PUSH_CHUNK    {root, index, proof} +data -> ACK
    PULL_CHUNK    {root, index}            -> CHUNK_DATA +data | NOT_FOUND
    GET_PROOF     {root, index}            -> PROOF_DATA {proof} | NOT_FOUND
    GET_FILE_INFO {root}                   -> FILE_INFO {file_info} | NOT_FOUND
    PING                                   -> PONG {capacity}
Any request may be answered with ERROR {message}.
"""

import asyncio
import json
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ..discovery.node import StorageNode
from ..errors import ChunkTransferError, NodeUnavailableError
from ..merkle import FileInfo, MerkleProof

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 100 * 1024 * 1024  # 100MB


class MessageType(Enum):
    """Node protocol message types."""
    # File layout
    PUT_FILE_INFO = "PUT_FILE_INFO"
    GET_FILE_INFO = "GET_FILE_INFO"
    FILE_INFO = "FILE_INFO"

    # Chunk operations
    PUSH_CHUNK = "PUSH_CHUNK"
    PULL_CHUNK = "PULL_CHUNK"
    CHUNK_DATA = "CHUNK_DATA"
    GET_PROOF = "GET_PROOF"
    PROOF_DATA = "PROOF_DATA"

    # Control
    ACK = "ACK"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"
    PING = "PING"
    PONG = "PONG"


class ProtocolError(Exception):
    """Malformed frame on the wire."""


@dataclass
class Message:
    """A node protocol message."""
    type: MessageType
    headers: Dict[str, Any]
    data: bytes = b''

    def to_bytes(self) -> bytes:
        """Serialize message to bytes."""
        header_dict = {
            'type': self.type.value,
            'data_length': len(self.data),
            **self.headers
        }
        header_bytes = json.dumps(header_dict).encode('utf-8')
        total_length = len(header_bytes) + len(self.data)

        return (
            struct.pack('>I', total_length) +
            struct.pack('>I', len(header_bytes)) +
            header_bytes +
            self.data
        )

    @classmethod
    async def from_reader(cls, reader: asyncio.StreamReader) -> Optional['Message']:
        """
        Read a message from a stream.

        Returns None on a clean EOF; raises ProtocolError on a bad frame.
        """
        try:
            length_bytes = await reader.readexactly(4)
        except asyncio.IncompleteReadError:
            return None

        try:
            total_length = struct.unpack('>I', length_bytes)[0]
            if total_length > MAX_MESSAGE_SIZE:
                raise ProtocolError(f"Message too large: {total_length}")

            header_length = struct.unpack('>I', await reader.readexactly(4))[0]
            if header_length > total_length:
                raise ProtocolError("Header longer than message")

            header_dict = json.loads((await reader.readexactly(header_length)).decode('utf-8'))
            if not isinstance(header_dict, dict):
                raise ProtocolError(f"Header is not an object: {type(header_dict).__name__}")

            data_length = total_length - header_length
            data = await reader.readexactly(data_length) if data_length > 0 else b''

            msg_type = MessageType(header_dict.pop('type'))
            header_dict.pop('data_length', None)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError("Connection closed mid-message") from e
        except (KeyError, ValueError, TypeError, AttributeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Bad message: {e}") from e

        return cls(type=msg_type, headers=header_dict, data=data)


class NodeConnection:
    """
    One TCP connection to a storage node.

    Only one request/response pair is active at a time per connection.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(self, message: Message) -> Message:
        async with self._lock:
            if self._closed:
                raise ConnectionError("Connection closed")
            self.writer.write(message.to_bytes())
            await self.writer.drain()

            response = await Message.from_reader(self.reader)
            if response is None:
                raise ConnectionError("Connection closed by node")
            return response

    def abort(self):
        """Close without waiting; safe to call from cancellation paths."""
        if not self._closed:
            self._closed = True
            self.writer.close()

    async def close(self):
        if not self._closed:
            self._closed = True
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass


async def connect_to_node(host: str, port: int,
                          timeout: float = 10.0) -> NodeConnection:
    """Open a connection to a node's transfer port."""
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as e:
        raise NodeUnavailableError(f"{host}:{port}", f"Failed to connect to {host}:{port}: {e}") from e
    return NodeConnection(reader, writer)


class NodeTransport:
    """
    Client side of the node transfer protocol.

    Coordinators only talk to nodes through this interface, so tests and
    alternative wire protocols can provide their own implementation.
    """

    async def ping(self, node: StorageNode) -> Dict[str, Any]:
        raise NotImplementedError

    async def put_file_info(self, node: StorageNode, info: FileInfo):
        raise NotImplementedError

    async def push_chunk(self, node: StorageNode, root: str, index: int,
                         data: bytes, proof: MerkleProof):
        raise NotImplementedError

    async def pull_chunk(self, node: StorageNode, root: str, index: int) -> bytes:
        raise NotImplementedError

    async def get_proof(self, node: StorageNode, root: str, index: int) -> MerkleProof:
        raise NotImplementedError

    async def get_file_info(self, node: StorageNode, root: str) -> Optional[FileInfo]:
        raise NotImplementedError

    async def close(self):
        pass


class TcpNodeTransport(NodeTransport):
    """
    NodeTransport over the length-prefixed TCP protocol.

    Keeps one connection per node. A connection that errors, times out or is
    interrupted by cancellation is dropped, since its stream position is
    unknown afterwards.
    """

    def __init__(self, request_timeout: float = 30.0, connect_timeout: float = 10.0):
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout

        # Connection pool: address -> NodeConnection
        self._connections: Dict[str, NodeConnection] = {}
        self._connection_lock = asyncio.Lock()

    async def _get_connection(self, node: StorageNode) -> NodeConnection:
        async with self._connection_lock:
            conn = self._connections.get(node.address)
            if conn is not None and not conn.closed:
                return conn

            conn = await connect_to_node(node.host, node.port, self.connect_timeout)
            self._connections[node.address] = conn
            return conn

    def _drop(self, node: StorageNode):
        conn = self._connections.pop(node.address, None)
        if conn is not None:
            conn.abort()

    async def _request(self, node: StorageNode, message: Message) -> Message:
        conn = await self._get_connection(node)
        try:
            response = await asyncio.wait_for(
                conn.request(message),
                timeout=self.request_timeout
            )
        except asyncio.CancelledError:
            self._drop(node)
            raise
        except asyncio.TimeoutError as e:
            self._drop(node)
            raise NodeUnavailableError(
                node.address, f"{message.type.value} to {node.address} timed out"
            ) from e
        except (ConnectionError, OSError, ProtocolError) as e:
            self._drop(node)
            raise NodeUnavailableError(
                node.address, f"{message.type.value} to {node.address} failed: {e}"
            ) from e

        if response.type == MessageType.ERROR:
            raise NodeUnavailableError(
                node.address,
                f"{node.address} rejected {message.type.value}: "
                f"{response.headers.get('message', 'unknown error')}"
            )
        return response

    async def _chunk_request(self, node: StorageNode, index: int,
                             message: Message, expected: MessageType) -> Message:
        try:
            response = await self._request(node, message)
        except NodeUnavailableError as e:
            raise ChunkTransferError(index, node.address, str(e)) from e

        if response.type != expected:
            raise ChunkTransferError(
                index, node.address,
                f"{node.address} answered {message.type.value} for chunk {index} "
                f"with {response.type.value}"
            )
        return response

    async def ping(self, node: StorageNode) -> Dict[str, Any]:
        response = await self._request(node, Message(MessageType.PING, {}))
        if response.type != MessageType.PONG:
            raise NodeUnavailableError(node.address, f"Unexpected ping reply {response.type.value}")
        return response.headers

    async def put_file_info(self, node: StorageNode, info: FileInfo):
        response = await self._request(
            node, Message(MessageType.PUT_FILE_INFO, {'file_info': info.to_dict()})
        )
        if response.type != MessageType.ACK:
            raise NodeUnavailableError(
                node.address, f"{node.address} did not accept file info for {info.root[:16]}..."
            )

    async def push_chunk(self, node: StorageNode, root: str, index: int,
                         data: bytes, proof: MerkleProof):
        message = Message(
            MessageType.PUSH_CHUNK,
            {'root': root, 'index': index, 'proof': proof.to_dict()},
            data=data,
        )
        await self._chunk_request(node, index, message, MessageType.ACK)

    async def pull_chunk(self, node: StorageNode, root: str, index: int) -> bytes:
        message = Message(MessageType.PULL_CHUNK, {'root': root, 'index': index})
        response = await self._chunk_request(node, index, message, MessageType.CHUNK_DATA)
        return response.data

    async def get_proof(self, node: StorageNode, root: str, index: int) -> MerkleProof:
        message = Message(MessageType.GET_PROOF, {'root': root, 'index': index})
        response = await self._chunk_request(node, index, message, MessageType.PROOF_DATA)
        try:
            return MerkleProof.from_dict(response.headers['proof'])
        except (KeyError, TypeError, ValueError) as e:
            raise ChunkTransferError(index, node.address, f"Malformed proof: {e}") from e

    async def get_file_info(self, node: StorageNode, root: str) -> Optional[FileInfo]:
        response = await self._request(node, Message(MessageType.GET_FILE_INFO, {'root': root}))
        if response.type == MessageType.NOT_FOUND:
            return None
        if response.type != MessageType.FILE_INFO:
            raise NodeUnavailableError(node.address, f"Unexpected reply {response.type.value}")
        try:
            return FileInfo.from_dict(response.headers['file_info'])
        except (KeyError, TypeError, ValueError) as e:
            raise NodeUnavailableError(node.address, f"Malformed file info: {e}") from e

    async def close(self):
        """Close all connections."""
        async with self._connection_lock:
            for conn in self._connections.values():
                await conn.close()
            self._connections.clear()
