"""
Transfer Module - Chunk push/pull

Coordinates parallel chunk transfers between this client and storage nodes.
"""

from .protocol import Message, MessageType, NodeTransport, TcpNodeTransport
from .session import ChunkState, ChunkStatus, TransferSession, run_workers
from .uploader import Uploader, UploadResult
from .downloader import Downloader, normalize_root

__all__ = [
    'Message',
    'MessageType',
    'NodeTransport',
    'TcpNodeTransport',
    'ChunkState',
    'ChunkStatus',
    'TransferSession',
    'run_workers',
    'Uploader',
    'UploadResult',
    'Downloader',
    'normalize_root',
]
