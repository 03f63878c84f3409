"""
merklestore - client engine for content-addressed storage networks

Files are split into fixed-size chunks, hashed into a Merkle tree whose root
is the file's identifier, committed on-chain, and replicated across storage
nodes with per-chunk proof verification on download.
"""

from .client import StorageClient
from .config import Config, load_config
from .errors import (
    ChainCommitError,
    ChunkTransferError,
    ChunkVerificationError,
    DownloadIncompleteError,
    DownloadTimeoutError,
    InsufficientNodesError,
    IOReadError,
    NodeUnavailableError,
    StorageError,
    UploadIncompleteError,
    UploadTimeoutError,
)

__version__ = '0.1.0'

__all__ = [
    'StorageClient',
    'Config',
    'load_config',
    'ChainCommitError',
    'ChunkTransferError',
    'ChunkVerificationError',
    'DownloadIncompleteError',
    'DownloadTimeoutError',
    'InsufficientNodesError',
    'IOReadError',
    'NodeUnavailableError',
    'StorageError',
    'UploadIncompleteError',
    'UploadTimeoutError',
]
