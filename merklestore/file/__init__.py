"""
File Module - Chunking

Splits local files into fixed-size chunks for Merkle hashing and transfer.
"""

from .chunker import Chunker, CHUNK_SIZE

__all__ = [
    'Chunker',
    'CHUNK_SIZE',
]
