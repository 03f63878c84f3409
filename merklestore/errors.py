"""
Error Taxonomy

Every Upload/Download call ends in exactly one terminal outcome. Per-chunk
errors (ChunkTransferError, ChunkVerificationError) are retried inside the
coordinators and only surface once a chunk's retry budget is spent.
"""

from typing import Iterable, List, Optional


class StorageError(Exception):
    """Base class for all merklestore errors."""


class IOReadError(StorageError):
    """Local file could not be opened or read."""

    def __init__(self, path, message: str = ""):
        self.path = str(path)
        super().__init__(message or f"Failed to read {self.path}")


class InsufficientNodesError(StorageError):
    """Fewer eligible storage nodes than the caller requires."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Need at least {required} healthy storage nodes, found {available}"
        )


class NodeUnavailableError(StorageError):
    """A storage node could not be reached."""

    def __init__(self, address: str, message: str = ""):
        self.address = address
        super().__init__(message or f"Node {address} unavailable")


class ChunkTransferError(StorageError):
    """A single chunk push or pull failed."""

    def __init__(self, index: int, address: str, message: str = ""):
        self.index = index
        self.address = address
        super().__init__(
            message or f"Transfer of chunk {index} with {address} failed"
        )


class ChunkVerificationError(StorageError):
    """A chunk did not verify against the root hash."""

    def __init__(self, index: int, address: str = "", message: str = ""):
        self.index = index
        self.address = address
        source = f" from {address}" if address else ""
        super().__init__(message or f"Chunk {index}{source} failed verification")


class _IncompleteError(StorageError):
    operation = "Transfer"

    def __init__(self, indices: Iterable[int], cause: Optional[BaseException] = None,
                 message: str = ""):
        self.indices: List[int] = sorted(indices)
        self.cause = cause
        if not message:
            shown = ", ".join(str(i) for i in self.indices[:10])
            if len(self.indices) > 10:
                shown += ", ..."
            message = f"{self.operation} incomplete: chunks [{shown}] failed"
            if cause is not None:
                message += f" (last error: {cause})"
        super().__init__(message)


class UploadIncompleteError(_IncompleteError):
    """Upload retry budgets exhausted before every chunk was replicated."""
    operation = "Upload"


class DownloadIncompleteError(_IncompleteError):
    """Download retry budgets exhausted before every chunk was fetched."""
    operation = "Download"


class TransferTimeoutError(StorageError):
    """The deadline of a whole Upload/Download call elapsed."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"{self.operation} timed out after {timeout:g}s")

    operation = "Transfer"


class UploadTimeoutError(TransferTimeoutError):
    operation = "Upload"


class DownloadTimeoutError(TransferTimeoutError):
    operation = "Download"


class ChainCommitError(StorageError):
    """On-chain commitment of a root hash failed. Never retried."""
