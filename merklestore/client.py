"""
Storage Client

The entry point for applications (an HTTP handler, the CLI):

    client = StorageClient.from_config(load_config())
    tx_hash, root = client.upload_file("report.pdf")
    client.download_file(root, "copy/report.pdf")

A client holds configuration and its external collaborators only. Every
call builds its own transport, selector and session, so several clients
with different settings can run side by side in one process.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

from .chain import CommitService, LedgerCommitService
from .config import Config
from .discovery import NodeRegistry, NodeSelector, StaticNodeRegistry
from .file import Chunker
from .merkle import FileInfo
from .transfer import Downloader, NodeTransport, TcpNodeTransport, Uploader, UploadResult

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], NodeTransport]


class StorageClient:
    """Uploads and downloads files against one storage network configuration."""

    def __init__(self, config: Config, commit_service: CommitService,
                 registry: Optional[NodeRegistry] = None,
                 transport_factory: Optional[TransportFactory] = None):
        """
        Args:
            config: Client settings
            commit_service: Where root hashes are committed
            registry: Node registry; defaults to probing config.storage_nodes
            transport_factory: Builds one NodeTransport per call
        """
        config.validate()
        self.config = config
        self.commit_service = commit_service
        self.registry = registry
        self.transport_factory = transport_factory or (
            lambda: TcpNodeTransport(request_timeout=config.request_timeout)
        )

    @classmethod
    def from_config(cls, config: Config) -> 'StorageClient':
        """Client over TCP nodes from config, committing to the local ledger."""
        return cls(config, LedgerCommitService(config.ledger_path))

    async def __aenter__(self) -> 'StorageClient':
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self.commit_service.close()

    def _selector(self, transport: NodeTransport) -> NodeSelector:
        registry = self.registry or StaticNodeRegistry(
            self.config.storage_nodes, transport, probe_timeout=self.config.probe_timeout
        )
        return NodeSelector(registry)

    async def upload(self, file_path: Path, replica_count: int = None) -> UploadResult:
        """Upload a file, returning the full result."""
        transport = self.transport_factory()
        try:
            uploader = Uploader(
                selector=self._selector(transport),
                commit_service=self.commit_service,
                transport=transport,
                chunker=Chunker(self.config.chunk_size),
                replica_count=replica_count or self.config.replica_count,
                workers=self.config.workers,
                retry_budget=self.config.retry_budget,
                timeout=self.config.upload_timeout,
                strategy=self.config.selection_strategy,
            )
            return await uploader.upload(Path(file_path))
        finally:
            await transport.close()

    async def download(self, root: str, output_path: Path,
                       verify: Optional[bool] = None) -> FileInfo:
        """Download a file by root hash, returning its layout."""
        transport = self.transport_factory()
        try:
            downloader = Downloader(
                selector=self._selector(transport),
                transport=transport,
                replica_count=max(self.config.download_replicas, 1),
                workers=self.config.workers,
                retry_budget=self.config.retry_budget,
                timeout=self.config.download_timeout,
                strategy=self.config.selection_strategy,
            )
            if verify is None:
                verify = self.config.verify
            return await downloader.download(root, Path(output_path), verify=verify)
        finally:
            await transport.close()

    async def aupload_file(self, file_path) -> Tuple[str, str]:
        """Upload a file, returning (tx_hash, root_hash)."""
        result = await self.upload(Path(file_path))
        return result.tx_hash, result.root

    async def adownload_file(self, root: str, output_path):
        await self.download(root, Path(output_path))

    def upload_file(self, file_path) -> Tuple[str, str]:
        """Blocking upload. Must not be called from a running event loop."""
        return asyncio.run(self._closing(self.aupload_file(file_path)))

    def download_file(self, root: str, output_path):
        """Blocking download. Must not be called from a running event loop."""
        asyncio.run(self._closing(self.adownload_file(root, output_path)))

    async def _closing(self, coro):
        # Collaborators bound to this event loop must not outlive it.
        try:
            return await coro
        finally:
            await self.close()
