"""
merklestore CLI

Command-line interface for uploading to and downloading from a
content-addressed storage network.

Usage:
    merklestore upload FILE               # Upload, print tx hash and root
    merklestore download ROOT OUTPUT      # Download and verify by root
    merklestore root FILE                 # Compute a file's root offline
    merklestore nodes                     # Probe configured storage nodes
    merklestore config                    # Show effective configuration
"""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .client import StorageClient
from .config import EXAMPLE_CONFIG, load_config
from .discovery import StaticNodeRegistry
from .errors import StorageError
from .file import Chunker
from .merkle import MerkleTreeBuilder
from .transfer import TcpNodeTransport

console = Console()


def setup_logging(level: str = 'INFO', verbose: bool = False):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def fail(message: str):
    console.print(f"[red]✗ {message}[/red]")
    sys.exit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              default='config.json', help='JSON config file')
@click.option('--node', 'nodes', multiple=True, help='Storage node (host:port), repeatable')
@click.pass_context
def cli(ctx, verbose, config_path, nodes):
    """merklestore - Merkle-verified uploads and downloads."""
    config = load_config(Path(config_path))
    if nodes:
        config.storage_nodes = list(nodes)
    setup_logging(config.log_level, verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--replicas', '-r', type=int, default=None, help='Replica count')
@click.pass_context
def upload(ctx, file_path, replicas):
    """Upload a file to the storage network."""
    config = ctx.obj['config']
    file_path = Path(file_path)

    async def run():
        async with StorageClient.from_config(config) as client:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task(f"Uploading {file_path.name}...", total=None)
                return await client.upload(file_path, replicas)

    try:
        result = asyncio.run(run())
    except (StorageError, ValueError) as e:
        fail(f"Upload failed: {e}")

    console.print(Panel.fit(
        f"[bold green]Upload Complete[/bold green]\n\n"
        f"Name: [cyan]{file_path.name}[/cyan]\n"
        f"Size: [yellow]{format_size(result.info.size)}[/yellow]\n"
        f"Chunks: [yellow]{result.info.chunk_count}[/yellow]\n"
        f"Nodes: [blue]{', '.join(result.replicas)}[/blue]\n\n"
        f"Tx Hash: [cyan]{result.tx_hash}[/cyan]\n"
        f"[bold]Root Hash:[/bold]\n"
        f"[green]{result.root}[/green]",
        title="Uploaded File"
    ))


@cli.command()
@click.argument('root_hash')
@click.argument('output', type=click.Path(dir_okay=False))
@click.option('--no-verify', is_flag=True, help='Skip Merkle proof verification')
@click.pass_context
def download(ctx, root_hash, output, no_verify):
    """Download a file by its root hash."""
    config = ctx.obj['config']
    output_path = Path(output)

    async def run():
        async with StorageClient.from_config(config) as client:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                progress.add_task(f"Downloading {root_hash[:16]}...", total=None)
                return await client.download(root_hash, output_path, verify=not no_verify)

    try:
        info = asyncio.run(run())
    except (StorageError, ValueError) as e:
        fail(f"Download failed: {e}")

    console.print(f"[green]✓ Downloaded {format_size(info.size)} "
                  f"({info.chunk_count} chunks) to: {output_path}[/green]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def root(ctx, file_path):
    """Compute a file's root hash without uploading it."""
    config = ctx.obj['config']
    chunker = Chunker(config.chunk_size)

    try:
        tree = MerkleTreeBuilder().build(chunker.iter_chunks_sync(Path(file_path)))
    except StorageError as e:
        fail(str(e))

    console.print(f"[dim]{tree.leaf_count} chunks[/dim]")
    console.print(tree.root)


@cli.command()
@click.pass_context
def nodes(ctx):
    """Probe the configured storage nodes."""
    config = ctx.obj['config']

    if not config.storage_nodes:
        console.print("[yellow]No storage nodes configured[/yellow]")
        return

    async def run():
        transport = TcpNodeTransport(request_timeout=config.probe_timeout)
        try:
            registry = StaticNodeRegistry(config.storage_nodes, transport, config.probe_timeout)
            return await registry.list_nodes()
        finally:
            await transport.close()

    table = Table(title="Storage Nodes")
    table.add_column("Address", style="cyan")
    table.add_column("Healthy")
    table.add_column("Capacity", justify="right", style="yellow")
    table.add_column("Latency", justify="right")

    try:
        probed = asyncio.run(run())
    except ValueError as e:
        fail(str(e))

    for node in probed:
        table.add_row(
            node.address,
            "[green]yes[/green]" if node.healthy else "[red]no[/red]",
            format_size(node.capacity) if node.healthy else "-",
            f"{node.latency * 1000:.1f} ms" if node.healthy else "-",
        )

    console.print(table)


@cli.command('config')
@click.option('--example', is_flag=True, help='Print an example config file')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        console.print(EXAMPLE_CONFIG)
        return

    config = ctx.obj['config']
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        if isinstance(value, list):
            value = ', '.join(value) or '-'
        table.add_row(key, str(value))
    console.print(table)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


def main():
    cli()


if __name__ == '__main__':
    main()
