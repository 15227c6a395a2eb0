"""
CLI for blobgate.

Commands:
    blobgate put FILE - Store a file and print its BlobId
    blobgate get ID - Retrieve a blob by id
    blobgate ping - Check that the storage node answers
    blobgate config - Show current configuration
    blobgate version - Print version
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Annotated, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from blobgate import __version__
from blobgate.config import Settings, clear_settings_cache, get_settings
from blobgate.exceptions import BlobGateError
from blobgate.logging import setup_logging
from blobgate.network import KuboClient
from blobgate.store import BlobStore
from blobgate.types import BlobId, PushResult

app = typer.Typer(
    name="blobgate",
    help="Content-addressed blob store backed by an IPFS node",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except ValidationError as e:
        error_console.print(f"[red]Invalid configuration:[/red]\n{e}")
        return None


def _load_settings() -> Settings:
    """Load settings and configure logging, exiting on invalid configuration."""
    settings = _get_settings_safe()
    if settings is None:
        error_console.print("Run 'blobgate config' to review the settings.")
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    return settings


@app.command()
def put(
    path: Annotated[
        Path,
        typer.Argument(exists=True, dir_okay=False, readable=True, help="File to store"),
    ],
    no_wait: Annotated[
        bool,
        typer.Option("--no-wait", help="Only cache locally, skip replication"),
    ] = False,
) -> None:
    """Store a file and print its BlobId.

    Waits for replication to the storage node before exiting and fails if
    the node did not acknowledge the blob. With --no-wait the blob is only
    kept in the local cache, which is useful with CACHE_BACKEND=file.
    """
    settings = _load_settings()
    data = path.read_bytes()

    async def _run() -> tuple[BlobId, list[PushResult]]:
        store = await BlobStore.from_settings(settings).open()
        try:
            blob_id = await store.put(data)
            results = [] if no_wait else await store.flush()
        finally:
            await store.close(drain=not no_wait)
        return blob_id, results

    try:
        blob_id, results = asyncio.run(_run())
    except BlobGateError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(str(blob_id), highlight=False)

    failed = [result for result in results if not result.ok]
    if failed:
        error_console.print(f"[red]Replication failed:[/red] {failed[0].error}")
        raise typer.Exit(1)


@app.command()
def get(
    blob_id: Annotated[str, typer.Argument(help="BlobId returned by put")],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write to this file instead of stdout"),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Deadline for the network fetch in seconds"),
    ] = None,
) -> None:
    """Retrieve a blob by id."""
    settings = _load_settings()

    async def _run() -> bytes:
        async with BlobStore.from_settings(settings) as store:
            return await store.get(blob_id, deadline=timeout)

    try:
        data = asyncio.run(_run())
    except BlobGateError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if output is not None:
        output.write_bytes(data)
        error_console.print(f"[dim]Wrote {len(data)} bytes to[/dim] {output}")
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()


@app.command()
def ping() -> None:
    """Check that the storage node answers."""
    settings = _load_settings()

    async def _run() -> str:
        async with KuboClient.from_settings(settings) as client:
            return await client.version()

    try:
        node_version = asyncio.run(_run())
    except BlobGateError as e:
        error_console.print(f"[red]Node unreachable:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[green]OK[/green] {settings.IPFS_API_URL} (kubo {node_version})")


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = _get_settings_safe()
    if settings is None:
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"blobgate version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
