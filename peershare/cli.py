#!/usr/bin/env python3
"""
PeerShare CLI

Command-line interface for the PeerShare coordination service and its
participants.

Usage:
    peershare serve                  # Run the coordination service
    peershare send FILE              # Offer a file and print its share id
    peershare receive SHARE_ID       # Download a shared file
    peershare config                 # Show the effective configuration
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, load_config, EXAMPLE_CONFIG
from .errors import PeerShareError
from .transfer.chunker import FilePayload

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              default=None, help='JSON config file')
@click.option('--server', default=None, help='Coordination service URL')
@click.pass_context
def cli(ctx, verbose, config_path, server):
    """PeerShare - direct peer-to-peer file sharing."""
    config = load_config(Path(config_path) if config_path else None)
    if server:
        config.server_url = server

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Interface to bind')
@click.option('--port', default=None, type=int, help='Listening port')
@click.option('--static-dir', type=click.Path(file_okay=False), default=None,
              help='Directory holding index.html and receive.html')
@click.option('--ttl', default=None, type=float, help='Share lifetime in seconds (0 = forever)')
@click.pass_context
def serve(ctx, host, port, static_dir, ttl):
    """Run the coordination service."""
    config: Config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.port = port
    if static_dir:
        config.static_dir = Path(static_dir)
    if ttl is not None:
        config.session_ttl = ttl

    console.print(Panel.fit(
        f"[bold green]Coordination Service[/bold green]\n\n"
        f"Address: [cyan]http://{config.host}:{config.port}[/cyan]\n"
        f"WebSocket: [cyan]/ws[/cyan]\n"
        f"Static dir: [blue]{config.static_dir or '-'}[/blue]\n"
        f"Share TTL: [yellow]{config.session_ttl or 'none'}[/yellow]",
        title="PeerShare"
    ))
    console.print(f"\n[dim]API docs at http://localhost:{config.port}/docs[/dim]\n")

    from .api import run_api_server

    try:
        asyncio.run(run_api_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def send(ctx, file_path):
    """Offer a file until interrupted."""
    config: Config = ctx.obj['config']
    payload = FilePayload(Path(file_path))

    async def run():
        from .client import SignalingClient, ShareOwner

        signaling = SignalingClient(config.server_url, timeout=config.connect_timeout)
        await signaling.connect()

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Creating share...", total=100)

            def update_progress(average, active):
                progress.update(task, completed=average)

            def update_status(status):
                progress.update(task, description=status)

            owner = ShareOwner(
                signaling,
                payload,
                chunk_size=config.chunk_size,
                connect_timeout=config.connect_timeout,
                on_progress=update_progress,
                on_status=update_status,
            )

            try:
                share_id = await owner.start()
                link = f"{config.server_url.rstrip('/')}/share/{share_id}"
                progress.console.print(Panel.fit(
                    f"[bold green]File Shared[/bold green]\n\n"
                    f"Name: [cyan]{owner.metadata.name}[/cyan]\n"
                    f"Size: [yellow]{format_size(owner.metadata.size)}[/yellow]\n\n"
                    f"[bold]Share id (send this):[/bold]\n"
                    f"[green]{share_id}[/green]\n"
                    f"[dim]{link}[/dim]",
                    title="Share"
                ))

                while signaling.connected and not owner.ended:
                    await asyncio.sleep(0.5)
            finally:
                await owner.stop()
                await signaling.close()

        console.print(f"[green]Share closed. Completed transfers: "
                      f"{owner.completed_transfers}[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Share ended[/yellow]")
    except (PeerShareError, OSError) as e:
        console.print(f"[red]✗ {e}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument('share_id')
@click.option('--output', '-o', type=click.Path(file_okay=False), default='.',
              help='Output directory')
@click.option('--timeout', default=None, type=float, help='Give up after this many seconds')
@click.pass_context
def receive(ctx, share_id, output, timeout):
    """Download the file offered under SHARE_ID."""
    config: Config = ctx.obj['config']

    async def run() -> Optional[Path]:
        from .client import SignalingClient, ShareReceiver

        signaling = SignalingClient(config.server_url, timeout=config.connect_timeout)
        await signaling.connect()

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Joining share...", total=100)

            receiver = ShareReceiver(
                signaling,
                share_id,
                output_dir=Path(output),
                channel_host=config.channel_host,
                nominal_chunk_size=config.nominal_chunk_size,
                strict=config.strict_reassembly,
                on_progress=lambda p: progress.update(task, completed=p),
                on_status=lambda s: progress.update(task, description=s),
            )

            try:
                await receiver.start()
                await receiver.wait(timeout)
            finally:
                await receiver.stop()
                await signaling.close()

        if receiver.saved_path is None:
            console.print(f"\n[red]✗ Download failed: {receiver.status}[/red]")
        return receiver.saved_path

    try:
        result = asyncio.run(run())
    except asyncio.TimeoutError:
        console.print("\n[red]✗ Timed out waiting for the sender[/red]")
        raise SystemExit(1)
    except (PeerShareError, OSError) as e:
        console.print(f"\n[red]✗ {e}[/red]")
        raise SystemExit(1)

    if result is None:
        raise SystemExit(1)
    console.print(f"\n[green]✓ Downloaded to: {result}[/green]")


@cli.command('config')
@click.option('--init', 'init_path', type=click.Path(dir_okay=False), default=None,
              help='Write an example config file here')
@click.pass_context
def show_config(ctx, init_path):
    """Show the effective configuration."""
    if init_path:
        Path(init_path).write_text(EXAMPLE_CONFIG.lstrip())
        console.print(f"[green]Wrote example config to {init_path}[/green]")
        return

    config: Config = ctx.obj['config']
    table = Table(title="Configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="yellow")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
