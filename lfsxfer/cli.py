#!/usr/bin/env python3
"""
Custom Transfer CLI

Command-line interface for running object transfers through
configured custom transfer agents.

Usage:
    lfsxfer adapters                              # List configured adapters
    lfsxfer upload BATCH.json --adapter NAME      # Upload objects in a batch response
    lfsxfer download BATCH.json --adapter NAME    # Download objects in a batch response

Adapters are declared with git-style keys, from a JSON config file
(--config), a file holding `git config --list` output (--git-config),
or on the command line (-c key=value):

    lfsxfer -c lfs.customtransfer.myagent.path=/usr/bin/myagent adapters
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn
from rich.panel import Panel
from rich.logging import RichHandler
from rich.markup import escape

from .config import EXAMPLE_CONFIG, Config, load_config
from .file import LocalObjectStore, ObjectStoreError
from .api import LfsApiClient
from .transfer import (
    AdapterRegistry, Direction, Transfer, TransferError,
    TransferObject, TransferResult, configure_custom_adapters,
)

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False, path_type=Path),
              help='JSON config file')
@click.option('--git-config', 'git_config_path',
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='File containing `git config --list` output')
@click.option('-c', 'overrides', multiple=True, metavar='KEY=VALUE',
              help='Set a git-style config key (repeatable)')
@click.option('--storage-dir', type=click.Path(file_okay=False, path_type=Path),
              help='Local object store directory')
@click.pass_context
def cli(ctx, verbose, config_path, git_config_path, overrides, storage_dir):
    """Custom transfer adapters - move large objects through external agents."""
    config = load_config(config_path)
    setup_logging(verbose, config.log_level)

    if git_config_path:
        config.update_git_config(Config.parse_git_lines(git_config_path.read_text().splitlines()))

    for item in overrides:
        if '=' not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint='-c')
        key, value = item.split('=', 1)
        config.set(key, value)

    if storage_dir:
        config.storage_dir = storage_dir

    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['registry'] = configure_custom_adapters(config)


@cli.command()
@click.pass_context
def adapters(ctx):
    """List configured custom transfer adapters."""
    registry: AdapterRegistry = ctx.obj['registry']

    if not len(registry):
        console.print("[yellow]No custom transfer adapters configured[/yellow]")
    else:
        table = Table(title="Custom Transfer Adapters")
        table.add_column("Name", style="cyan")
        table.add_column("Direction", style="yellow")
        table.add_column("Path", style="green")
        table.add_column("Args")
        table.add_column("Concurrent", justify="center")
        table.add_column("Timeout", justify="right")

        for definition in registry.definitions():
            table.add_row(
                definition.name,
                definition.direction.value,
                definition.path,
                definition.args,
                'yes' if definition.concurrent else 'no',
                f"{definition.read_timeout:g}s" if definition.read_timeout else '-',
            )

        console.print(table)

    for error in registry.errors:
        console.print(f"[red]✗ {escape(str(error))}[/red]")


@cli.command('init-config')
@click.argument('path', type=click.Path(dir_okay=False, path_type=Path))
def init_config(path):
    """Write an example JSON config file."""
    if path.exists():
        console.print(f"[red]{path} already exists[/red]")
        raise SystemExit(1)
    path.write_text(EXAMPLE_CONFIG.lstrip())
    console.print(f"[green]✓ Wrote example config to {path}[/green]")


@cli.command()
@click.argument('file_paths', nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def store(ctx, file_paths):
    """Copy files into the local object store and print their oids."""
    config: Config = ctx.obj['config']

    async def run():
        object_store = LocalObjectStore(config.storage_dir)

        table = Table(title="Stored Objects")
        table.add_column("OID", style="cyan")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("File", style="green")

        for file_path in file_paths:
            oid, size = await object_store.store_file(file_path)
            table.add_row(oid, format_size(size), str(file_path))

        console.print(table)

    asyncio.run(run())


@cli.command()
@click.argument('batch_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--adapter', '-a', 'adapter_name', required=True, help='Custom adapter name')
@click.option('--concurrency', '-j', type=int, default=None, help='Number of agent processes')
@click.pass_context
def upload(ctx, batch_file, adapter_name, concurrency):
    """Upload the objects listed in a batch response."""
    _run_command(ctx, Direction.UPLOAD, batch_file, adapter_name, concurrency)


@cli.command()
@click.argument('batch_file', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--adapter', '-a', 'adapter_name', required=True, help='Custom adapter name')
@click.option('--concurrency', '-j', type=int, default=None, help='Number of agent processes')
@click.pass_context
def download(ctx, batch_file, adapter_name, concurrency):
    """Download the objects listed in a batch response into the object store."""
    _run_command(ctx, Direction.DOWNLOAD, batch_file, adapter_name, concurrency)


def _run_command(ctx, direction: Direction, batch_file: Path,
                 adapter_name: str, concurrency: Optional[int]):
    config: Config = ctx.obj['config']
    registry: AdapterRegistry = ctx.obj['registry']

    try:
        objects, skipped = load_batch(batch_file)
    except (ValueError, KeyError, TypeError) as e:
        console.print(f"[red]Invalid batch file {escape(str(batch_file))}: {escape(str(e))}[/red]")
        ctx.exit(1)

    for oid, message in skipped:
        console.print(f"[yellow]Skipping {oid[:16]}...: {escape(message)}[/yellow]")

    try:
        if concurrency is None:
            concurrency = config.effective_concurrency()
        results = asyncio.run(
            run_transfers(config, registry, adapter_name, direction, objects, concurrency)
        )
    except TransferError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        ctx.exit(1)

    failed = [r for r in results if not r.ok]
    succeeded = len(results) - len(failed)

    console.print(Panel.fit(
        f"[bold]{direction.value.capitalize()} via [cyan]{adapter_name}[/cyan][/bold]\n\n"
        f"Succeeded: [green]{succeeded}[/green]\n"
        f"Failed: [{'red' if failed else 'green'}]{len(failed)}[/]",
        title="Transfer Summary"
    ))
    for result in failed:
        console.print(f"[red]✗ {result.transfer.oid[:16]}...: {escape(str(result.error))}[/red]")

    if failed:
        ctx.exit(1)


def load_batch(path: Path) -> Tuple[List[TransferObject], List[Tuple[str, str]]]:
    """
    Read a batch API response.

    Accepts {"objects": [...]} or a bare list. Objects the server
    returned an error for, and repeats of an oid, are skipped.

    Returns:
        (transferable objects, [(oid, error message) for skipped ones])
    """
    data = json.loads(path.read_text())
    entries = data['objects'] if isinstance(data, dict) else data

    objects = []
    skipped = []
    seen = set()
    for entry in entries:
        oid = entry.get('oid', '?')
        error = entry.get('error')
        if error:
            message = error.get('message', str(error)) if isinstance(error, dict) else str(error)
            skipped.append((oid, message))
            continue
        # Transfer each oid once; progress and the store are keyed by oid
        if oid in seen:
            skipped.append((oid, "duplicate entry in batch"))
            continue
        seen.add(oid)
        objects.append(TransferObject.from_dict(entry))
    return objects, skipped


async def run_transfers(config: Config, registry: AdapterRegistry, adapter_name: str,
                        direction: Direction, objects: List[TransferObject],
                        concurrency: int) -> List[TransferResult]:
    """
    Push a list of objects through one custom adapter.

    Uploads are verified with the server; downloads are moved into the
    local object store after their hash is checked.

    Raises:
        ConfigurationError: the adapter is not configured for this direction
        WorkerStartError: no agent process could be started
    """
    store = LocalObjectStore(config.storage_dir)

    async with LfsApiClient(timeout=config.api_timeout) as api:
        adapter = registry.new_adapter(
            adapter_name, direction,
            object_path=store.object_path,
            verifier=api.verify_upload,
            read_timeout=config.read_timeout,
            shutdown_timeout=config.shutdown_timeout,
        )

        results: List[TransferResult] = []
        transfers = []
        for obj in objects:
            transfer = Transfer(name=obj.oid, object=obj)
            if direction is Direction.UPLOAD and not store.has_object(obj.oid):
                results.append(TransferResult(
                    transfer, error=TransferError(f"Object {obj.oid!r} is not in the local store")
                ))
                continue
            transfers.append(transfer)

        if not transfers:
            return results

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
        ) as progress:
            tasks = {
                t.name: progress.add_task(t.oid[:12], total=t.size or None)
                for t in transfers
            }

            def update_progress(name: str, total: int, so_far: int, since_last: int):
                progress.update(tasks[name], completed=so_far)

            def mark_done(result: TransferResult):
                if result.ok:
                    task = tasks[result.transfer.name]
                    progress.update(task, completed=result.transfer.size)

            await adapter.begin(concurrency, update_progress, mark_done)
            for transfer in transfers:
                adapter.add(transfer)
            results.extend(await adapter.end())

    if direction is Direction.DOWNLOAD:
        results = [await _store_download(store, r) for r in results]

    return results


async def _store_download(store: LocalObjectStore, result: TransferResult) -> TransferResult:
    if not result.ok:
        return result
    if result.path is None:
        return TransferResult(
            result.transfer,
            error=TransferError(f"Agent reported no path for {result.transfer.oid!r}"),
        )
    try:
        dest = await store.store_downloaded(result.transfer.oid, result.transfer.size, result.path)
    except ObjectStoreError as e:
        return TransferResult(result.transfer, error=e, path=result.path)
    return TransferResult(result.transfer, path=dest)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
