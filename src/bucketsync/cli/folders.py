"""Folder backup commands for the bucketsync CLI.

Commands:
- folder add / list / remove / enable / disable: Manage backed up folders
- reconcile: Run one backup pass for a folder
- watch: Back up every enabled folder continuously
"""

from __future__ import annotations

import sys
from datetime import datetime

import click

from bucketsync.cli.transfers import get_engine, styled_state

# Seconds between checks for transfers queued by other commands
PENDING_POLL_INTERVAL = 5.0


@click.group()
def folder() -> None:
    """Manage folders backed up to the object store.

    Backup is one-way: local files are uploaded, remote objects are never
    downloaded or deleted by a backup pass.
    """


@folder.command("add")
@click.argument("local_path", type=click.Path(exists=True, file_okay=False))
@click.argument("remote_prefix", default="")
def folder_add(local_path: str, remote_prefix: str) -> None:
    """Back up LOCAL_PATH under REMOTE_PREFIX."""
    engine = get_engine()
    try:
        added = engine.add_sync_folder(local_path, remote_prefix)
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Added folder {added.id}: {added.local_path} -> {added.remote_prefix or '/'}")


@folder.command("list")
def folder_list() -> None:
    """List backed up folders."""
    engine = get_engine()
    folders = engine.list_sync_folders()
    if not folders:
        click.echo("No folders.")
        return
    for item in folders:
        flag = "enabled" if item.enabled else click.style("disabled", fg="yellow")
        last = (
            datetime.fromtimestamp(item.last_sync).strftime("%Y-%m-%d %H:%M")
            if item.last_sync
            else "never"
        )
        click.echo(
            f"{item.id:>3}  {flag:<8}  {item.local_path} -> {item.remote_prefix or '/'}"
            f"  (last backup: {last})"
        )


def _set_enabled(folder_id: int, enabled: bool) -> None:
    from bucketsync.sync.types import SyncFolderNotFoundError

    engine = get_engine()
    try:
        engine.set_sync_folder_enabled(folder_id, enabled)
    except SyncFolderNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Folder {folder_id} {'enabled' if enabled else 'disabled'}")


@folder.command("enable")
@click.argument("folder_id", type=int)
def folder_enable(folder_id: int) -> None:
    """Enable backups of a folder."""
    _set_enabled(folder_id, True)


@folder.command("disable")
@click.argument("folder_id", type=int)
def folder_disable(folder_id: int) -> None:
    """Disable backups of a folder."""
    _set_enabled(folder_id, False)


@folder.command("remove")
@click.argument("folder_id", type=int)
def folder_remove(folder_id: int) -> None:
    """Stop backing up a folder. Remote objects are kept."""
    from bucketsync.sync.types import SyncFolderNotFoundError

    engine = get_engine()
    try:
        engine.remove_sync_folder(folder_id)
    except SyncFolderNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Removed folder {folder_id}")


@click.command()
@click.argument("folder_id", type=int)
@click.option("--refresh", is_flag=True, help="Re-list the remote prefix instead of the cache.")
@click.option("--no-wait", is_flag=True, help="Queue the uploads and return at once.")
def reconcile(folder_id: int, refresh: bool, no_wait: bool) -> None:
    """Run one backup pass for FOLDER_ID and upload what changed."""
    from bucketsync.core.types import TransferState
    from bucketsync.storage import ObjectStoreError
    from bucketsync.sync.types import TransferError

    engine = get_engine()
    try:
        result = engine.reconcile_now(folder_id, refresh=refresh)
    except (TransferError, ObjectStoreError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Scanned {result.scanned} files, {len(result.uploads)} to upload.")
    for action in result.conflicts:
        click.echo(click.style(f"  ! {action.remote_key}: {action.reason}", fg="yellow"))
    for error in result.errors:
        click.echo(click.style(f"  ✗ {error}", fg="red"), err=True)

    if no_wait or not result.transfer_ids:
        engine.shutdown(timeout=engine.config.part_timeout)
        return

    try:
        engine.wait_all()
    except KeyboardInterrupt:
        engine.shutdown(timeout=engine.config.part_timeout)
        click.echo("Interrupted. Unfinished uploads resume with 'bucketsync watch'.")
        sys.exit(1)

    failed = 0
    for transfer_id in result.transfer_ids:
        transfer = engine.get_transfer(transfer_id)
        if transfer.state != TransferState.COMPLETED:
            failed += 1
        click.echo(f"  {styled_state(transfer.state)}  {transfer.remote_key}")
    if failed:
        click.echo(f"{failed} uploads did not complete.", err=True)
        sys.exit(1)


@click.command()
@click.option(
    "--interval",
    type=click.IntRange(min=1),
    default=None,
    help="Also run a full pass every N seconds.",
)
@click.option(
    "--debounce",
    type=click.FloatRange(min=0),
    default=3.0,
    show_default=True,
    help="Seconds without changes before a pass starts.",
)
def watch(interval: int | None, debounce: float) -> None:
    """Back up every enabled folder continuously.

    Also resumes unfinished transfers, including the ones queued with
    --no-wait. Stop with Ctrl+C; interrupted transfers continue on the
    next run.
    """
    import threading

    from bucketsync.sync.watcher import FolderWatcher

    engine = get_engine()
    resumed = engine.start()
    if resumed:
        click.echo(f"Resumed {len(resumed)} unfinished transfers")

    watcher = FolderWatcher(engine, debounce=debounce, interval=interval)
    stop = threading.Event()
    click.echo("Watching for changes... (Ctrl+C to stop)")
    try:
        watcher.start()
        while not stop.wait(PENDING_POLL_INTERVAL):
            engine.launch_pending()
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        watcher.stop()
        engine.shutdown(timeout=engine.config.part_timeout)
