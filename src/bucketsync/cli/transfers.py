"""Transfer commands for the bucketsync CLI.

Commands:
- upload / download: Start a transfer and follow it
- list / status: Inspect the transfer queue
- pause / resume / cancel / retry / remove / clear-finished: Control transfers
- ls / rm / mv / mkdir: Browse and manage remote objects
- check: Verify the connection to the object store
"""

from __future__ import annotations

import contextlib
import sys
import threading
from typing import TYPE_CHECKING

import click

from bucketsync.cli.config import open_engine
from bucketsync.core.config import ConfigError
from bucketsync.core.formatters import format_bytes, format_duration, format_speed
from bucketsync.core.types import Direction, TransferState

if TYPE_CHECKING:
    from bucketsync.sync.engine import TransferEngine
    from bucketsync.sync.types import ProgressSnapshot, Transfer

# Seconds between checks while following a transfer
FOLLOW_INTERVAL = 0.5

STATE_COLORS = {
    TransferState.COMPLETED: "green",
    TransferState.FAILED: "red",
    TransferState.PAUSED: "yellow",
    TransferState.CANCELLED: "bright_black",
}


def get_engine() -> TransferEngine:
    """Open the configured engine or exit with an error."""
    try:
        return open_engine()
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def styled_state(state: TransferState) -> str:
    """Render a state name with its color."""
    return click.style(state.value, fg=STATE_COLORS.get(state))


def follow(engine: TransferEngine, transfer_id: str, name: str) -> Transfer:
    """Show a live progress line until the transfer's runner stops.

    Ctrl+C pauses the transfer so it can be resumed later.
    """
    last_len = 0
    lock = threading.Lock()

    def show(snapshot: ProgressSnapshot) -> None:
        nonlocal last_len
        line = (
            f"\r  {name}: {snapshot.percent:5.1f}% "
            f"{format_bytes(snapshot.bytes_transferred)}/{format_bytes(snapshot.total)} "
            f"{format_speed(snapshot.speed)} ETA {format_duration(snapshot.eta)}"
        )
        with lock:
            padding = " " * max(0, last_len - len(line))
            click.echo(line + padding, nl=False)
            last_len = len(line)

    with engine.subscribe(transfer_id, show):
        try:
            while engine.has_runner(transfer_id):
                engine.wait(transfer_id, timeout=FOLLOW_INTERVAL)
        except KeyboardInterrupt:
            from bucketsync.sync.domain import InvalidTransitionError

            with contextlib.suppress(InvalidTransitionError):
                engine.pause(transfer_id)
            engine.shutdown(timeout=engine.config.part_timeout)
            click.echo("")
            click.echo(f"Interrupted. Resume with: bucketsync resume {transfer_id}")
            sys.exit(1)

    if last_len:
        click.echo("")
    return engine.get_transfer(transfer_id)


def report(transfer: Transfer) -> None:
    """Print the outcome of a followed transfer; exit 1 unless it completed."""
    if transfer.state == TransferState.COMPLETED:
        click.echo(f"Done: {transfer.file_name} ({format_bytes(transfer.total_size)})")
        return
    if transfer.state in (TransferState.PENDING, TransferState.ACTIVE):
        click.echo(f"Transfer {transfer.id} is running in another process", err=True)
        sys.exit(1)
    click.echo(f"Transfer {transfer.id} {transfer.state.value}", err=True)
    if transfer.error:
        click.echo(f"Error: {transfer.error}", err=True)
    sys.exit(1)


def run_in_foreground(engine: TransferEngine, transfer_id: str, wait: bool) -> None:
    """Follow a launched transfer, or stop here and leave it for later."""
    if not wait:
        engine.shutdown(timeout=engine.config.part_timeout)
        return
    transfer = follow(engine, transfer_id, engine.get_transfer(transfer_id).file_name)
    report(transfer)


@click.command()
@click.argument("local_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("remote_key")
@click.option("--part-size", type=click.IntRange(min=1), default=None, help="Part size in MiB.")
@click.option("--no-wait", is_flag=True, help="Queue the transfer and return at once.")
def upload(local_path: str, remote_key: str, part_size: int | None, no_wait: bool) -> None:
    """Upload LOCAL_PATH to REMOTE_KEY.

    The transfer survives crashes: run the same engine again (resume or
    watch) and it continues from its first unfinished part.
    """
    from bucketsync.core.chunking import MIB, PlanningError

    engine = get_engine()
    try:
        transfer_id = engine.start_upload(
            local_path,
            remote_key,
            part_size=part_size * MIB if part_size else None,
            launch=not no_wait,
        )
    except (PlanningError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Transfer {transfer_id}: {local_path} -> {remote_key}")
    run_in_foreground(engine, transfer_id, wait=not no_wait)


@click.command()
@click.argument("remote_key")
@click.argument("local_path", type=click.Path())
@click.option("--part-size", type=click.IntRange(min=1), default=None, help="Part size in MiB.")
@click.option("--no-wait", is_flag=True, help="Queue the transfer and return at once.")
@click.option(
    "--recursive", "-r", is_flag=True, help="Download every object under the REMOTE_KEY prefix."
)
def download(
    remote_key: str, local_path: str, part_size: int | None, no_wait: bool, recursive: bool
) -> None:
    """Download REMOTE_KEY to LOCAL_PATH (a file or an existing directory).

    With --recursive, REMOTE_KEY is a prefix and LOCAL_PATH the directory
    its objects are mirrored into, one transfer per object.
    """
    from bucketsync.core.chunking import MIB, PlanningError
    from bucketsync.storage import ObjectStoreError

    engine = get_engine()
    size = part_size * MIB if part_size else None
    try:
        if recursive:
            transfer_ids = engine.start_prefix_download(
                remote_key, local_path, part_size=size, launch=not no_wait
            )
        else:
            transfer_ids = [
                engine.start_download(remote_key, local_path, part_size=size, launch=not no_wait)
            ]
    except (PlanningError, ObjectStoreError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not recursive:
        click.echo(f"Transfer {transfer_ids[0]}: {remote_key} -> {local_path}")
        run_in_foreground(engine, transfer_ids[0], wait=not no_wait)
        return

    click.echo(f"Queued {len(transfer_ids)} downloads into {local_path}")
    if no_wait:
        engine.shutdown(timeout=engine.config.part_timeout)
        return
    failed = 0
    for transfer_id in transfer_ids:
        transfer = follow(engine, transfer_id, engine.get_transfer(transfer_id).file_name)
        if transfer.state != TransferState.COMPLETED:
            failed += 1
            click.echo(f"Transfer {transfer.id} {transfer.state.value}", err=True)
            if transfer.error:
                click.echo(f"Error: {transfer.error}", err=True)
    if failed:
        click.echo(f"{failed} of {len(transfer_ids)} downloads did not complete", err=True)
        sys.exit(1)
    click.echo(f"Done: {len(transfer_ids)} files")


@click.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed and cancelled transfers.")
def list_cmd(show_all: bool) -> None:
    """List transfers in the queue."""
    from bucketsync.sync.types import TransferSummary

    engine = get_engine()
    if show_all:
        summaries = [TransferSummary.build(t) for t in engine.list_transfers()]
    else:
        summaries = engine.list_active_transfers()

    if not summaries:
        click.echo("No transfers.")
        return

    for summary in summaries:
        arrow = "↑" if summary.direction == Direction.UPLOAD else "↓"
        click.echo(
            f"{summary.id[:8]}  {arrow} {styled_state(summary.state):<10} "
            f"{summary.percent:5.1f}%  {format_bytes(summary.total_size):>10}  "
            f"{summary.file_name}"
        )
        if summary.error:
            click.echo(f"          {summary.error}")


@click.command()
@click.argument("transfer_id")
def status(transfer_id: str) -> None:
    """Show the details of one transfer."""
    from bucketsync.core.types import PartState

    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    parts = engine.state_store.get_parts(transfer.id)
    done = sum(1 for p in parts if p.state == PartState.COMPLETED)

    click.echo(f"Transfer:  {transfer.id}")
    click.echo(f"Direction: {transfer.direction.value}")
    click.echo(f"Local:     {transfer.local_path}")
    click.echo(f"Remote:    {transfer.remote_key}")
    click.echo(f"State:     {styled_state(transfer.state)}")
    click.echo(
        f"Progress:  {format_bytes(transfer.bytes_transferred)} of "
        f"{format_bytes(transfer.total_size)} ({transfer.percent:.1f}%)"
    )
    if parts:
        click.echo(f"Parts:     {done}/{len(parts)} of {format_bytes(transfer.part_size)}")
    if transfer.error:
        click.echo(f"Error:     {transfer.error}")


def resolve_transfer(engine: TransferEngine, transfer_id: str) -> Transfer:
    """Find a transfer by id or unique id prefix, or exit with an error."""
    from bucketsync.sync.types import TransferNotFoundError

    try:
        return engine.get_transfer(transfer_id)
    except TransferNotFoundError:
        pass
    matches = [t for t in engine.list_transfers() if t.id.startswith(transfer_id)]
    if len(matches) == 1:
        return matches[0]
    if matches:
        click.echo(f"Error: Ambiguous transfer id: {transfer_id}", err=True)
    else:
        click.echo(f"Error: Transfer not found: {transfer_id}", err=True)
    sys.exit(1)


@click.command()
@click.argument("transfer_id")
def pause(transfer_id: str) -> None:
    """Pause a transfer (works on transfers run by another process)."""
    from bucketsync.sync.domain import InvalidTransitionError

    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    try:
        engine.pause(transfer.id)
    except InvalidTransitionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Paused {transfer.file_name}")


@click.command()
@click.argument("transfer_id")
@click.option("--no-wait", is_flag=True, help="Mark the transfer active and return at once.")
def resume(transfer_id: str, no_wait: bool) -> None:
    """Resume a paused transfer from its first unfinished part."""
    from bucketsync.sync.domain import InvalidTransitionError

    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    try:
        transfer = engine.resume(transfer.id)
    except InvalidTransitionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Resuming {transfer.file_name} at {transfer.percent:.1f}%")
    run_in_foreground(engine, transfer.id, wait=not no_wait)


@click.command()
@click.argument("transfer_id")
def cancel(transfer_id: str) -> None:
    """Cancel a transfer and release its multipart session."""
    from bucketsync.sync.domain import InvalidTransitionError

    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    try:
        engine.cancel(transfer.id)
    except InvalidTransitionError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Cancelled {transfer.file_name}")


@click.command()
@click.argument("transfer_id")
@click.option("--no-wait", is_flag=True, help="Requeue the transfer and return at once.")
def retry(transfer_id: str, no_wait: bool) -> None:
    """Retry a failed transfer, keeping its completed parts."""
    from bucketsync.core.chunking import PlanningError
    from bucketsync.sync.domain import InvalidTransitionError

    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    try:
        transfer = engine.retry(transfer.id)
    except (InvalidTransitionError, PlanningError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Retrying {transfer.file_name}")
    run_in_foreground(engine, transfer.id, wait=not no_wait)


@click.command()
@click.argument("transfer_id")
def remove(transfer_id: str) -> None:
    """Cancel a transfer if needed and delete its record."""
    engine = get_engine()
    transfer = resolve_transfer(engine, transfer_id)
    engine.remove(transfer.id)
    click.echo(f"Removed {transfer.file_name}")


@click.command("clear-finished")
def clear_finished() -> None:
    """Delete the records of completed and cancelled transfers."""
    engine = get_engine()
    count = engine.clear_finished()
    click.echo(f"Cleared {count} transfers.")


@click.command()
@click.argument("prefix", default="")
def ls(prefix: str) -> None:
    """List remote objects under PREFIX."""
    from datetime import datetime

    from bucketsync.storage import ObjectStoreError

    engine = get_engine()
    try:
        objects = engine.list_remote(prefix)
    except ObjectStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not objects:
        click.echo("No objects.")
        return
    for obj in objects:
        modified = datetime.fromtimestamp(obj.last_modified).strftime("%Y-%m-%d %H:%M")
        click.echo(f"{modified}  {format_bytes(obj.size):>10}  {obj.key}")


@click.command()
@click.argument("remote_key")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def rm(remote_key: str, yes: bool) -> None:
    """Delete the remote object REMOTE_KEY."""
    from bucketsync.storage import ObjectStoreError

    if not yes and not click.confirm(f"Delete {remote_key}?"):
        sys.exit(0)
    engine = get_engine()
    try:
        engine.delete_remote(remote_key)
    except ObjectStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {remote_key}")


@click.command()
@click.argument("source_key")
@click.argument("dest_key")
def mv(source_key: str, dest_key: str) -> None:
    """Rename the remote object SOURCE_KEY to DEST_KEY."""
    from bucketsync.storage import ObjectStoreError

    engine = get_engine()
    try:
        engine.move_remote(source_key, dest_key)
    except (ValueError, ObjectStoreError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Moved {source_key} -> {dest_key}")


@click.command()
@click.argument("prefix")
def mkdir(prefix: str) -> None:
    """Create an empty remote folder PREFIX."""
    from bucketsync.storage import ObjectStoreError

    engine = get_engine()
    try:
        key = engine.create_remote_folder(prefix)
    except (ValueError, ObjectStoreError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Created {key}")


@click.command()
def check() -> None:
    """Verify the configured bucket is reachable."""
    from bucketsync.storage import ObjectStoreError

    engine = get_engine()
    try:
        location = engine.check_connection()
    except ObjectStoreError as e:
        click.echo(f"Connection failed: {e}", err=True)
        sys.exit(1)
    click.echo(click.style(f"Connected to {location}", fg="green"))
