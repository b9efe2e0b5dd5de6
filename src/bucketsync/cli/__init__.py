"""Command-line interface for bucketsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- configure: Choose the object store and tune the engine
- upload / download: Start a resumable transfer
- list / status: Inspect transfers
- pause / resume / cancel / retry / remove / clear-finished: Control transfers
- ls / rm / mv / mkdir: Browse and manage remote objects
- check: Verify the connection to the object store
- folder: Manage backed up folders
- reconcile: Run one backup pass
- watch: Back up folders continuously
"""

from __future__ import annotations

import logging

import click

from bucketsync.cli.config import (
    get_config_dir,
    get_config_file,
    get_state_db,
    load_config,
    open_engine,
    save_config,
)
from bucketsync.cli.configure import configure
from bucketsync.cli.folders import folder, reconcile, watch
from bucketsync.cli.transfers import (
    cancel,
    check,
    clear_finished,
    download,
    list_cmd,
    ls,
    mkdir,
    mv,
    pause,
    remove,
    resume,
    retry,
    rm,
    status,
    upload,
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(package_name="bucketsync")
@click.option("--verbose", "-v", is_flag=True, help="Log debug messages.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Write logs to this file instead of stderr.",
)
def cli(verbose: bool, log_file: str | None) -> None:
    """bucketsync - Resumable large-file transfers to S3-compatible storage."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        filename=log_file,
        force=True,
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.INFO if verbose else logging.WARNING)


# Setup
cli.add_command(configure)
cli.add_command(check)

# Transfer commands
cli.add_command(upload)
cli.add_command(download)
cli.add_command(list_cmd)
cli.add_command(status)
cli.add_command(pause)
cli.add_command(resume)
cli.add_command(cancel)
cli.add_command(retry)
cli.add_command(remove)
cli.add_command(clear_finished)

# Remote objects
cli.add_command(ls)
cli.add_command(rm)
cli.add_command(mv)
cli.add_command(mkdir)

# Folder backup
cli.add_command(folder)
cli.add_command(reconcile)
cli.add_command(watch)


def main() -> None:
    """Console script entry point."""
    cli()


__all__ = [
    "cli",
    "get_config_dir",
    "get_config_file",
    "get_state_db",
    "load_config",
    "main",
    "open_engine",
    "save_config",
]
