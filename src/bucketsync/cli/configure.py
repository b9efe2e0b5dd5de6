"""Configure command for the bucketsync CLI.

Commands:
- configure: Choose the object store and tune the engine
"""

from __future__ import annotations

import sys

import click

from bucketsync.cli.config import (
    ACCESS_KEY_ENV,
    SECRET_KEY_ENV,
    get_config_file,
    load_config,
    save_config,
)


@click.command()
@click.option(
    "--type",
    "store_type",
    type=click.Choice(["s3", "local"]),
    default="s3",
    show_default=True,
    help="Object store kind.",
)
@click.option("--bucket", default=None, help="Bucket name (s3).")
@click.option(
    "--endpoint-url",
    default=None,
    help="Custom S3-compatible endpoint (R2, MinIO...). Omit for AWS.",
)
@click.option("--region", default="us-east-1", show_default=True, help="Region name.")
@click.option(
    "--local-path",
    type=click.Path(file_okay=False),
    default=None,
    help="Root directory (local store).",
)
@click.option("--part-size", type=click.IntRange(min=1), default=None, help="Part size in MiB.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel parts per transfer.",
)
@click.option(
    "--max-operations",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel part operations across all transfers.",
)
def configure(
    store_type: str,
    bucket: str | None,
    endpoint_url: str | None,
    region: str,
    local_path: str | None,
    part_size: int | None,
    concurrency: int | None,
    max_operations: int | None,
) -> None:
    """Configure the object store and engine settings.

    Credentials are read from the BUCKETSYNC_ACCESS_KEY_ID and
    BUCKETSYNC_SECRET_ACCESS_KEY environment variables, or from boto3's
    usual sources, and are never saved.
    """
    from pathlib import Path

    from bucketsync.core.chunking import MIB
    from bucketsync.core.config import ConfigError, EngineConfig, StoreConfig

    if store_type == "s3" and not bucket:
        bucket = click.prompt("Bucket name")
    if store_type == "local" and not local_path:
        local_path = click.prompt("Store directory")

    config = load_config()
    engine_data = dict(config.get("engine", {}))
    if part_size is not None:
        engine_data["part_size"] = part_size * MIB
    if concurrency is not None:
        engine_data["per_transfer_concurrency"] = concurrency
    if max_operations is not None:
        engine_data["max_concurrent_operations"] = max_operations

    try:
        store = StoreConfig(
            type=store_type,
            bucket=bucket if store_type == "s3" else None,
            endpoint_url=endpoint_url if store_type == "s3" else None,
            region=region,
            local_path=str(Path(local_path).expanduser().resolve()) if local_path else None,
        )
        engine = EngineConfig.from_dict(engine_data)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    config["store"] = store.to_dict()
    config["engine"] = engine.to_dict()
    save_config(config)

    click.echo(f"Object store: {store.location}")
    click.echo(f"Configuration saved to {get_config_file()}")
    if store_type == "s3":
        click.echo(
            f"Credentials: set {ACCESS_KEY_ENV} and {SECRET_KEY_ENV}, "
            "or use the standard AWS credential sources."
        )
