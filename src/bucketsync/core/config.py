"""Configuration classes for bucketsync.

This module defines the object store connection settings and the
engine tuning knobs. Both are plain dataclasses that validate themselves
and can be loaded from the JSON config file written by the CLI.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

from bucketsync.core.chunking import DEFAULT_PART_SIZE


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


@dataclass
class StoreConfig:
    """Connection settings for the object store.

    Attributes:
        type: "s3" for any S3-compatible endpoint, "local" for a directory.
        bucket: Bucket name (s3 only).
        endpoint_url: Custom endpoint (R2, MinIO, OVH...). None for AWS.
        region: Region name; "auto" is accepted by R2.
        access_key: Access key id. None defers to boto3's credential chain.
        secret_key: Secret access key.
        local_path: Root directory (local only).
    """

    type: str = "s3"
    bucket: str | None = None
    endpoint_url: str | None = None
    region: str = "us-east-1"
    access_key: str | None = None
    secret_key: str | None = None
    local_path: str | None = None

    def __post_init__(self) -> None:
        """Validate store type and required fields."""
        if self.type not in ("s3", "local"):
            raise ConfigError(f"Unknown store type: {self.type}")
        if self.endpoint_url:
            self.endpoint_url = self.endpoint_url.rstrip("/")

    @property
    def location(self) -> str:
        """Human-readable description of the store."""
        if self.type == "local":
            return f"local:{self.local_path}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}"
        return f"s3://{self.bucket}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Serialize, dropping credentials unless asked for."""
        data = asdict(self)
        if not include_secrets:
            data.pop("access_key")
            data.pop("secret_key")
        return data


@dataclass
class EngineConfig:
    """Tuning knobs for the transfer engine.

    Attributes:
        part_size: Bytes per part before provider escalation.
        per_transfer_concurrency: Part workers per transfer.
        max_concurrent_operations: Global cap on simultaneous part operations.
        max_part_attempts: Attempts per part before the transfer fails.
        initial_backoff: First retry delay in seconds.
        max_backoff: Upper bound on retry delay in seconds.
        backoff_multiplier: Delay growth factor between attempts.
        part_timeout: Read timeout for one part request, in seconds.
        connect_timeout: Connection timeout in seconds.
        progress_interval: Minimum seconds between progress emissions.
        speed_window: Sliding window for speed computation, in seconds.
        listing_ttl: Seconds a cached remote listing stays fresh.
        verify_integrity: Check etags/checksums after each transfer.
        resume_on_start: Relaunch pending/active transfers on engine start.
        lease_ttl: Seconds a runner lease stays valid without renewal.
    """

    part_size: int = DEFAULT_PART_SIZE
    per_transfer_concurrency: int = 6
    max_concurrent_operations: int = 12
    max_part_attempts: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0
    part_timeout: float = 120.0
    connect_timeout: float = 10.0
    progress_interval: float = 0.25
    speed_window: float = 5.0
    listing_ttl: float = 300.0
    verify_integrity: bool = True
    resume_on_start: bool = True
    lease_ttl: float = 30.0

    def __post_init__(self) -> None:
        """Validate numeric ranges."""
        if self.part_size <= 0:
            raise ConfigError(f"part_size must be positive (got {self.part_size})")
        if self.per_transfer_concurrency < 1:
            raise ConfigError("per_transfer_concurrency must be at least 1")
        if self.max_concurrent_operations < 1:
            raise ConfigError("max_concurrent_operations must be at least 1")
        if self.max_part_attempts < 1:
            raise ConfigError("max_part_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ConfigError("backoff delays cannot be negative")
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be >= 1")
        if self.part_timeout <= 0 or self.connect_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if self.speed_window <= 0:
            raise ConfigError("speed_window must be positive")
        if self.progress_interval < 0 or self.listing_ttl < 0:
            raise ConfigError("intervals cannot be negative")
        if self.lease_ttl <= 0:
            raise ConfigError(f"lease_ttl must be positive (got {self.lease_ttl})")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        return asdict(self)
