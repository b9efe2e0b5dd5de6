"""Core module - Chunk planning, configuration, and shared enums."""

from bucketsync.core.chunking import (
    DEFAULT_PART_SIZE,
    S3_LIMITS,
    PartLimits,
    PartSpec,
    PlanningError,
    effective_part_size,
    plan,
)
from bucketsync.core.config import ConfigError, EngineConfig, StoreConfig
from bucketsync.core.types import ACTIVE_STATES, Direction, PartState, TransferState

__all__ = [
    # Chunking
    "DEFAULT_PART_SIZE",
    "PartLimits",
    "PartSpec",
    "PlanningError",
    "S3_LIMITS",
    "effective_part_size",
    "plan",
    # Config
    "ConfigError",
    "EngineConfig",
    "StoreConfig",
    # Types
    "ACTIVE_STATES",
    "Direction",
    "PartState",
    "TransferState",
]
