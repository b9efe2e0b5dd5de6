"""Chunk planning for multipart transfers.

This module maps a file size and a configured part size to an ordered list
of byte ranges, applying the provider's part constraints:
- Part size is escalated when the part count would exceed the provider max
- Escalated sizes are rounded up to the provider granularity
- The plan is a pure function of its inputs, so a persisted
  (total_size, part_size) pair always re-derives the same parts
"""

from __future__ import annotations

from dataclasses import dataclass

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_PART_SIZE = 10 * MIB


class PlanningError(ValueError):
    """Raised when a transfer cannot be planned (empty file, bad part size)."""


@dataclass(frozen=True)
class PartLimits:
    """Provider constraints on multipart uploads.

    Attributes:
        min_part_size: Smallest allowed part (all but the last part).
        max_part_size: Largest allowed part.
        max_part_count: Maximum number of parts in one upload.
        granularity: Escalated part sizes are rounded up to a multiple of this.
    """

    min_part_size: int
    max_part_size: int
    max_part_count: int
    granularity: int = 1


# AWS S3 / Cloudflare R2 limits
S3_LIMITS = PartLimits(
    min_part_size=5 * MIB,
    max_part_size=5 * GIB,
    max_part_count=10_000,
    granularity=MIB,
)


@dataclass(frozen=True)
class PartSpec:
    """One planned byte range [offset, offset + length)."""

    part_number: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        """Exclusive end offset of the range."""
        return self.offset + self.length


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def effective_part_size(
    total_size: int,
    part_size: int = DEFAULT_PART_SIZE,
    limits: PartLimits = S3_LIMITS,
) -> int:
    """Return the part size a plan for this file will actually use.

    Args:
        total_size: File size in bytes.
        part_size: Configured part size in bytes.
        limits: Provider constraints.

    Returns:
        The configured size, or an escalated one if the configured size
        would need more than limits.max_part_count parts.

    Raises:
        PlanningError: On an empty file or a part size outside the limits.
    """
    if total_size <= 0:
        raise PlanningError(f"Cannot transfer an empty file (size={total_size})")
    if part_size <= 0:
        raise PlanningError(f"Part size must be positive (got {part_size})")
    if part_size < limits.min_part_size:
        raise PlanningError(
            f"Part size {part_size} is below the provider minimum of {limits.min_part_size}"
        )
    if part_size > limits.max_part_size:
        raise PlanningError(
            f"Part size {part_size} is above the provider maximum of {limits.max_part_size}"
        )

    if total_size <= part_size:
        return part_size

    if _ceil_div(total_size, part_size) <= limits.max_part_count:
        return part_size

    escalated = _ceil_div(total_size, limits.max_part_count)
    granularity = max(limits.granularity, 1)
    escalated = _ceil_div(escalated, granularity) * granularity
    if escalated > limits.max_part_size:
        raise PlanningError(
            f"File of {total_size} bytes needs parts of {escalated} bytes, "
            f"above the provider maximum of {limits.max_part_size}"
        )
    return escalated


def plan(
    total_size: int,
    part_size: int = DEFAULT_PART_SIZE,
    limits: PartLimits = S3_LIMITS,
) -> list[PartSpec]:
    """Split a file into contiguous, 1-based parts.

    A file no larger than part_size yields a single part covering it.
    The last part holds the remainder and is never empty.

    Args:
        total_size: File size in bytes.
        part_size: Configured part size in bytes.
        limits: Provider constraints.

    Returns:
        Parts ordered by part number, partitioning [0, total_size) exactly.

    Raises:
        PlanningError: If the file cannot be planned.
    """
    size = effective_part_size(total_size, part_size, limits)
    num_parts = _ceil_div(total_size, size)

    parts = []
    for index in range(num_parts):
        offset = index * size
        parts.append(
            PartSpec(
                part_number=index + 1,
                offset=offset,
                length=min(size, total_size - offset),
            )
        )
    return parts


def part_count(total_size: int, part_size: int) -> int:
    """Number of parts for an already effective part size."""
    return _ceil_div(total_size, part_size)
