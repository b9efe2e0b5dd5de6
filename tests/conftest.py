"""Shared fixtures for bucketsync tests."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from bucketsync.state import TransferStateStore
from bucketsync.storage import LocalFSObjectStore


@pytest.fixture
def state(tmp_path: Path) -> Iterator[TransferStateStore]:
    """Create a state store in a temp directory."""
    s = TransferStateStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def local_store(tmp_path: Path) -> LocalFSObjectStore:
    """Create a directory-backed object store."""
    return LocalFSObjectStore(tmp_path / "bucket")
