"""Ignore patterns for folder backup.

This module provides:
- IgnorePatterns: Handles gitignore-style pattern matching
- DEFAULT_IGNORE_PATTERNS: Common patterns to ignore
- IGNORE_FILE_NAME: Per-folder pattern file
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

IGNORE_FILE_NAME = ".bucketsyncignore"

# Default ignore patterns (similar to common .gitignore entries)
DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.tmp",
    "*.temp",
    "~*",
    "*.swp",
    "*.swo",
    "*.bsdownload",
    IGNORE_FILE_NAME,
]


class IgnorePatterns:
    """Handles ignore pattern matching for file paths."""

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Start from the defaults plus any extra gitignore-style patterns."""
        self._patterns = [*DEFAULT_IGNORE_PATTERNS, *(patterns or ())]

    @property
    def patterns(self) -> list[str]:
        """Active patterns, defaults first."""
        return list(self._patterns)

    @classmethod
    def for_folder(cls, folder: Path, patterns: list[str] | None = None) -> IgnorePatterns:
        """Build patterns for a folder, including its .bucketsyncignore."""
        ignore = cls(patterns)
        ignore.load_from_file(folder / IGNORE_FILE_NAME)
        return ignore

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        self._patterns.append(pattern)

    def load_from_file(self, path: Path) -> None:
        """Append the patterns listed in an ignore file, if it exists.

        Blank lines and lines starting with '#' are skipped.
        """
        if not path.is_file():
            return
        for raw in path.read_text(encoding="utf-8").splitlines():
            entry = raw.strip()
            if entry and not entry.startswith("#"):
                self._patterns.append(entry)

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if a path should be ignored.

        Args:
            path: Absolute path to check.
            base_path: Root of the sync folder.

        Returns:
            True if the path should be ignored.
        """
        if path.is_symlink():
            return True

        try:
            rel_str = path.relative_to(base_path).as_posix()
        except ValueError:
            return False

        segments = rel_str.split("/")
        for pattern in self._patterns:
            if pattern.endswith("/"):
                # Directory pattern: matches the directory and everything below it
                name = pattern.rstrip("/")
                dirs = segments if path.is_dir() else segments[:-1]
                if any(fnmatch.fnmatch(d, name) for d in dirs):
                    return True
                if "/" in name and fnmatch.fnmatch(rel_str, name + "*"):
                    return True
            elif "/" in pattern:
                if fnmatch.fnmatch(rel_str, pattern.lstrip("/")):
                    return True
            elif fnmatch.fnmatch(path.name, pattern):
                return True

        return False
