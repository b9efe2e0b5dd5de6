"""Persistent transfer state.

This module provides:
- TransferStateStore: SQLite-based record of every transfer, its parts,
  the configured sync folders and the cached remote listing

Architecture:
    The database is the single source of truth for resume. Every
    read-modify-write runs inside one BEGIN IMMEDIATE transaction, so a
    part completion and the transfer's bytes_transferred update are never
    visible separately, even to a second process (the CLI) sharing the file.

    bytes_transferred is always recomputed from completed part lengths,
    never incremented, so retries cannot double count.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from bucketsync.core.chunking import PartSpec
from bucketsync.core.types import Direction, PartState, TransferState
from bucketsync.storage import RemoteObject
from bucketsync.sync.domain import InvalidTransitionError, check_transition
from bucketsync.sync.types import (
    Part,
    SyncFolder,
    SyncFolderNotFoundError,
    Transfer,
    TransferError,
    TransferNotFoundError,
)

logger = logging.getLogger(__name__)


class TransferStateStore:
    """SQLite-based state shared by the engine, the reconciler and the CLI.

    Thread-safe: one connection guarded by an RLock. Safe across processes
    through SQLite locking (WAL journal, busy timeout).
    """

    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0) -> None:
        """Open (and create if needed) the state database.

        Args:
            db_path: Path to SQLite database file.
            busy_timeout: Seconds to wait for a lock held by another process.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit, transactions are explicit
            timeout=busy_timeout,
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        self._create_tables()

    @property
    def db_path(self) -> Path:
        """Location of the database file."""
        return self._db_path

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS transfers (
                id TEXT PRIMARY KEY,
                direction TEXT NOT NULL,
                local_path TEXT NOT NULL,
                remote_key TEXT NOT NULL,
                total_size INTEGER NOT NULL,
                part_size INTEGER NOT NULL,
                state TEXT NOT NULL,
                bytes_transferred INTEGER NOT NULL DEFAULT 0,
                session_token TEXT,
                remote_tag TEXT,
                source_mtime REAL,
                error TEXT,
                runner_id TEXT,
                lease_expires REAL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                completed_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_transfers_state ON transfers(state);

            CREATE TABLE IF NOT EXISTS parts (
                transfer_id TEXT NOT NULL REFERENCES transfers(id) ON DELETE CASCADE,
                part_number INTEGER NOT NULL,
                byte_offset INTEGER NOT NULL,
                length INTEGER NOT NULL,
                state TEXT NOT NULL,
                integrity_tag TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                completed_at REAL,
                PRIMARY KEY (transfer_id, part_number)
            );

            CREATE INDEX IF NOT EXISTS idx_parts_state ON parts(transfer_id, state);

            CREATE TABLE IF NOT EXISTS sync_folders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                local_path TEXT NOT NULL UNIQUE,
                remote_prefix TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                last_sync REAL,
                created_at REAL NOT NULL
            );

            -- Cached remote listing rows
            CREATE TABLE IF NOT EXISTS remote_objects (
                key TEXT PRIMARY KEY,
                size INTEGER NOT NULL,
                etag TEXT NOT NULL,
                last_modified REAL NOT NULL,
                cached_at REAL NOT NULL
            );

            -- When each prefix was last listed (TTL)
            CREATE TABLE IF NOT EXISTS remote_listings (
                prefix TEXT PRIMARY KEY,
                fetched_at REAL NOT NULL
            );
        """)
        self._migrate()

    def _migrate(self) -> None:
        """Add columns introduced after a database was created."""
        columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(transfers)")}
        for name, kind in (("runner_id", "TEXT"), ("lease_expires", "REAL")):
            if name not in columns:
                self._conn.execute(f"ALTER TABLE transfers ADD COLUMN {name} {kind}")
                logger.info(f"Added transfers.{name} column")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one write transaction."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def _fetch_transfer(self, conn: sqlite3.Connection, transfer_id: str) -> Transfer:
        row = conn.execute("SELECT * FROM transfers WHERE id = ?", (transfer_id,)).fetchone()
        if row is None:
            raise TransferNotFoundError(transfer_id)
        return Transfer.from_row(row)

    def _fetch_part(
        self, conn: sqlite3.Connection, transfer_id: str, part_number: int
    ) -> Part | None:
        row = conn.execute(
            "SELECT * FROM parts WHERE transfer_id = ? AND part_number = ?",
            (transfer_id, part_number),
        ).fetchone()
        return Part.from_row(row) if row is not None else None

    def _recompute_bytes(self, conn: sqlite3.Connection, transfer_id: str) -> int:
        """Set bytes_transferred to the sum of completed part lengths."""
        total = conn.execute(
            "SELECT COALESCE(SUM(length), 0) FROM parts WHERE transfer_id = ? AND state = ?",
            (transfer_id, PartState.COMPLETED.value),
        ).fetchone()[0]
        conn.execute(
            "UPDATE transfers SET bytes_transferred = ? WHERE id = ?",
            (total, transfer_id),
        )
        return int(total)

    # === Transfer operations ===

    def create_transfer(
        self,
        direction: Direction,
        local_path: str,
        remote_key: str,
        total_size: int,
        part_size: int,
        parts: list[PartSpec],
        *,
        remote_tag: str | None = None,
        source_mtime: float | None = None,
        transfer_id: str | None = None,
    ) -> Transfer:
        """Persist a new pending transfer and all of its parts.

        Args:
            direction: Upload or download.
            local_path: Absolute local path.
            remote_key: Object key.
            total_size: File size in bytes.
            part_size: Effective part size used to build parts.
            parts: Chunk plan, must partition [0, total_size).
            remote_tag: Object etag (downloads).
            source_mtime: Source file mtime (uploads).
            transfer_id: Explicit id, generated when omitted.

        Returns:
            The created Transfer.
        """
        expected = 0
        for number, spec in enumerate(parts, start=1):
            if spec.part_number != number or spec.offset != expected or spec.length <= 0:
                raise ValueError(f"Parts do not partition the file at part {number}")
            expected = spec.end
        if expected != total_size:
            raise ValueError(f"Parts cover {expected} bytes, expected {total_size}")

        transfer_id = transfer_id or uuid.uuid4().hex
        now = time.time()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO transfers (
                    id, direction, local_path, remote_key, total_size, part_size,
                    state, bytes_transferred, remote_tag, source_mtime,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    transfer_id,
                    direction.value,
                    local_path,
                    remote_key,
                    total_size,
                    part_size,
                    TransferState.PENDING.value,
                    remote_tag,
                    source_mtime,
                    now,
                    now,
                ),
            )
            conn.executemany(
                """
                INSERT INTO parts (transfer_id, part_number, byte_offset, length, state)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (transfer_id, p.part_number, p.offset, p.length, PartState.PENDING.value)
                    for p in parts
                ],
            )
            transfer = self._fetch_transfer(conn, transfer_id)
        logger.debug(f"Created transfer {transfer_id} with {len(parts)} parts")
        return transfer

    def get_transfer(self, transfer_id: str) -> Transfer:
        """Get a transfer by id.

        Raises:
            TransferNotFoundError: If no such transfer exists.
        """
        with self._lock:
            return self._fetch_transfer(self._conn, transfer_id)

    def list_transfers(self, states: Iterable[TransferState] | None = None) -> list[Transfer]:
        """List transfers, oldest first, optionally filtered by state."""
        query = "SELECT * FROM transfers"
        params: list[str] = []
        if states is not None:
            params = [s.value for s in states]
            if not params:
                return []
            query += f" WHERE state IN ({', '.join('?' * len(params))})"
        query += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [Transfer.from_row(row) for row in rows]

    def get_parts(
        self, transfer_id: str, states: Iterable[PartState] | None = None
    ) -> list[Part]:
        """List parts of a transfer in part-number order."""
        query = "SELECT * FROM parts WHERE transfer_id = ?"
        params: list[str] = [transfer_id]
        if states is not None:
            values = [s.value for s in states]
            if not values:
                return []
            query += f" AND state IN ({', '.join('?' * len(values))})"
            params.extend(values)
        query += " ORDER BY part_number"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [Part.from_row(row) for row in rows]

    def set_session_token(self, transfer_id: str, session_token: str | None) -> None:
        """Persist (or clear) the multipart session token."""
        with self._transaction() as conn:
            self._fetch_transfer(conn, transfer_id)
            conn.execute(
                "UPDATE transfers SET session_token = ?, updated_at = ? WHERE id = ?",
                (session_token, time.time(), transfer_id),
            )

    def transition(
        self,
        transfer_id: str,
        target: TransferState,
        error: str | None = None,
        expected: TransferState | None = None,
    ) -> Transfer:
        """Move a transfer to a new state.

        The error field is only kept in FAILED; any other target clears it.
        With expected set, the move only happens from that exact state.

        Raises:
            TransferNotFoundError: If no such transfer exists.
            InvalidTransitionError: If the state machine forbids the move.
        """
        now = time.time()
        with self._transaction() as conn:
            current = self._fetch_transfer(conn, transfer_id)
            if expected is not None and current.state != expected:
                raise InvalidTransitionError(current.state, target)
            check_transition(current.state, target)
            conn.execute(
                """
                UPDATE transfers
                SET state = ?, error = ?, updated_at = ?,
                    completed_at = CASE WHEN ? THEN ? ELSE completed_at END
                WHERE id = ?
                """,
                (
                    target.value,
                    error if target == TransferState.FAILED else None,
                    now,
                    target == TransferState.COMPLETED,
                    now,
                    transfer_id,
                ),
            )
            transfer = self._fetch_transfer(conn, transfer_id)
        logger.debug(f"Transfer {transfer_id}: {current.state.value} -> {target.value}")
        return transfer

    # === Part operations ===

    def claim_next_part(self, transfer_id: str, owner: str | None = None) -> Part | None:
        """Claim the lowest-numbered pending part of an active transfer.

        Args:
            transfer_id: Transfer to claim from.
            owner: Only claim while this runner holds the transfer's lease.

        Returns:
            The claimed part (now UPLOADING), or None if the transfer is not
            active, is leased to another runner, or has no pending part left.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT state, runner_id FROM transfers WHERE id = ?", (transfer_id,)
            ).fetchone()
            if row is None or row["state"] != TransferState.ACTIVE.value:
                return None
            if owner is not None and row["runner_id"] != owner:
                return None
            row = conn.execute(
                """
                SELECT part_number FROM parts
                WHERE transfer_id = ? AND state = ?
                ORDER BY part_number LIMIT 1
                """,
                (transfer_id, PartState.PENDING.value),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE parts SET state = ? WHERE transfer_id = ? AND part_number = ?",
                (PartState.UPLOADING.value, transfer_id, row["part_number"]),
            )
            return self._fetch_part(conn, transfer_id, row["part_number"])

    def complete_part(
        self,
        transfer_id: str,
        part_number: int,
        integrity_tag: str,
        owner: str | None = None,
    ) -> int | None:
        """Record a finished part and recompute bytes_transferred atomically.

        Returns:
            The new bytes_transferred, or None when the completion was
            discarded (transfer cancelled or removed, lease taken over by
            another runner than owner, or the part was reset while in flight).
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT state, runner_id FROM transfers WHERE id = ?", (transfer_id,)
            ).fetchone()
            if row is None or row["state"] == TransferState.CANCELLED.value:
                return None
            if owner is not None and row["runner_id"] != owner:
                return None
            cursor = conn.execute(
                """
                UPDATE parts SET state = ?, integrity_tag = ?, completed_at = ?, last_error = NULL
                WHERE transfer_id = ? AND part_number = ? AND state = ?
                """,
                (
                    PartState.COMPLETED.value,
                    integrity_tag,
                    time.time(),
                    transfer_id,
                    part_number,
                    PartState.UPLOADING.value,
                ),
            )
            if cursor.rowcount == 0:
                return None
            return self._recompute_bytes(conn, transfer_id)

    def release_part(
        self,
        transfer_id: str,
        part_number: int,
        error: str | None = None,
        max_attempts: int | None = None,
        count_attempt: bool = True,
    ) -> Part | None:
        """Return a claimed part after a failed or abandoned attempt.

        Args:
            transfer_id: Owning transfer.
            part_number: Part to release.
            error: Failure description stored on the part.
            max_attempts: Mark the part FAILED once attempts reach this.
            count_attempt: False when the part was abandoned without a
                request being made (pause, shutdown).

        Returns:
            The updated part, or None if it is no longer claimed.
        """
        with self._transaction() as conn:
            part = self._fetch_part(conn, transfer_id, part_number)
            if part is None or part.state != PartState.UPLOADING:
                return None
            attempts = part.attempts + 1 if count_attempt else part.attempts
            exhausted = max_attempts is not None and attempts >= max_attempts
            state = PartState.FAILED if exhausted else PartState.PENDING
            conn.execute(
                """
                UPDATE parts SET state = ?, attempts = ?, last_error = COALESCE(?, last_error)
                WHERE transfer_id = ? AND part_number = ?
                """,
                (state.value, attempts, error, transfer_id, part_number),
            )
            return self._fetch_part(conn, transfer_id, part_number)

    def record_failure(
        self, transfer_id: str, part_number: int, error: str, max_attempts: int
    ) -> Part | None:
        """Count a failed attempt on a claimed part.

        The part stays claimed (UPLOADING) so the worker can retry it after
        its backoff, unless the attempt budget is spent, in which case it
        becomes FAILED.

        Returns:
            The updated part, or None if it is no longer claimed.
        """
        with self._transaction() as conn:
            part = self._fetch_part(conn, transfer_id, part_number)
            if part is None or part.state != PartState.UPLOADING:
                return None
            attempts = part.attempts + 1
            state = PartState.FAILED if attempts >= max_attempts else PartState.UPLOADING
            conn.execute(
                """
                UPDATE parts SET state = ?, attempts = ?, last_error = ?
                WHERE transfer_id = ? AND part_number = ?
                """,
                (state.value, attempts, error, transfer_id, part_number),
            )
            return self._fetch_part(conn, transfer_id, part_number)

    def reset_parts(
        self, transfer_id: str, states: Iterable[PartState] | None = None
    ) -> int:
        """Put parts back to PENDING with a fresh attempt budget.

        Args:
            transfer_id: Owning transfer.
            states: Only reset parts in these states. None resets every
                part, discarding completed ones too.

        Returns:
            Number of parts reset.
        """
        query = """
            UPDATE parts
            SET state = ?, attempts = 0, last_error = NULL,
                integrity_tag = NULL, completed_at = NULL
            WHERE transfer_id = ?
        """
        params: list[str] = [PartState.PENDING.value, transfer_id]
        if states is not None:
            values = [s.value for s in states]
            if not values:
                return 0
            query += f" AND state IN ({', '.join('?' * len(values))})"
            params.extend(values)
        with self._transaction() as conn:
            self._fetch_transfer(conn, transfer_id)
            count = conn.execute(query, params).rowcount
            self._recompute_bytes(conn, transfer_id)
        return count

    def completion_manifest(self, transfer_id: str) -> list[tuple[int, str]]:
        """Build the ordered (part_number, integrity_tag) list.

        Raises:
            TransferError: If any part is not completed with a tag.
        """
        parts = self.get_parts(transfer_id)
        missing = [
            p.part_number
            for p in parts
            if p.state != PartState.COMPLETED or not p.integrity_tag
        ]
        if not parts or missing:
            raise TransferError(
                f"Transfer {transfer_id} has incomplete parts: {missing or 'none planned'}"
            )
        return [(p.part_number, p.integrity_tag or "") for p in parts]

    def delete_parts(self, transfer_id: str) -> int:
        """Delete every part of a transfer. Returns the number deleted."""
        with self._transaction() as conn:
            count = conn.execute(
                "DELETE FROM parts WHERE transfer_id = ?", (transfer_id,)
            ).rowcount
            conn.execute(
                "UPDATE transfers SET bytes_transferred = 0 WHERE id = ?", (transfer_id,)
            )
        return count

    def delete_transfer(self, transfer_id: str) -> bool:
        """Delete a transfer and (by cascade) its parts."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM transfers WHERE id = ?", (transfer_id,))
        return cursor.rowcount > 0

    def recover_interrupted(self, transfer_id: str | None = None) -> int:
        """Return parts left UPLOADING by a dead process to PENDING.

        Transfers whose lease is still live belong to a running engine and
        are skipped. Attempt counters are untouched.

        Returns:
            The number of parts recovered.
        """
        query = """
            UPDATE parts SET state = ?
            WHERE state = ? AND transfer_id IN (
                SELECT id FROM transfers
                WHERE runner_id IS NULL OR lease_expires IS NULL OR lease_expires <= ?
            )
        """
        params: list[object] = [PartState.PENDING.value, PartState.UPLOADING.value, time.time()]
        if transfer_id is not None:
            query += " AND transfer_id = ?"
            params.append(transfer_id)
        with self._transaction() as conn:
            count = conn.execute(query, params).rowcount
        if count:
            logger.info(f"Recovered {count} interrupted parts")
        return count

    def replan_transfer(
        self,
        transfer_id: str,
        total_size: int,
        part_size: int,
        parts: list[PartSpec],
        source_mtime: float | None = None,
    ) -> Transfer:
        """Replace the part plan of a transfer that has not completed.

        Every part is discarded, along with the session token; the transfer
        starts over with the new size and plan.
        """
        now = time.time()
        with self._transaction() as conn:
            self._fetch_transfer(conn, transfer_id)
            conn.execute("DELETE FROM parts WHERE transfer_id = ?", (transfer_id,))
            conn.executemany(
                """
                INSERT INTO parts (transfer_id, part_number, byte_offset, length, state)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (transfer_id, p.part_number, p.offset, p.length, PartState.PENDING.value)
                    for p in parts
                ],
            )
            conn.execute(
                """
                UPDATE transfers
                SET total_size = ?, part_size = ?, source_mtime = ?, session_token = NULL,
                    bytes_transferred = 0, updated_at = ?
                WHERE id = ?
                """,
                (total_size, part_size, source_mtime, now, transfer_id),
            )
            transfer = self._fetch_transfer(conn, transfer_id)
        logger.debug(f"Replanned transfer {transfer_id} with {len(parts)} parts")
        return transfer

    # === Runner leases ===

    def activate(self, transfer_id: str, owner: str, ttl: float) -> Transfer | None:
        """Take the runner lease of a pending or active transfer.

        In one transaction: refuse if another owner holds a live lease, move
        PENDING to ACTIVE, return parts left UPLOADING by a previous runner
        to PENDING and record owner with a lease of ttl seconds.

        Returns:
            The active transfer, or None if it is not runnable or is
            leased to another owner.
        """
        now = time.time()
        with self._transaction() as conn:
            current = self._fetch_transfer(conn, transfer_id)
            if current.state not in (TransferState.PENDING, TransferState.ACTIVE):
                return None
            if current.held_by_other(owner, now):
                return None
            if current.state == TransferState.PENDING:
                check_transition(current.state, TransferState.ACTIVE)
            recovered = conn.execute(
                "UPDATE parts SET state = ? WHERE transfer_id = ? AND state = ?",
                (PartState.PENDING.value, transfer_id, PartState.UPLOADING.value),
            ).rowcount
            conn.execute(
                """
                UPDATE transfers
                SET state = ?, error = NULL, runner_id = ?, lease_expires = ?, updated_at = ?
                WHERE id = ?
                """,
                (TransferState.ACTIVE.value, owner, now + ttl, now, transfer_id),
            )
            transfer = self._fetch_transfer(conn, transfer_id)
        if recovered:
            logger.info(f"Transfer {transfer_id}: recovered {recovered} interrupted parts")
        return transfer

    def renew_lease(self, transfer_id: str, owner: str, ttl: float) -> bool:
        """Extend owner's lease. False if owner no longer holds it."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE transfers SET lease_expires = ? WHERE id = ? AND runner_id = ?",
                (time.time() + ttl, transfer_id, owner),
            )
        return cursor.rowcount > 0

    def release_lease(self, transfer_id: str, owner: str) -> None:
        """Drop owner's lease, if it still holds it."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE transfers SET runner_id = NULL, lease_expires = NULL
                WHERE id = ? AND runner_id = ?
                """,
                (transfer_id, owner),
            )

    # === Sync folder operations ===

    def add_sync_folder(
        self, local_path: str, remote_prefix: str, enabled: bool = True
    ) -> SyncFolder:
        """Register a folder for one-way backup.

        Raises:
            ValueError: If the folder is already registered.
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_folders (local_path, remote_prefix, enabled, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (local_path, remote_prefix, int(enabled), time.time()),
                )
                folder_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Sync folder already registered: {local_path}") from e
        logger.info(f"Added sync folder {folder_id}: {local_path} -> {remote_prefix}")
        return self.get_sync_folder(int(folder_id or 0))

    def get_sync_folder(self, folder_id: int) -> SyncFolder:
        """Get a sync folder.

        Raises:
            SyncFolderNotFoundError: If no such folder exists.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_folders WHERE id = ?", (folder_id,)
            ).fetchone()
        if row is None:
            raise SyncFolderNotFoundError(f"Sync folder not found: {folder_id}")
        return SyncFolder.from_row(row)

    def list_sync_folders(self, enabled_only: bool = False) -> list[SyncFolder]:
        """List sync folders by id."""
        query = "SELECT * FROM sync_folders"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY id").fetchall()
        return [SyncFolder.from_row(row) for row in rows]

    def set_sync_folder_enabled(self, folder_id: int, enabled: bool) -> SyncFolder:
        """Enable or disable a sync folder."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sync_folders SET enabled = ? WHERE id = ?", (int(enabled), folder_id)
            )
        if cursor.rowcount == 0:
            raise SyncFolderNotFoundError(f"Sync folder not found: {folder_id}")
        return self.get_sync_folder(folder_id)

    def remove_sync_folder(self, folder_id: int) -> None:
        """Forget a sync folder. Files already uploaded are not touched."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_folders WHERE id = ?", (folder_id,))
        if cursor.rowcount == 0:
            raise SyncFolderNotFoundError(f"Sync folder not found: {folder_id}")

    def mark_folder_synced(self, folder_id: int, when: float | None = None) -> None:
        """Record the time of the last reconciliation pass."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sync_folders SET last_sync = ? WHERE id = ?",
                (when if when is not None else time.time(), folder_id),
            )

    # === Remote listing cache ===

    def cache_remote_listing(self, prefix: str, objects: list[RemoteObject]) -> None:
        """Replace the cached rows under prefix with a fresh listing."""
        now = time.time()
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM remote_objects WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO remote_objects (key, size, etag, last_modified, cached_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(o.key, o.size, o.etag, o.last_modified, now) for o in objects],
            )
            conn.execute(
                "INSERT OR REPLACE INTO remote_listings (prefix, fetched_at) VALUES (?, ?)",
                (prefix, now),
            )

    def get_cached_listing(
        self, prefix: str, max_age: float | None = None
    ) -> list[RemoteObject] | None:
        """Get the cached listing of prefix.

        Args:
            prefix: Listing prefix, matched exactly against cached listings.
            max_age: Seconds after which the listing is stale.

        Returns:
            Cached objects sorted by key, or None if never listed or stale.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT fetched_at FROM remote_listings WHERE prefix = ?", (prefix,)
            ).fetchone()
            if row is None:
                return None
            if max_age is not None and time.time() - row["fetched_at"] > max_age:
                return None
            rows = self._conn.execute(
                "SELECT * FROM remote_objects WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [
            RemoteObject(
                key=r["key"],
                size=r["size"],
                etag=r["etag"],
                last_modified=r["last_modified"],
            )
            for r in rows
        ]

    def put_cached_object(self, obj: RemoteObject) -> None:
        """Insert or update one cached listing row (after an upload)."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO remote_objects (key, size, etag, last_modified, cached_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (obj.key, obj.size, obj.etag, obj.last_modified, time.time()),
            )

    def invalidate_listing(self, prefix: str | None = None) -> None:
        """Drop cached listings for prefix, or all of them."""
        with self._transaction() as conn:
            if prefix is None:
                conn.execute("DELETE FROM remote_listings")
                conn.execute("DELETE FROM remote_objects")
            else:
                conn.execute("DELETE FROM remote_listings WHERE prefix = ?", (prefix,))
                conn.execute(
                    "DELETE FROM remote_objects WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )
