"""Append-only change log backed by SQLite.

Entries are never updated or deleted once written. Each append is stamped
with a server-side recency marker (``recorded_at``) drawn from the log's own
hybrid logical clock, which is what pull queries filter and order on.
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..errors import InvalidInput
from ..hlc import HybridLogicalClock, normalize_timestamp
from .changes import ChangeEntry

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000

CHANGE_LOG_SCHEMA = """
-- Change log: one row per column-level change, append-only
CREATE TABLE IF NOT EXISTS changes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    fingerprint TEXT NOT NULL UNIQUE,
    tbl TEXT NOT NULL,
    row_id TEXT NOT NULL,
    col TEXT NOT NULL,
    value TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    user_id TEXT NOT NULL DEFAULT '',
    recorded_at TEXT NOT NULL,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_changes_user ON changes(user_id, recorded_at);
CREATE INDEX IF NOT EXISTS idx_changes_recorded ON changes(recorded_at);
CREATE INDEX IF NOT EXISTS idx_changes_row ON changes(tbl, row_id);
CREATE INDEX IF NOT EXISTS idx_changes_synced ON changes(synced_at);

-- Client-side sync bookkeeping (pull cursor)
CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_COLUMNS = "seq, id, tbl, row_id, col, value, timestamp, user_id, recorded_at"


def _row_to_entry(row: sqlite3.Row) -> ChangeEntry:
    return ChangeEntry(
        table=row["tbl"],
        row_id=row["row_id"],
        column=row["col"],
        value=json.loads(row["value"]),
        timestamp=row["timestamp"],
        user_id=row["user_id"],
        id=row["id"],
        recorded_at=row["recorded_at"],
    )


class ChangeLog:
    """Durable, append-only store of change entries.

    All access to the underlying connection is serialized, so one instance
    can be shared by concurrent request handlers.
    """

    def __init__(
        self,
        db_path: str | Path,
        node_id: str,
        clock: HybridLogicalClock | None = None,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        """Initialize the change log.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            node_id: Identifier of the node owning this log.
            clock: Clock issuing recency markers. Created if not given.
            max_page_size: Upper bound on query page size.
        """
        self.db_path = Path(db_path).expanduser()
        self.node_id = node_id
        self.clock = clock or HybridLogicalClock(node_id)
        self.max_page_size = max_page_size
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        with self._lock:
            if self._conn is not None:
                return
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(CHANGE_LOG_SCHEMA)
            self._conn.commit()

            # Keep recency markers monotonic across restarts
            row = self._conn.execute("SELECT MAX(recorded_at) FROM changes").fetchone()
            if row[0] is not None:
                self.clock.observe(row[0])

        logger.info(f"ChangeLog connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _insert(
        self,
        conn: sqlite3.Connection,
        entry: ChangeEntry,
        synced_at: str | None,
    ) -> tuple[ChangeEntry, bool]:
        """Insert one entry unless its content is already logged.

        Returns:
            Tuple of (stored entry, whether it was newly inserted).
        """
        fingerprint = entry.fingerprint()
        existing = conn.execute(
            f"SELECT {_COLUMNS} FROM changes WHERE fingerprint = ?",
            (fingerprint,),
        ).fetchone()
        if existing:
            return _row_to_entry(existing), False

        stored = ChangeEntry(
            table=entry.table,
            row_id=entry.row_id,
            column=entry.column,
            value=entry.value,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            id=str(uuid.uuid4()),
            recorded_at=self.clock.now(),
        )
        conn.execute(
            """
            INSERT INTO changes (
                id, fingerprint, tbl, row_id, col, value, timestamp,
                user_id, recorded_at, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stored.id,
                fingerprint,
                stored.table,
                stored.row_id,
                stored.column,
                json.dumps(stored.value),
                stored.timestamp,
                stored.user_id,
                stored.recorded_at,
                synced_at,
            ),
        )
        return stored, True

    def append(self, entry: ChangeEntry) -> ChangeEntry:
        """Append an entry to the log.

        Appending content that is already logged is a no-op.

        Args:
            entry: Change to persist.

        Returns:
            The stored entry, carrying its id and recorded_at.
        """
        with self._lock:
            conn = self._ensure_connected()
            stored, _ = self._insert(conn, entry, None)
            conn.commit()

        logger.debug(
            f"Appended {stored.table}/{stored.row_id}.{stored.column} "
            f"at {stored.recorded_at}"
        )
        return stored

    def append_many(self, entries: Iterable[ChangeEntry]) -> list[ChangeEntry]:
        """Append several entries in a single transaction."""
        with self._lock:
            conn = self._ensure_connected()
            try:
                stored = [self._insert(conn, entry, None)[0] for entry in entries]
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return stored

    def query(
        self,
        user_id: str,
        since: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 0,
    ) -> list[ChangeEntry]:
        """Get entries visible to a user, most recent first.

        Entries with an empty user_id are shared and visible to everyone.

        Args:
            user_id: Requesting user.
            since: Only entries recorded at or after this timestamp.
            limit: Page size, 1..max_page_size.
            page: Zero-based page number.

        Returns:
            List of ChangeEntry objects.

        Raises:
            InvalidInput: If limit or page is out of range, or since is
                not a valid timestamp.
        """
        if limit < 1 or limit > self.max_page_size:
            raise InvalidInput(f"limit must be between 1 and {self.max_page_size}")
        if page < 0:
            raise InvalidInput("page must not be negative")

        sql = f"SELECT {_COLUMNS} FROM changes WHERE (user_id = ? OR user_id = '')"
        params: list[Any] = [user_id]
        if since:
            sql += " AND recorded_at >= ?"
            params.append(normalize_timestamp(since))
        sql += " ORDER BY recorded_at DESC, seq DESC LIMIT ? OFFSET ?"
        params.extend([limit, page * limit])

        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(sql, params).fetchall()

        return [_row_to_entry(row) for row in rows]

    def entries_for_row(self, table: str, row_id: str) -> list[ChangeEntry]:
        """Get the full history of one row in insertion order."""
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM changes
                WHERE tbl = ? AND row_id = ?
                ORDER BY seq ASC
                """,
                (table, row_id),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_unsynced(self, limit: int = 1000) -> list[ChangeEntry]:
        """Get locally produced entries that haven't been pushed yet.

        Args:
            limit: Maximum entries to return.

        Returns:
            List of unsynced entries, oldest first.
        """
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM changes
                WHERE synced_at IS NULL
                ORDER BY seq ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def mark_synced(self, entry_ids: list[str]) -> int:
        """Mark entries as synced.

        Args:
            entry_ids: List of entry IDs to mark.

        Returns:
            Number of entries updated.
        """
        if not entry_ids:
            return 0

        now = datetime.now().isoformat()
        placeholders = ",".join("?" * len(entry_ids))

        with self._lock:
            conn = self._ensure_connected()
            cursor = conn.execute(
                f"""
                UPDATE changes
                SET synced_at = ?
                WHERE id IN ({placeholders}) AND synced_at IS NULL
                """,
                (now, *entry_ids),
            )
            conn.commit()

        count = cursor.rowcount
        logger.debug(f"Marked {count} entries as synced")
        return count

    def merge(self, remote_entries: list[ChangeEntry]) -> list[ChangeEntry]:
        """Merge entries pulled from a remote log.

        Entries already present (same content) are skipped, so merging the
        same batch twice is harmless. New entries are stored as synced.

        Args:
            remote_entries: Entries from the remote node.

        Returns:
            The entries that were newly added.
        """
        if not remote_entries:
            return []

        now = datetime.now().isoformat()
        added = []
        with self._lock:
            conn = self._ensure_connected()
            try:
                for entry in remote_entries:
                    stored, inserted = self._insert(conn, entry, now)
                    if inserted:
                        added.append(stored)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(f"Merged {len(added)} new entries from remote")
        return added

    def get_cursor(self, name: str = "pull") -> str | None:
        """Get a stored sync cursor."""
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (name,)
            ).fetchone()
        return row["value"] if row else None

    def set_cursor(self, value: str, name: str = "pull") -> None:
        """Store a sync cursor."""
        with self._lock:
            conn = self._ensure_connected()
            conn.execute(
                """
                INSERT INTO sync_state (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (name, value),
            )
            conn.commit()

    def clear_cursor(self, name: str) -> None:
        """Forget a stored sync cursor."""
        with self._lock:
            conn = self._ensure_connected()
            conn.execute("DELETE FROM sync_state WHERE key = ?", (name,))
            conn.commit()

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with entry counts and other stats.
        """
        stats: dict[str, Any] = {"node_id": self.node_id}

        with self._lock:
            conn = self._ensure_connected()
            stats["total_entries"] = conn.execute(
                "SELECT COUNT(*) FROM changes"
            ).fetchone()[0]
            stats["unsynced_entries"] = conn.execute(
                "SELECT COUNT(*) FROM changes WHERE synced_at IS NULL"
            ).fetchone()[0]
            stats["entries_by_table"] = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT tbl, COUNT(*) FROM changes GROUP BY tbl"
                )
            }
            stats["latest_recorded_at"] = conn.execute(
                "SELECT MAX(recorded_at) FROM changes"
            ).fetchone()[0]

        if str(self.db_path) != ":memory:" and self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
