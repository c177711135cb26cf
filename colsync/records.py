"""SQLite document store for synchronized records.

Records are schema-less field maps keyed by (table, id). When a change log is
attached, every create, update and delete is run through change capture;
``without_hooks()`` gives a view of the same database that skips capture.
"""

import copy
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .errors import RecordNotFound
from .hlc import HybridLogicalClock
from .sync.capture import ChangeCapture
from .sync.change_log import ChangeLog
from .sync.changes import DELETED_COLUMN

logger = logging.getLogger(__name__)

RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    tbl TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    hlc TEXT NOT NULL DEFAULT '',
    user_id TEXT NOT NULL DEFAULT '',
    created TEXT NOT NULL,
    updated TEXT NOT NULL,
    PRIMARY KEY (tbl, id)
);

CREATE INDEX IF NOT EXISTS idx_records_user ON records(tbl, user_id);
"""


@dataclass
class Record:
    """A stored record: content fields plus metadata."""

    table: str
    id: str
    fields: dict[str, Any] = field(default_factory=dict)
    hlc: str = ""
    user_id: str = ""
    created: str | None = None
    updated: str | None = None

    @property
    def deleted(self) -> bool:
        return bool(self.fields.get(DELETED_COLUMN, False))

    def to_dict(self) -> dict[str, Any]:
        """Flatten into a single JSON-friendly mapping."""
        data = dict(self.fields)
        data.update(
            {
                "id": self.id,
                "collectionName": self.table,
                "hlc": self.hlc,
                "user_id": self.user_id,
                "created": self.created,
                "updated": self.updated,
            }
        )
        return data


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        table=row["tbl"],
        id=row["id"],
        fields=json.loads(row["data"]),
        hlc=row["hlc"],
        user_id=row["user_id"],
        created=row["created"],
        updated=row["updated"],
    )


class RecordStore:
    """Generic record storage with optional change capture."""

    def __init__(
        self,
        db_path: str | Path,
        node_id: str = "local",
        change_log: ChangeLog | None = None,
        clock: HybridLogicalClock | None = None,
    ):
        """Initialize the record store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            node_id: Identifier of this node, used for the default clock.
            change_log: If given, mutations are captured into this log.
            clock: Clock stamping local mutations. Defaults to the change
                log's clock so both issue ordered timestamps.
        """
        self.db_path = Path(db_path).expanduser()
        self.node_id = node_id
        if clock is None:
            clock = change_log.clock if change_log else HybridLogicalClock(node_id)
        self.clock = clock
        self._capture = ChangeCapture(change_log, self.get) if change_log else None
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._row_locks: dict[tuple[str, str], list[Any]] = {}
        self._row_locks_guard = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        with self._lock:
            if self._conn is not None:
                return
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(RECORDS_SCHEMA)
            self._conn.commit()

        logger.info(f"RecordStore connected to {self.db_path}")

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

    def without_hooks(self) -> "RecordStore":
        """Return a view of this store that never fires change capture."""
        self._ensure_connected()
        view = copy.copy(self)
        view._capture = None
        return view

    @contextmanager
    def row_lock(self, table: str, record_id: str) -> Iterator[None]:
        """Serialize read-modify-write sequences on one record."""
        key = (table, record_id)
        with self._row_locks_guard:
            slot = self._row_locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        slot[0].acquire()
        try:
            yield
        finally:
            slot[0].release()
            with self._row_locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._row_locks[key]

    def get(self, table: str, record_id: str) -> Record | None:
        """Get a record, or None if it does not exist."""
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT * FROM records WHERE tbl = ? AND id = ?",
                (table, record_id),
            ).fetchone()
        return _row_to_record(row) if row else None

    def find(self, table: str, record_id: str) -> Record:
        """Get a record.

        Raises:
            RecordNotFound: If no record exists for (table, record_id).
        """
        record = self.get(table, record_id)
        if record is None:
            raise RecordNotFound(table, record_id)
        return record

    def list(self, table: str, include_deleted: bool = False) -> list[Record]:
        """List records of a table, oldest first."""
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                "SELECT * FROM records WHERE tbl = ? ORDER BY created ASC, id ASC",
                (table,),
            ).fetchall()
        records = [_row_to_record(row) for row in rows]
        if include_deleted:
            return records
        return [r for r in records if not r.deleted]

    def _write(self, conn: sqlite3.Connection, record: Record, exists: bool) -> None:
        if exists:
            conn.execute(
                """
                UPDATE records SET data = ?, hlc = ?, user_id = ?, updated = ?
                WHERE tbl = ? AND id = ?
                """,
                (
                    json.dumps(record.fields),
                    record.hlc,
                    record.user_id,
                    record.updated,
                    record.table,
                    record.id,
                ),
            )
        else:
            conn.execute(
                """
                INSERT INTO records (tbl, id, data, hlc, user_id, created, updated)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.table,
                    record.id,
                    json.dumps(record.fields),
                    record.hlc,
                    record.user_id,
                    record.created,
                    record.updated,
                ),
            )

    def save(self, record: Record) -> Record:
        """Insert or update a record.

        The record's hlc is kept when set, otherwise stamped from the clock.
        Capture runs after the write and before the commit, so a failed
        write never reaches the log and a capture failure rolls the write
        back.

        Returns:
            The saved record.
        """
        now = datetime.now().isoformat()
        if not record.hlc:
            record.hlc = self.clock.now()
        record.updated = now

        with self._lock:
            conn = self._ensure_connected()
            previous = self.get(record.table, record.id)
            exists = previous is not None
            record.created = previous.created if exists else (record.created or now)

            try:
                self._write(conn, record, exists)
                if self._capture and exists:
                    self._capture.on_update(record, previous)
                elif self._capture:
                    self._capture.on_create(record)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.debug(f"Saved {record.table}/{record.id} at {record.hlc}")
        return record

    def create(
        self,
        table: str,
        fields: dict[str, Any],
        user_id: str = "",
        record_id: str | None = None,
        hlc: str | None = None,
    ) -> Record:
        """Create a new record and return it."""
        record = Record(
            table=table,
            id=record_id or str(uuid.uuid4()),
            fields=dict(fields),
            hlc=hlc or "",
            user_id=user_id,
        )
        return self.save(record)

    def update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, Any],
        hlc: str | None = None,
    ) -> Record:
        """Set fields on an existing record.

        Raises:
            RecordNotFound: If the record does not exist.
        """
        record = self.find(table, record_id)
        record.fields.update(fields)
        record.hlc = hlc or ""
        return self.save(record)

    def delete(self, table: str, record_id: str, hlc: str | None = None) -> Record:
        """Delete a record; captured as a ``deleted`` tombstone entry.

        Args:
            table: Record table.
            record_id: Record id.
            hlc: Timestamp of the delete. Stamped from the clock if omitted.

        Returns:
            The record as it was before deletion.

        Raises:
            RecordNotFound: If the record does not exist.
        """
        with self._lock:
            record = self.find(table, record_id)
            record.hlc = hlc or self.clock.now()

            conn = self._ensure_connected()
            try:
                conn.execute(
                    "DELETE FROM records WHERE tbl = ? AND id = ?",
                    (table, record_id),
                )
                if self._capture:
                    self._capture.on_delete(record)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.debug(f"Deleted {table}/{record_id}")
        return record

    def get_stats(self) -> dict[str, Any]:
        """Get record counts per table."""
        with self._lock:
            conn = self._ensure_connected()
            rows = conn.execute(
                "SELECT tbl, COUNT(*) FROM records GROUP BY tbl"
            ).fetchall()
        return {"records_by_table": {row[0]: row[1] for row in rows}}
