"""Server-side push and pull handling for the sync protocol."""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidInput, RecordNotFound
from ..hlc import parse_timestamp
from ..records import Record, RecordStore
from .change_log import DEFAULT_PAGE_SIZE, ChangeLog
from .changes import ChangeEntry
from .merge import fold_batch, latest_per_column

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    """Outcome of applying one pushed batch."""

    entries_received: int = 0
    entries_applied: int = 0
    rows_applied: int = 0
    rows_failed: int = 0
    failed_rows: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class PullResult:
    """Entries returned to a pulling client."""

    changes: list[ChangeEntry]
    compress: bool = False

    @property
    def count(self) -> int:
        return len(self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "count": self.count,
            "compress": self.compress,
        }


def parse_changes(payload: Any) -> list[ChangeEntry]:
    """Parse the ``changes`` list of a push body.

    Raises:
        InvalidInput: If the field is missing, not a list, or an item is
            malformed.
    """
    changes = payload.get("changes") if isinstance(payload, dict) else None
    if not isinstance(changes, list):
        raise InvalidInput("changes field required")

    entries = []
    for index, item in enumerate(changes):
        try:
            entries.append(ChangeEntry.from_dict(item))
        except InvalidInput as e:
            raise InvalidInput(f"changes[{index}]: {e}") from e
    return entries


class SyncService:
    """Applies pushed change batches and serves pull queries."""

    def __init__(self, change_log: ChangeLog, records: RecordStore):
        """Initialize the service.

        Args:
            change_log: Shared change log.
            records: Record store holding the materialized rows.
        """
        self.log = change_log
        self.records = records

    def push(self, payload: Any, compress: bool = False) -> PushResult:
        """Apply a batch of changes pushed by a client.

        The (optionally compacted) entries are appended to the change log
        as received, then folded per row and upserted into the record store
        without re-running change capture. A row that fails to save is
        logged and skipped; other rows still apply.

        Args:
            payload: Request body, expected to carry a ``changes`` list.
            compress: Keep only the latest entry per column before applying.

        Returns:
            PushResult with counts.

        Raises:
            InvalidInput: If the batch is missing or malformed.
        """
        entries = parse_changes(payload)
        result = PushResult(entries_received=len(entries))

        if compress:
            entries = latest_per_column(entries)
        result.entries_applied = len(entries)

        self.log.append_many(entries)

        latest: dict[tuple[str, str], ChangeEntry] = {}
        for entry in entries:
            current = latest.get(entry.row_key)
            if current is None or entry.sort_key >= current.sort_key:
                latest[entry.row_key] = entry

        store = self.records.without_hooks()
        for (table, row_id), columns in fold_batch(entries).items():
            try:
                self._apply_row(store, table, row_id, columns, latest[(table, row_id)])
                result.rows_applied += 1
            except Exception as e:
                logger.error(f"Failed to apply {table}/{row_id}: {e}")
                result.rows_failed += 1
                result.failed_rows.append((table, row_id))

        logger.info(
            f"Push applied {result.entries_applied}/{result.entries_received} "
            f"entries to {result.rows_applied} rows ({result.rows_failed} failed)"
        )
        return result

    def _apply_row(
        self,
        store: RecordStore,
        table: str,
        row_id: str,
        columns: dict[str, Any],
        newest: ChangeEntry,
    ) -> None:
        """Upsert one row's columns under that row's lock."""
        with store.row_lock(table, row_id):
            try:
                record = store.find(table, row_id)
            except RecordNotFound:
                record = Record(table=table, id=row_id, user_id=newest.user_id)

            record.fields.update(columns)
            if parse_timestamp(newest.timestamp) >= parse_timestamp(record.hlc):
                record.hlc = newest.timestamp
            store.save(record)

    def pull(
        self,
        user_id: str | None,
        since: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 0,
        compress: bool = False,
    ) -> PullResult:
        """Get the changes visible to a user.

        Args:
            user_id: Requesting user.
            since: Only entries recorded at or after this timestamp.
            limit: Page size.
            page: Zero-based page number.
            compress: Keep only the latest entry per column.

        Returns:
            PullResult, most recent entries first.

        Raises:
            InvalidInput: If user_id is missing or paging is out of range.
        """
        if not user_id:
            raise InvalidInput("user is required")

        changes = self.log.query(user_id, since=since or None, limit=limit, page=page)

        if compress:
            # The page is newest-first; compact in insertion order
            compacted = latest_per_column(reversed(changes))
            changes = list(reversed(compacted))

        logger.debug(
            f"Pull for {user_id} since {since!r}: {len(changes)} entries "
            f"(compress={compress})"
        )
        return PullResult(changes=changes, compress=compress)
