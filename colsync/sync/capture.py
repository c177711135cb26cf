"""Change capture: turns record mutations into change log entries.

The record store calls into this module after writing a create, update or
delete and before committing it; updates pass in the state loaded before the
write. Writing to the change log never goes back through the record store, so
capture cannot trigger itself.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Callable

from ..errors import CaptureError
from .change_log import ChangeLog
from .changes import DELETED_COLUMN, ChangeEntry, is_system_field

if TYPE_CHECKING:
    from ..records import Record

logger = logging.getLogger(__name__)


def _same_value(old: Any, new: Any) -> bool:
    """Compare field values as their JSON encodings, so 0, False and 0.0 differ."""
    return json.dumps(old, sort_keys=True, default=str) == json.dumps(
        new, sort_keys=True, default=str
    )


class ChangeCapture:
    """Diffs record states and appends the resulting column changes."""

    def __init__(
        self,
        change_log: ChangeLog,
        load_previous: Callable[[str, str], "Record | None"],
    ):
        """Initialize change capture.

        Args:
            change_log: Log receiving captured entries.
            load_previous: Returns the persisted record for (table, id), or
                None when it does not exist.
        """
        self.log = change_log
        self._load_previous = load_previous

    def _entry(self, record: "Record", column: str, value: Any) -> ChangeEntry:
        return ChangeEntry(
            table=record.table,
            row_id=record.id,
            column=column,
            value=value,
            timestamp=record.hlc,
            user_id=record.user_id,
        )

    def _emit(self, entries: list[ChangeEntry]) -> list[ChangeEntry]:
        if not entries:
            return []
        try:
            stored = self.log.append_many(entries)
        except Exception as e:
            raise CaptureError(f"Failed to capture changes: {e}") from e

        first = entries[0]
        logger.debug(
            f"Captured {len(stored)} change(s) for {first.table}/{first.row_id}"
        )
        return stored

    def on_create(self, record: "Record") -> list[ChangeEntry]:
        """Capture every content field of a newly created record."""
        entries = [
            self._entry(record, name, value)
            for name, value in record.fields.items()
            if not is_system_field(name)
        ]
        return self._emit(entries)

    def on_update(
        self, record: "Record", previous: "Record | None" = None
    ) -> list[ChangeEntry]:
        """Capture the content fields that differ from the persisted record.

        Args:
            record: Record in its new state.
            previous: State before the update. Loaded through load_previous
                when not given.
        """
        if previous is None:
            previous = self._load_previous(record.table, record.id)
        if previous is None:
            return self.on_create(record)

        entries = []
        for name, value in record.fields.items():
            if is_system_field(name):
                continue
            if name in previous.fields and _same_value(previous.fields[name], value):
                continue
            entries.append(self._entry(record, name, value))

        return self._emit(entries)

    def on_delete(self, record: "Record") -> list[ChangeEntry]:
        """Capture the tombstone of a deleted record."""
        return self._emit([self._entry(record, DELETED_COLUMN, True)])
