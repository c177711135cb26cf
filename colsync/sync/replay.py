"""Replays a row's change history into the local record store."""

import logging
from collections.abc import Iterable

from ..errors import ClockDriftError
from ..hlc import MISSING
from ..records import Record, RecordStore
from .change_log import ChangeLog
from .changes import ChangeEntry
from .merge import resolve_row

logger = logging.getLogger(__name__)


def replay_rows(
    records: RecordStore,
    change_log: ChangeLog,
    row_keys: Iterable[tuple[str, str]],
) -> int:
    """Materialize the merged view of each row from its full local history.

    Rows are rebuilt from every logged entry rather than patched with the
    new ones, so the result does not depend on the order entries arrived in.

    Args:
        records: Local record store.
        change_log: Local change log holding both local and pulled entries.
        row_keys: (table, row_id) pairs to rebuild.

    Returns:
        Number of rows written.
    """
    store = records.without_hooks()
    written = 0
    for table, row_id in dict.fromkeys(row_keys):
        history = change_log.entries_for_row(table, row_id)
        if not history:
            continue

        view = resolve_row(history)
        newest = max(history, key=lambda e: e.sort_key)

        with store.row_lock(table, row_id):
            record = store.get(table, row_id)
            if record is None:
                record = Record(table=table, id=row_id, user_id=newest.user_id)
            record.fields.update(view)
            if newest.sort_key != MISSING:
                record.hlc = newest.timestamp
            store.save(record)
        written += 1

    logger.debug(f"Replayed {written} rows")
    return written


def observe_remote(records: RecordStore, entries: Iterable[ChangeEntry]) -> None:
    """Advance the local clock past remote timestamps."""
    for entry in entries:
        if not entry.timestamp:
            continue
        try:
            records.clock.receive(entry.timestamp)
        except ClockDriftError as e:
            logger.warning(f"Ignoring clock of {entry.table}/{entry.row_id}: {e}")
