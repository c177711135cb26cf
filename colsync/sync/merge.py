"""Last-write-wins resolution of change entries.

Every function here is pure. For a fixed (table, row_id, column) the entry
with the greatest timestamp wins; entries with identical timestamps are
decided by input order, the later one winning. Callers that need
reproducible results must pass entries in a deterministic order, normally
log insertion order.
"""

from collections.abc import Iterable
from typing import Any

from .changes import DELETED_COLUMN, ChangeEntry

RowKey = tuple[str, str]


def _winners(entries: Iterable[ChangeEntry]) -> dict[tuple[str, str, str], tuple[int, ChangeEntry]]:
    """Map each column key to (input position, winning entry)."""
    winners: dict[tuple[str, str, str], tuple[int, ChangeEntry]] = {}
    for position, entry in enumerate(entries):
        current = winners.get(entry.key)
        if current is None or entry.sort_key >= current[1].sort_key:
            winners[entry.key] = (position, entry)
    return winners


def latest_per_column(entries: Iterable[ChangeEntry]) -> list[ChangeEntry]:
    """Compact entries to one winner per (table, row_id, column).

    Args:
        entries: Change entries in insertion order.

    Returns:
        Winning entries, ordered by their position in the input.
    """
    ranked = sorted(_winners(entries).values(), key=lambda item: item[0])
    return [entry for _, entry in ranked]


def resolve(entries: Iterable[ChangeEntry]) -> dict[RowKey, dict[str, Any]]:
    """Build the merged row view for every row present in entries."""
    rows: dict[RowKey, dict[str, Any]] = {}
    for entry in latest_per_column(entries):
        rows.setdefault(entry.row_key, {})[entry.column] = entry.value
    return rows


def resolve_row(entries: Iterable[ChangeEntry]) -> dict[str, Any]:
    """Build the merged row view for entries of a single (table, row_id).

    Raises:
        ValueError: If entries span more than one row.
    """
    rows = resolve(entries)
    if len(rows) > 1:
        raise ValueError(f"Entries span {len(rows)} rows")
    return next(iter(rows.values()), {})


def fold_batch(entries: Iterable[ChangeEntry]) -> dict[RowKey, dict[str, Any]]:
    """Flatten a batch into column maps per row, later entries overwriting.

    Unlike resolve(), timestamps are not consulted.
    """
    merged: dict[RowKey, dict[str, Any]] = {}
    for entry in entries:
        merged.setdefault(entry.row_key, {})[entry.column] = entry.value
    return merged


def is_deleted(view: dict[str, Any]) -> bool:
    """Check whether a merged row view is currently tombstoned."""
    return bool(view.get(DELETED_COLUMN, False))
