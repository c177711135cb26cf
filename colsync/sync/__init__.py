"""Change capture, change log and merge primitives.

Every record mutation becomes column-level change entries in an append-only
log; entries are merged per column by last-write-wins on HLC timestamps.
The push/pull service and the HTTP client live in ``service`` and
``sync_client``.
"""

from .capture import ChangeCapture
from .change_log import ChangeLog
from .changes import DELETED_COLUMN, SYSTEM_FIELDS, ChangeEntry
from .merge import fold_batch, is_deleted, latest_per_column, resolve, resolve_row

__all__ = [
    "ChangeCapture",
    "ChangeLog",
    "ChangeEntry",
    "DELETED_COLUMN",
    "SYSTEM_FIELDS",
    "fold_batch",
    "is_deleted",
    "latest_per_column",
    "resolve",
    "resolve_row",
]
