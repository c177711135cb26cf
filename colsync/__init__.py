"""Offline-first column-level sync with last-write-wins merging."""

from .records import Record, RecordStore
from .sync import ChangeEntry, ChangeLog
from .sync.service import PullResult, PushResult, SyncService
from .sync.sync_client import SyncClient, SyncResult, SyncStatus

__version__ = "0.1.0"

__all__ = [
    "ChangeEntry",
    "ChangeLog",
    "PullResult",
    "PushResult",
    "Record",
    "RecordStore",
    "SyncClient",
    "SyncResult",
    "SyncService",
    "SyncStatus",
]
