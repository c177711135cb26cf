"""Sync client for exchanging change entries with a colsync server.

Handles network synchronization with retry logic and batching optimization.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..errors import InvalidInput
from ..hlc import parse_timestamp
from ..records import RecordStore
from .change_log import ChangeLog
from .changes import ChangeEntry
from .replay import observe_remote, replay_rows

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/sync"

# sync_state keys holding the progress of a pull cut short by max_pages
RESUME_PAGE = "pull_resume_page"
RESUME_CURSOR = "pull_resume_cursor"


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some entries synced
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    rows_replayed: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for synchronizing a local change log with a server.

    Supports:
    - Push: Send local unsynced entries to the server
    - Pull: Fetch entries other clients produced and replay them locally
    - Full sync: Bidirectional sync

    Uses exponential backoff for retries and batching for efficiency.
    """

    def __init__(
        self,
        change_log: ChangeLog,
        records: RecordStore,
        user_id: str,
        remote_url: str | None = None,
        batch_size: int = 100,
        max_retries: int = 3,
        timeout: float = 30.0,
        compress: bool = False,
        max_pages: int = 100,
    ):
        """Initialize the sync client.

        Args:
            change_log: Local change log to sync.
            records: Local record store that pulled changes are replayed into.
            user_id: User whose changes are pulled.
            remote_url: Base URL of the server (e.g., "http://sync:8080").
            batch_size: Maximum entries per push batch and pull page.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
            compress: Ask the server to compact pushed and pulled batches.
            max_pages: Upper bound on pages fetched by one pull.
        """
        self.log = change_log
        self.records = records
        self.user_id = user_id
        self.remote_url = remote_url
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self.compress = compress
        self.max_pages = max_pages
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to remote_url.
            params: Optional query parameters.
            json_data: Optional JSON body.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.remote_url:
            return None, "No remote URL configured"

        url = f"{self.remote_url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url, params=params)
                    elif method == "POST":
                        response = await client.post(url, params=params, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Connection failed: max retries ({self.max_retries}) exceeded"

    @staticmethod
    def _error_status(error: str) -> SyncStatus:
        return SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED

    async def push_entries(self) -> SyncResult:
        """Push local unsynced entries to the server.

        Returns:
            SyncResult with push statistics.
        """
        if not self.remote_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No remote URL configured",
            )

        entries = self.log.get_unsynced(limit=self.batch_size)
        if not entries:
            return SyncResult(
                status=SyncStatus.SUCCESS,
                entries_pushed=0,
                timestamp=datetime.now(),
            )

        payload = {
            "changes": [
                {k: v for k, v in e.to_dict().items() if k not in ("id", "recorded_at")}
                for e in entries
            ],
        }

        data, error = await self._request_with_retry(
            "POST",
            SYNC_PATH,
            params={"compress": "true" if self.compress else "false"},
            json_data=payload,
        )

        if error:
            return SyncResult(status=self._error_status(error), error=error)

        if not isinstance(data, dict) or data.get("message") != "success":
            return SyncResult(
                status=SyncStatus.FAILED,
                error=f"Unexpected push response: {data!r}",
            )

        # The server acknowledges the batch as a whole
        pushed = self.log.mark_synced([e.id for e in entries])
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.SUCCESS,
            entries_pushed=pushed,
            timestamp=self._last_sync,
        )

    async def pull_entries(self, since: str | None = None) -> SyncResult:
        """Pull entries from the server and replay them locally.

        The server returns pages newest first. When a pull reaches max_pages
        before a short page, the next page number is stored and the cursor
        stays where it was, so the following pull continues with the older
        entries instead of skipping past them.

        Args:
            since: Only fetch entries the server recorded at or after this
                timestamp. If None, uses the stored pull cursor and resumes
                an unfinished pull. An explicit value is a one-off fetch and
                leaves the stored cursor alone.

        Returns:
            SyncResult with pull statistics; PARTIAL while older pages remain.
        """
        if not self.remote_url:
            return SyncResult(
                status=SyncStatus.FAILED,
                error="No remote URL configured",
            )

        track = since is None
        first_page = 0
        newest: str | None = None
        if track:
            since = self.log.get_cursor()
            first_page = int(self.log.get_cursor(RESUME_PAGE) or 0)
            newest = self.log.get_cursor(RESUME_CURSOR)

        pulled: list[ChangeEntry] = []
        drained = False
        for page in range(first_page, first_page + self.max_pages):
            params = {
                "user": self.user_id,
                "timestamp": since or "",
                "limit": self.batch_size,
                "page": page,
                "compress": "true" if self.compress else "false",
            }
            data, error = await self._request_with_retry("GET", SYNC_PATH, params=params)

            if error:
                return SyncResult(status=self._error_status(error), error=error)

            try:
                batch = [ChangeEntry.from_dict(c) for c in data.get("changes", [])]
            except InvalidInput as e:
                return SyncResult(status=SyncStatus.FAILED, error=str(e))

            pulled.extend(batch)
            for entry in batch:
                if entry.recorded_at and (
                    newest is None
                    or parse_timestamp(entry.recorded_at) > parse_timestamp(newest)
                ):
                    newest = entry.recorded_at

            # Compacted pages can be short before the last page
            count = data.get("count", len(batch))
            if count == 0 or (not self.compress and count < self.batch_size):
                drained = True
                break

        observe_remote(self.records, pulled)
        added = self.log.merge(pulled)
        replayed = replay_rows(self.records, self.log, (e.row_key for e in added))

        status = SyncStatus.SUCCESS
        if not drained:
            status = SyncStatus.PARTIAL
            next_page = first_page + self.max_pages
            logger.warning(
                f"Pull stopped after {self.max_pages} pages, "
                f"resuming at page {next_page}"
            )
            if track:
                self.log.set_cursor(str(next_page), RESUME_PAGE)
                if newest:
                    self.log.set_cursor(newest, RESUME_CURSOR)
        elif track:
            if newest:
                self.log.set_cursor(newest)
            self.log.clear_cursor(RESUME_PAGE)
            self.log.clear_cursor(RESUME_CURSOR)
        self._last_sync = datetime.now()

        return SyncResult(
            status=status,
            entries_pulled=len(added),
            rows_replayed=replayed,
            timestamp=self._last_sync,
        )

    async def full_sync(self) -> SyncResult:
        """Perform bidirectional sync.

        Returns:
            Combined SyncResult.
        """
        # Push first
        push_result = await self.push_entries()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        # Then pull
        pull_result = await self.pull_entries()

        if push_result.status == SyncStatus.SUCCESS:
            status = pull_result.status
        elif pull_result.status == SyncStatus.SUCCESS:
            status = SyncStatus.PARTIAL
        else:
            status = pull_result.status

        return SyncResult(
            status=status,
            entries_pushed=push_result.entries_pushed,
            entries_pulled=pull_result.entries_pulled,
            rows_replayed=pull_result.rows_replayed,
            error=pull_result.error or push_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"pushed={result.entries_pushed}, "
                    f"pulled={result.entries_pulled}"
                )
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            # Adaptive interval: back off if consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,  # Max 1 hour
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(
                        stop_event.wait(), timeout=wait_time
                    )
                    break  # Stop event was set
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        log_stats = self.log.get_stats()

        return {
            "remote_url": self.remote_url,
            "user_id": self.user_id,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pull_cursor": self.log.get_cursor(),
            "pull_resume_page": self.log.get_cursor(RESUME_PAGE),
            "pending_entries": log_stats["unsynced_entries"],
            "total_entries": log_stats["total_entries"],
        }
