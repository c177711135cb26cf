"""Hybrid Logical Clock timestamps.

A timestamp is a string of the form ``2026-10-17T12:00:00.000Z-0000-node``:
wall-clock milliseconds in UTC, a 4-digit hex logical counter, and the id of
the node that issued it. Plain datetimes are accepted wherever a timestamp is
read and sort as if they had counter 0 and an empty node id.
"""

import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, NamedTuple

from .errors import ClockDriftError, InvalidTimestamp

MAX_COUNTER = 0xFFFF

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

_HLC_RE = re.compile(
    r"^(?P<wall>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z)"
    r"-(?P<counter>[0-9A-Fa-f]{4})-(?P<node>.*)$"
)


class TimestampKey(NamedTuple):
    """Comparable form of a timestamp."""

    millis: int
    counter: int
    node: str


# Sorts before every real timestamp
MISSING = TimestampKey(-1, 0, "")


def _format_wall(millis: int) -> str:
    dt = _EPOCH + millis * _ONE_MS
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def format_timestamp(millis: int, counter: int, node: str) -> str:
    """Render the parts of an HLC timestamp as its canonical string."""
    return f"{_format_wall(millis)}-{counter:04X}-{node}"


def _parse_datetime(value: str) -> int:
    text = value.strip().replace(" ", "T", 1)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidTimestamp(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // _ONE_MS


def parse_timestamp(value: str | None) -> TimestampKey:
    """Parse an HLC string or plain datetime into a comparable key.

    Args:
        value: Timestamp as stored on a change entry. A space is accepted in
            place of the ``T`` date/time separator.

    Returns:
        TimestampKey; ``MISSING`` for empty values.

    Raises:
        InvalidTimestamp: If the value is neither an HLC nor a datetime.
    """
    if value is None:
        return MISSING
    text = str(value).strip()
    if not text:
        return MISSING

    match = _HLC_RE.match(text.replace(" ", "T", 1))
    if match:
        return TimestampKey(
            _parse_datetime(match.group("wall")),
            int(match.group("counter"), 16),
            match.group("node"),
        )

    return TimestampKey(_parse_datetime(text), 0, "")


def normalize_timestamp(value: str | None) -> str:
    """Return the canonical HLC string for any accepted timestamp form."""
    key = parse_timestamp(value)
    if key == MISSING:
        raise InvalidTimestamp("Timestamp is empty")
    return format_timestamp(key.millis, key.counter, key.node)


def _wall_millis() -> int:
    return int(time.time() * 1000)


class HybridLogicalClock:
    """Issues monotonically increasing HLC timestamps for one node."""

    def __init__(
        self,
        node_id: str,
        max_drift_ms: int = 60_000,
        wall_clock: Callable[[], int] = _wall_millis,
    ):
        """Initialize the clock.

        Args:
            node_id: Identifier appended to every issued timestamp.
            max_drift_ms: Largest accepted lead of a remote clock.
            wall_clock: Source of physical time in milliseconds.
        """
        self.node_id = node_id
        self.max_drift_ms = max_drift_ms
        self._wall_clock = wall_clock
        self._millis = 0
        self._counter = 0
        self._lock = threading.Lock()

    def _check_counter(self) -> None:
        if self._counter > MAX_COUNTER:
            raise ClockDriftError("HLC counter overflow")

    def now(self) -> str:
        """Issue a timestamp for a local event."""
        with self._lock:
            physical = self._wall_clock()
            if physical > self._millis:
                self._millis = physical
                self._counter = 0
            else:
                self._counter += 1
            self._check_counter()
            return format_timestamp(self._millis, self._counter, self.node_id)

    def receive(self, remote: str) -> str:
        """Fold a remote timestamp into the clock.

        Args:
            remote: Timestamp received from another node.

        Returns:
            A new local timestamp ordered after both clocks.

        Raises:
            ClockDriftError: If the remote wall time leads ours by more than
                max_drift_ms.
        """
        key = parse_timestamp(remote)
        with self._lock:
            physical = self._wall_clock()
            if key == MISSING:
                remote_millis, remote_counter = 0, 0
            else:
                remote_millis, remote_counter = key.millis, key.counter
                if remote_millis - physical > self.max_drift_ms:
                    raise ClockDriftError(
                        f"Remote clock ahead by {remote_millis - physical}ms"
                    )

            latest = max(self._millis, remote_millis, physical)
            if latest == self._millis and latest == remote_millis:
                self._counter = max(self._counter, remote_counter) + 1
            elif latest == self._millis:
                self._counter += 1
            elif latest == remote_millis:
                self._counter = remote_counter + 1
            else:
                self._counter = 0
            self._millis = latest
            self._check_counter()
            return format_timestamp(self._millis, self._counter, self.node_id)

    def observe(self, timestamp: str) -> None:
        """Advance past a timestamp that was already issued (e.g. on restart)."""
        key = parse_timestamp(timestamp)
        with self._lock:
            if key > TimestampKey(self._millis, self._counter, key.node):
                self._millis = key.millis
                self._counter = key.counter
