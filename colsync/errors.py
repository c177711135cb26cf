"""Exception types shared across colsync."""


class ColsyncError(Exception):
    """Base class for colsync errors."""


class InvalidInput(ColsyncError):
    """A request is missing a required field or carries a malformed one."""


class InvalidTimestamp(InvalidInput):
    """A timestamp string could not be parsed."""


class ClockDriftError(ColsyncError):
    """A remote clock is too far ahead, or the logical counter overflowed."""


class RecordNotFound(ColsyncError):
    """No record exists for a (table, id) pair."""

    def __init__(self, table: str, record_id: str):
        super().__init__(f"Record {table}/{record_id} not found")
        self.table = table
        self.record_id = record_id


class CaptureError(ColsyncError):
    """Change capture failed; the triggering mutation must not commit."""
