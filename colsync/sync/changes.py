"""Column-level change entries, the unit of synchronized state."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidInput
from ..hlc import TimestampKey, parse_timestamp

DELETED_COLUMN = "deleted"

# Record metadata that is never captured as a synchronized column
SYSTEM_FIELDS = frozenset(
    {
        "id",
        "hlc",
        "deleted",
        "created",
        "updated",
        "collectionId",
        "collectionName",
    }
)

WIRE_FIELDS = ("table", "row_id", "column", "value", "timestamp", "user_id")
_REQUIRED = ("table", "row_id", "column")


def is_system_field(name: str) -> bool:
    """Check whether a record field is metadata rather than content."""
    return name in SYSTEM_FIELDS


@dataclass(frozen=True)
class ChangeEntry:
    """One column's value at one point in logical time."""

    table: str
    row_id: str
    column: str
    value: Any
    timestamp: str
    user_id: str = ""
    # Log bookkeeping, irrelevant to merge semantics
    id: str | None = field(default=None, compare=False)
    recorded_at: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.table, self.row_id, self.column)

    @property
    def row_key(self) -> tuple[str, str]:
        return (self.table, self.row_id)

    @property
    def sort_key(self) -> TimestampKey:
        return parse_timestamp(self.timestamp)

    @property
    def is_delete(self) -> bool:
        return self.column == DELETED_COLUMN and bool(self.value)

    def fingerprint(self) -> str:
        """Content hash over the wire fields, used to drop re-deliveries."""
        canonical = json.dumps(
            [self.table, self.row_id, self.column, self.value, self.timestamp, self.user_id],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = {
            "table": self.table,
            "row_id": self.row_id,
            "column": self.column,
            "value": self.value,
            "timestamp": self.timestamp,
            "user_id": self.user_id,
        }
        if self.id is not None:
            data["id"] = self.id
        if self.recorded_at is not None:
            data["recorded_at"] = self.recorded_at
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "ChangeEntry":
        """Create from a wire dictionary.

        Raises:
            InvalidInput: If data is not a mapping or lacks table, row_id
                or column.
        """
        if not isinstance(data, dict):
            raise InvalidInput("change must be an object")
        for name in _REQUIRED:
            if data.get(name) in (None, ""):
                raise InvalidInput(f"change is missing {name}")

        timestamp = data.get("timestamp") or ""
        # Reject unparseable timestamps up front
        parse_timestamp(timestamp)

        return cls(
            table=str(data["table"]),
            row_id=str(data["row_id"]),
            column=str(data["column"]),
            value=data.get("value"),
            timestamp=str(timestamp),
            user_id=str(data.get("user_id") or ""),
            id=data.get("id"),
            recorded_at=data.get("recorded_at"),
        )
