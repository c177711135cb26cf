"""Tests for change entries and last-write-wins resolution."""

import itertools

import pytest

from colsync.errors import InvalidInput
from colsync.sync import (
    ChangeEntry,
    fold_batch,
    is_deleted,
    latest_per_column,
    resolve,
    resolve_row,
)

T1 = "2026-10-17T12:00:01.000Z-0000-a"
T2 = "2026-10-17T12:00:02.000Z-0000-b"
T3 = "2026-10-17T12:00:03.000Z-0000-a"
T4 = "2026-10-17T12:00:04.000Z-0000-b"


def change(column, value, timestamp, row_id="r1", table="notes", user_id="u1"):
    return ChangeEntry(table, row_id, column, value, timestamp, user_id)


class TestChangeEntry:
    """Tests for the ChangeEntry dataclass."""

    def test_to_dict(self):
        """Test serializing an entry without log bookkeeping."""
        entry = change("title", "a", T1)

        assert entry.to_dict() == {
            "table": "notes",
            "row_id": "r1",
            "column": "title",
            "value": "a",
            "timestamp": T1,
            "user_id": "u1",
        }

    def test_from_dict(self):
        """Test deserializing an entry."""
        entry = ChangeEntry.from_dict(
            {
                "table": "notes",
                "row_id": "r1",
                "column": "tags",
                "value": ["x", "y"],
                "timestamp": T2,
                "user_id": None,
            }
        )

        assert entry.value == ["x", "y"]
        assert entry.user_id == ""
        assert entry.key == ("notes", "r1", "tags")

    def test_from_dict_missing_field(self):
        """Test that a missing required field is reported by name."""
        with pytest.raises(InvalidInput, match="row_id"):
            ChangeEntry.from_dict({"table": "notes", "column": "title"})

    def test_from_dict_not_a_mapping(self):
        """Test that non-object changes are rejected."""
        with pytest.raises(InvalidInput):
            ChangeEntry.from_dict(["notes", "r1"])

    def test_from_dict_bad_timestamp(self):
        """Test that unparseable timestamps are rejected."""
        with pytest.raises(InvalidInput):
            ChangeEntry.from_dict(
                {"table": "notes", "row_id": "r1", "column": "a", "timestamp": "soon"}
            )

    def test_equality_ignores_log_bookkeeping(self):
        """Test that id and recorded_at don't affect equality."""
        a = ChangeEntry("notes", "r1", "title", "a", T1, "u1", id="x", recorded_at=T1)
        b = ChangeEntry("notes", "r1", "title", "a", T1, "u1", id="y", recorded_at=T2)

        assert a == b
        assert a.fingerprint() == b.fingerprint()

    def test_fingerprint_depends_on_content(self):
        """Test that different values have different fingerprints."""
        assert change("title", "a", T1).fingerprint() != change("title", "b", T1).fingerprint()

    def test_entry_is_immutable(self):
        """Test that entries cannot be edited in place."""
        entry = change("title", "a", T1)

        with pytest.raises(AttributeError):
            entry.value = "b"


class TestResolve:
    """Tests for building merged row views."""

    def test_latest_timestamp_wins_per_column(self):
        """Test that each column takes its newest value independently."""
        entries = [
            change("title", "old", T1),
            change("body", "body-new", T3),
            change("title", "new", T2),
            change("body", "body-old", T1),
        ]

        assert resolve_row(entries) == {"title": "new", "body": "body-new"}

    def test_commutative(self):
        """Test that input order doesn't matter for distinct timestamps."""
        entries = [
            change("title", "a", T1),
            change("title", "b", T2),
            change("body", "c", T3),
            change("body", "d", T4),
        ]
        expected = resolve_row(entries)

        for permutation in itertools.permutations(entries):
            assert resolve_row(permutation) == expected

    def test_idempotent(self):
        """Test that duplicated entries resolve like single ones."""
        a = change("title", "a", T1)
        b = change("title", "b", T2)

        assert resolve_row([a, b, b, a]) == resolve_row([a, b])

    def test_compaction_is_idempotent(self):
        """Test that compacting compacted output changes nothing."""
        entries = [change("title", "a", T1), change("title", "b", T2), change("body", "c", T1)]
        once = latest_per_column(entries)

        assert latest_per_column(once) == once

    def test_partitioned_merge(self):
        """Test that merging partitions separately converges."""
        entries = [
            change("title", "a", T1),
            change("title", "b", T3),
            change("body", "c", T2),
            change("body", "d", T4),
            change("title", "x", T1, row_id="r2"),
        ]
        left, right = entries[:2], entries[2:]

        merged = resolve(latest_per_column(right) + latest_per_column(left))

        assert merged == resolve(entries)

    def test_tie_later_input_wins(self):
        """Test that equal timestamps are decided by input order."""
        first = change("title", "first", T1)
        second = change("title", "second", T1)

        assert resolve_row([first, second]) == {"title": "second"}
        assert resolve_row([second, first]) == {"title": "first"}

    def test_space_separated_timestamp(self):
        """Test timestamps with a space separator compare correctly."""
        entries = [
            change("title", "later", "2026-10-17 12:00:03.000Z"),
            change("title", "earlier", "2026-10-17T12:00:02.000Z"),
        ]

        assert resolve_row(entries) == {"title": "later"}

    def test_resolve_groups_rows(self):
        """Test resolving entries spanning several rows."""
        entries = [
            change("title", "a", T1, row_id="r1"),
            change("title", "b", T1, row_id="r2"),
            change("title", "c", T1, table="todos", row_id="r1"),
        ]

        assert resolve(entries) == {
            ("notes", "r1"): {"title": "a"},
            ("notes", "r2"): {"title": "b"},
            ("todos", "r1"): {"title": "c"},
        }

    def test_resolve_row_rejects_multiple_rows(self):
        """Test that resolve_row refuses entries of different rows."""
        with pytest.raises(ValueError):
            resolve_row([change("a", 1, T1, row_id="r1"), change("a", 1, T1, row_id="r2")])

    def test_resolve_row_empty(self):
        """Test resolving no entries."""
        assert resolve_row([]) == {}


class TestDeletion:
    """Tests for tombstones as ordinary columns."""

    def test_delete_hides_row(self):
        """Test that a delete entry marks the view deleted."""
        view = resolve_row([change("title", "a", T1), change("deleted", True, T2)])

        assert is_deleted(view)
        assert view["title"] == "a"

    def test_later_change_resurrects(self):
        """Test that a later deleted=false entry brings the row back."""
        entries = [
            change("deleted", True, T2),
            change("deleted", False, T3),
        ]

        assert not is_deleted(resolve_row(entries))

    def test_later_delete_hides_again(self):
        """Test that a delete after a resurrection wins."""
        entries = [
            change("deleted", True, T2),
            change("deleted", False, T3),
            change("deleted", True, T4),
        ]

        assert is_deleted(resolve_row(entries))

    def test_older_delete_loses(self):
        """Test that a stale delete doesn't override a newer resurrection."""
        entries = [change("deleted", False, T3), change("deleted", True, T2)]

        assert not is_deleted(resolve_row(entries))


class TestCompaction:
    """Tests for latest_per_column and fold_batch."""

    def test_one_entry_per_column(self):
        """Test that compaction keeps one winner per column."""
        entries = [
            change("title", "a", T1),
            change("body", "b", T1),
            change("title", "c", T2),
        ]

        compacted = latest_per_column(entries)

        assert compacted == [change("body", "b", T1), change("title", "c", T2)]

    def test_compaction_keeps_every_column(self):
        """Test that no column present in the input is dropped."""
        entries = [change(f"col{i}", i, T1) for i in range(5)]

        assert {e.column for e in latest_per_column(entries)} == {
            f"col{i}" for i in range(5)
        }

    def test_compaction_safety(self):
        """Test that resolving compacted entries gives the same view."""
        entries = [
            change("title", "a", T2),
            change("title", "b", T1),
            change("title", "c", T3),
            change("body", "d", T1),
            change("body", "e", T1),
            change("title", "z", T4, row_id="r2"),
        ]

        assert resolve(latest_per_column(entries)) == resolve(entries)

    def test_fold_batch_last_in_wins(self):
        """Test that the push fold ignores timestamps."""
        entries = [
            change("title", "newer", T2),
            change("title", "older", T1),
            change("body", "b", T1, row_id="r2"),
        ]

        assert fold_batch(entries) == {
            ("notes", "r1"): {"title": "older"},
            ("notes", "r2"): {"body": "b"},
        }
