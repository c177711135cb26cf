"""Tests for the push and pull handlers."""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from colsync.errors import InvalidInput
from colsync.records import RecordStore
from colsync.sync import ChangeEntry, ChangeLog
from colsync.sync.service import SyncService, parse_changes

T1 = "2026-10-17T12:00:01.000Z-0000-a"
T2 = "2026-10-17T12:00:02.000Z-0000-b"
T3 = "2026-10-17T12:00:03.000Z-0000-a"


def wire(column, value, timestamp, row_id="r1", table="notes", user_id="u1"):
    return {
        "table": table,
        "row_id": row_id,
        "column": column,
        "value": value,
        "timestamp": timestamp,
        "user_id": user_id,
    }


@pytest.fixture
def change_log():
    """Create an in-memory server change log."""
    log = ChangeLog(":memory:", "server")
    log.connect()
    yield log
    log.close()


@pytest.fixture
def records(change_log):
    """Create an in-memory server record store with capture attached."""
    store = RecordStore(":memory:", node_id="server", change_log=change_log)
    store.connect()
    yield store
    store.close()


@pytest.fixture
def service(change_log, records):
    """Create the sync service."""
    return SyncService(change_log, records)


class TestParseChanges:
    """Tests for validating push bodies."""

    def test_missing_changes(self):
        """Test that a body without changes is rejected."""
        with pytest.raises(InvalidInput, match="changes field required"):
            parse_changes({})

    def test_missing_body(self):
        """Test that an absent body is rejected the same way."""
        with pytest.raises(InvalidInput, match="changes field required"):
            parse_changes(None)

    def test_changes_not_a_list(self):
        """Test that changes must be a list."""
        with pytest.raises(InvalidInput, match="changes field required"):
            parse_changes({"changes": "title=a"})

    def test_bad_item_reports_index(self):
        """Test that a malformed change names its position."""
        with pytest.raises(InvalidInput, match=r"changes\[1\]"):
            parse_changes({"changes": [wire("title", "a", T1), {"table": "notes"}]})

    def test_empty_batch(self):
        """Test that an empty list is valid."""
        assert parse_changes({"changes": []}) == []


class TestPush:
    """Tests for applying pushed batches."""

    def test_push_requires_changes(self, service):
        """Test that push validates the body."""
        with pytest.raises(InvalidInput):
            service.push({"items": []})

    def test_push_creates_then_updates(self, service, records):
        """Test upsert of notes/r2."""
        service.push({"changes": [wire("title", "x", T1, row_id="r2")]})

        assert records.find("notes", "r2").fields == {"title": "x"}

        service.push({"changes": [wire("title", "y", T2, row_id="r2")]})

        assert records.find("notes", "r2").fields == {"title": "y"}

    def test_push_sets_owner_and_hlc(self, service, records):
        """Test that a created row takes the pushed user and newest HLC."""
        service.push(
            {"changes": [wire("title", "x", T2), wire("body", "b", T1)]}
        )

        record = records.find("notes", "r1")
        assert record.user_id == "u1"
        assert record.hlc == T2

    def test_push_keeps_other_columns(self, service, records):
        """Test that a push only touches the columns it carries."""
        service.push({"changes": [wire("title", "x", T1), wire("body", "b", T1)]})
        service.push({"changes": [wire("title", "y", T2)]})

        assert records.find("notes", "r1").fields == {"title": "y", "body": "b"}

    def test_push_appends_to_log(self, service, change_log):
        """Test that pushed entries become pullable and capture doesn't re-fire."""
        service.push({"changes": [wire("title", "x", T1), wire("body", "b", T1)]})

        entries = change_log.query("u1")

        assert {e.column for e in entries} == {"title", "body"}
        assert change_log.get_stats()["total_entries"] == 2

    def test_push_is_idempotent(self, service, records, change_log):
        """Test that pushing the same batch twice changes nothing more."""
        batch = {"changes": [wire("title", "x", T1), wire("body", "b", T2)]}

        service.push(batch)
        state = records.find("notes", "r1").fields
        service.push(batch)

        assert records.find("notes", "r1").fields == state
        assert change_log.get_stats()["total_entries"] == 2

    def test_push_fold_is_last_in_wins(self, service, records):
        """Test that without compaction the last listed value is applied."""
        service.push({"changes": [wire("title", "newer", T2), wire("title", "older", T1)]})

        assert records.find("notes", "r1").fields["title"] == "older"

    def test_push_compress_keeps_latest(self, service, records):
        """Test that compaction applies the newest value per column."""
        result = service.push(
            {
                "changes": [
                    wire("title", "newer", T2),
                    wire("title", "older", T1),
                    wire("body", "b", T1),
                ]
            },
            compress=True,
        )

        assert result.entries_received == 3
        assert result.entries_applied == 2
        assert records.find("notes", "r1").fields == {"title": "newer", "body": "b"}

    def test_push_compress_keeps_all_columns(self, service, records):
        """Test that compaction never collapses different columns."""
        service.push(
            {"changes": [wire("a", 1, T1), wire("b", 2, T1), wire("c", 3, T2)]},
            compress=True,
        )

        assert records.find("notes", "r1").fields == {"a": 1, "b": 2, "c": 3}

    def test_push_groups_rows(self, service, records):
        """Test a batch touching several rows and tables."""
        result = service.push(
            {
                "changes": [
                    wire("title", "a", T1, row_id="r1"),
                    wire("title", "b", T1, row_id="r2"),
                    wire("done", True, T1, table="todos", row_id="r1"),
                ]
            }
        )

        assert result.rows_applied == 3
        assert records.find("todos", "r1").fields == {"done": True}

    def test_push_deleted_column(self, service, records):
        """Test that a pushed tombstone hides the row from listings."""
        service.push({"changes": [wire("title", "a", T1)]})
        service.push({"changes": [wire("deleted", True, T2)]})

        assert records.find("notes", "r1").deleted
        assert records.list("notes") == []

    def test_push_row_failure_is_isolated(self, service, records):
        """Test that one failing row doesn't stop the others."""
        original_save = RecordStore.save

        def flaky_save(self, record):
            if record.id == "bad":
                raise sqlite3.OperationalError("database is locked")
            return original_save(self, record)

        with patch.object(RecordStore, "save", flaky_save):
            result = service.push(
                {
                    "changes": [
                        wire("title", "x", T1, row_id="bad"),
                        wire("title", "y", T1, row_id="good"),
                    ]
                }
            )

        assert result.rows_applied == 1
        assert result.rows_failed == 1
        assert result.failed_rows == [("notes", "bad")]
        assert records.find("notes", "good").fields == {"title": "y"}

    def test_concurrent_pushes_same_row(self, service, records):
        """Test that concurrent pushes to one row don't lose columns."""

        def push(i):
            return service.push({"changes": [wire(f"col{i}", i, T1)]})

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(push, range(20)))

        assert all(r.rows_failed == 0 for r in results)
        assert records.find("notes", "r1").fields == {f"col{i}": i for i in range(20)}


class TestPull:
    """Tests for serving pull queries."""

    def test_pull_requires_user(self, service):
        """Test that a missing user is rejected."""
        with pytest.raises(InvalidInput, match="user is required"):
            service.pull(None)
        with pytest.raises(InvalidInput, match="user is required"):
            service.pull("")

    def test_pull_filters_user_and_since(self, service, change_log):
        """Test pulling with user=u1 and a timestamp."""
        change_log.append(ChangeEntry("notes", "r1", "title", "old", T1, "u1"))
        marker = change_log.append(ChangeEntry("notes", "r1", "title", "mine", T2, "u1"))
        change_log.append(ChangeEntry("notes", "r9", "title", "theirs", T2, "u2"))
        change_log.append(ChangeEntry("notes", "r5", "title", "shared", T2, ""))

        result = service.pull("u1", since=marker.recorded_at)

        assert [c.value for c in result.changes] == ["shared", "mine"]
        assert result.count == 2
        assert result.compress is False

    def test_pull_empty_since_returns_all(self, service, change_log):
        """Test that an empty timestamp doesn't filter."""
        change_log.append(ChangeEntry("notes", "r1", "title", "a", T1, "u1"))

        assert service.pull("u1", since="").count == 1

    def test_pull_compress(self, service, change_log):
        """Test that compaction keeps the latest entry per column."""
        change_log.append(ChangeEntry("notes", "r1", "title", "a", T1, "u1"))
        change_log.append(ChangeEntry("notes", "r1", "body", "b", T1, "u1"))
        change_log.append(ChangeEntry("notes", "r1", "title", "c", T3, "u1"))
        change_log.append(ChangeEntry("notes", "r1", "title", "stale", T2, "u1"))

        result = service.pull("u1", compress=True)

        assert result.compress is True
        assert {(c.column, c.value) for c in result.changes} == {
            ("title", "c"),
            ("body", "b"),
        }

    def test_pull_compress_tie_keeps_latest_insert(self, service, change_log):
        """Test that equal timestamps resolve the same way as on push."""
        change_log.append(ChangeEntry("notes", "r1", "title", "first", T1, "u1"))
        change_log.append(ChangeEntry("notes", "r1", "title", "second", T1, "u1"))

        result = service.pull("u1", compress=True)

        assert [c.value for c in result.changes] == ["second"]

    def test_pull_compress_is_subset(self, service, change_log):
        """Test that compaction neither invents values nor drops columns."""
        for i, ts in enumerate([T1, T2, T3]):
            change_log.append(ChangeEntry("notes", "r1", "title", f"t{i}", ts, "u1"))
            change_log.append(ChangeEntry("notes", f"r{i}", "body", i, ts, ""))

        full = service.pull("u1").changes
        compacted = service.pull("u1", compress=True).changes

        assert set(compacted) <= set(full)
        assert {c.key for c in compacted} == {c.key for c in full}

    def test_pull_compress_newest_first(self, service, change_log):
        """Test that compacted results keep most-recent-first order."""
        change_log.append(ChangeEntry("notes", "r1", "title", "a", T1, "u1"))
        change_log.append(ChangeEntry("notes", "r2", "title", "b", T1, "u1"))

        result = service.pull("u1", compress=True)

        assert [c.row_id for c in result.changes] == ["r2", "r1"]

    def test_pull_paging(self, service, change_log):
        """Test limit and page."""
        for i in range(3):
            change_log.append(ChangeEntry("notes", "r1", f"c{i}", i, T1, "u1"))

        assert [c.value for c in service.pull("u1", limit=2).changes] == [2, 1]
        assert [c.value for c in service.pull("u1", limit=2, page=1).changes] == [0]

    def test_pull_bad_limit(self, service):
        """Test that an oversized page is rejected."""
        with pytest.raises(InvalidInput):
            service.pull("u1", limit=10_000)

    def test_pull_result_to_dict(self, service, change_log):
        """Test the wire form of a pull."""
        change_log.append(ChangeEntry("notes", "r1", "title", "a", T1, "u1"))

        data = service.pull("u1").to_dict()

        assert data["count"] == 1
        assert data["compress"] is False
        (item,) = data["changes"]
        assert item["table"] == "notes"
        assert item["row_id"] == "r1"
        assert item["column"] == "title"
        assert item["value"] == "a"
        assert item["timestamp"] == T1
        assert item["user_id"] == "u1"
        assert "recorded_at" in item
