"""Tests for SQLiteOperationLogStore."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_op
from offsync.errors import OperationNotFoundError, StorageError, StorageFullError
from offsync.storage import OperationLogStore, SQLiteOperationLogStore
from offsync.storage.schema import SCHEMA_VERSION, get_columns
from offsync.types import OperationStatus, SyncHistoryEntry


class TestAppendAndLoad:
    def test_store_satisfies_protocol(self, store):
        assert isinstance(store, OperationLogStore)

    def test_appended_operation_survives_reopen(self, tmp_path):
        """An appended operation is returned by load_pending after a restart."""
        path = tmp_path / "ops.db"
        op = make_op(payload={"title": "hello", "tags": ["a"]}, base_version=3, metadata={"k": 1})
        SQLiteOperationLogStore(path).append(op)

        loaded = SQLiteOperationLogStore(path).load_pending()
        assert len(loaded) == 1
        restored = loaded[0]
        assert restored.id == op.id
        assert restored.payload == {"title": "hello", "tags": ["a"]}
        assert restored.base_version == 3
        assert restored.metadata == {"k": 1}
        assert restored.created_at == op.created_at

    def test_append_assigns_increasing_sequence(self, store):
        first, second = make_op("a"), make_op("b")
        store.append(first)
        store.append(second)
        assert 0 < first.seq < second.seq
        assert [op.id for op in store.load_pending()] == [first.id, second.id]

    def test_sequence_continues_after_reopen(self, tmp_path):
        path = tmp_path / "ops.db"
        first = make_op("a")
        SQLiteOperationLogStore(path).append(first)
        second = make_op("b")
        SQLiteOperationLogStore(path).append(second)
        assert second.seq == first.seq + 1

    def test_duplicate_id_raises_storage_error(self, store):
        op = make_op()
        store.append(op)
        with pytest.raises(StorageError):
            store.append(op)

    def test_quota_exhaustion_raises_storage_full(self, tmp_path):
        """Appends past max_storage_size fail with nothing recorded."""
        store = SQLiteOperationLogStore(tmp_path / "tiny.db", max_storage_size=1024)
        with pytest.raises(StorageFullError):
            store.append(make_op(payload={"body": "x" * 4096}))
        assert store.load_pending() == []


class TestUpdate:
    def test_patch_is_persisted(self, store):
        op = make_op()
        store.append(op)
        retry_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.update(op.id, {"status": OperationStatus.RETRYING, "retry_count": 2, "next_retry_at": retry_at})
        stored = store.get(op.id)
        assert stored.status == OperationStatus.RETRYING
        assert stored.retry_count == 2
        assert stored.next_retry_at == retry_at

    def test_unknown_field_is_rejected(self, store):
        op = make_op()
        store.append(op)
        with pytest.raises(ValueError, match="Cannot patch"):
            store.update(op.id, {"entity_id": "other"})

    def test_missing_operation(self, store):
        with pytest.raises(OperationNotFoundError):
            store.update("nope", {"status": OperationStatus.FAILED})

    def test_remove(self, store):
        op = make_op()
        store.append(op)
        assert store.remove(op.id)
        assert not store.remove(op.id)
        assert store.get(op.id) is None


class TestMaintenance:
    def test_prune_failed_only_removes_old_failures(self, store):
        old, recent, pending = make_op("a"), make_op("b"), make_op("c")
        for op in (old, recent, pending):
            store.append(op)
        now = datetime(2026, 1, 10, tzinfo=timezone.utc)
        store.update(old.id, {"status": OperationStatus.FAILED, "updated_at": now - timedelta(days=8)})
        store.update(recent.id, {"status": OperationStatus.FAILED, "updated_at": now - timedelta(days=1)})

        assert store.prune_failed(now - timedelta(days=7)) == 1
        assert {op.id for op in store.load_pending()} == {recent.id, pending.id}

    def test_count_by_status(self, store):
        a, b = make_op("a"), make_op("b")
        store.append(a)
        store.append(b)
        store.update(b.id, {"status": OperationStatus.FAILED})
        assert store.count_by_status() == {"pending": 1, "failed": 1}

    def test_storage_info_against_quota(self, store):
        info = store.get_storage_info()
        assert info.used > 0
        assert info.quota == 100 * 1024 * 1024
        assert info.used + info.available == info.quota


class TestSettingsAndHistory:
    def test_settings_round_trip(self, store):
        store.save_setting("cfg", {"sync_batch_size": 5})
        assert store.load_setting("cfg") == {"sync_batch_size": 5}
        assert store.load_setting("missing", {}) == {}

    def test_history_is_newest_first_and_bounded(self, store):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            entry = SyncHistoryEntry(
                id=f"h{i}", timestamp=base + timedelta(minutes=i), duration_ms=1.0,
                operations_synced=i, operations_failed=0, bytes_synced=0, success=True,
            )
            store.record_sync_history(entry, keep=3)
        history = store.load_sync_history()
        assert [h.id for h in history] == ["h4", "h3", "h2"]
        assert store.clear_sync_history() == 3
        assert store.load_sync_history() == []


class TestSchema:
    def test_schema_version_recorded(self, store):
        with sqlite3.connect(store.db_path) as conn:
            version = conn.execute("SELECT version FROM schema_version").fetchone()[0]
        assert version == SCHEMA_VERSION

    def test_old_database_is_migrated(self, tmp_path):
        """A v1 operations table gains the columns added since."""
        path = tmp_path / "v1.db"
        with sqlite3.connect(path) as conn:
            conn.execute(
                """CREATE TABLE operations (
                    id TEXT PRIMARY KEY, seq INTEGER NOT NULL, kind TEXT NOT NULL,
                    entity_type TEXT NOT NULL, entity_id TEXT NOT NULL, payload TEXT,
                    created_at TEXT NOT NULL, priority TEXT NOT NULL, retry_count INTEGER,
                    max_retries INTEGER, status TEXT NOT NULL, dependencies TEXT, error TEXT,
                    next_retry_at TEXT, last_attempt_at TEXT, cancel_requested INTEGER,
                    updated_at TEXT)"""
            )
        store = SQLiteOperationLogStore(path)
        with sqlite3.connect(path) as conn:
            columns = get_columns(conn, "operations")
        assert {"base_version", "metadata", "awaiting_resolution", "superseded_by"} <= columns
        store.append(make_op())
        assert len(store.load_pending()) == 1


class TestReadFailures:
    @pytest.fixture
    def damaged(self, store):
        conn = sqlite3.connect(store.db_path)
        conn.executescript("DROP TABLE operations; DROP TABLE settings; DROP TABLE sync_history;")
        conn.close()
        return store

    @pytest.mark.parametrize(
        "read",
        [
            lambda s: s.get("op-1"),
            lambda s: s.load_pending(),
            lambda s: s.count_by_status(),
            lambda s: s.load_setting("anything"),
            lambda s: s.load_sync_history(),
            lambda s: s.clear_sync_history(),
        ],
    )
    def test_sqlite_errors_surface_as_storage_errors(self, damaged, read):
        with pytest.raises(StorageError):
            read(damaged)
