"""SQLite-backed operation log store.

Each call opens its own connection through ``_connect()``, so the store can
be shared between the queue, the background loops and the CLI without
holding a connection open across threads.
"""

import contextlib
import json
import logging
import shutil
import sqlite3
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from offsync.errors import OperationNotFoundError, StorageError, StorageFullError
from offsync.types import (
    Operation,
    OperationStatus,
    StorageInfo,
    SyncHistoryEntry,
    format_datetime,
    parse_datetime,
    utc_now,
)

from .base import PATCHABLE_FIELDS
from .schema import init_db

logger = logging.getLogger(__name__)

JSON_FIELDS = frozenset({"payload", "dependencies", "base_version", "metadata"})
DATETIME_FIELDS = frozenset({"created_at", "next_retry_at", "last_attempt_at", "updated_at"})

# SQLite reports a full disk as SQLITE_FULL with this text
_DISK_FULL_MARKERS = ("database or disk is full", "disk is full")


def _storage_error(e: sqlite3.Error, action: str) -> StorageError:
    message = str(e)
    if any(marker in message.lower() for marker in _DISK_FULL_MARKERS):
        return StorageFullError(f"Storage full while trying to {action}: {message}")
    return StorageError(f"Failed to {action}: {message}")


class SQLiteOperationLogStore:
    """Operation log persisted in a single SQLite database file.

    Args:
        db_path: Path to the database file. Parent directories are created.
        max_storage_size: Optional quota in bytes. Appends that would push the
            database past it raise StorageFullError.
    """

    def __init__(self, db_path: Union[str, Path], max_storage_size: Optional[int] = None):
        self.db_path = Path(db_path).expanduser()
        self.max_storage_size = max_storage_size
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory: {e}") from e

        try:
            with self._connect() as conn:
                init_db(conn)
                row = conn.execute("SELECT MAX(seq) FROM operations").fetchone()
                self._last_seq = row[0] or 0
        except sqlite3.Error as e:
            logger.error(f"Could not initialize operation log at {self.db_path}: {e}")
            raise _storage_error(e, "initialize the operation log") from e

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error and always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-call; nothing is held open between calls."""
        pass

    # === Serialization ===

    def _to_json(self, data: Any) -> Optional[str]:
        if data is None:
            return None
        return json.dumps(data, default=str)

    def _from_json(self, s: Optional[str]) -> Any:
        if not s:
            return None
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable JSON column value: {s[:80]!r}")
            return None

    def _serialize_field(self, name: str, value: Any) -> Any:
        if name in JSON_FIELDS:
            return self._to_json(value)
        if name in DATETIME_FIELDS:
            return format_datetime(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return int(value)
        return value

    def _row_to_operation(self, row: sqlite3.Row) -> Operation:
        return Operation(
            id=row["id"],
            seq=row["seq"],
            kind=row["kind"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=self._from_json(row["payload"]),
            created_at=parse_datetime(row["created_at"]) or utc_now(),
            priority=row["priority"],
            retry_count=row["retry_count"] or 0,
            max_retries=row["max_retries"] or 0,
            status=row["status"],
            dependencies=self._from_json(row["dependencies"]) or [],
            error=row["error"],
            base_version=self._from_json(row["base_version"]),
            metadata=self._from_json(row["metadata"]) or {},
            next_retry_at=parse_datetime(row["next_retry_at"]),
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
            cancel_requested=bool(row["cancel_requested"]),
            awaiting_resolution=row["awaiting_resolution"],
            superseded_by=row["superseded_by"],
            updated_at=parse_datetime(row["updated_at"]),
        )

    # === Operations ===

    def append(self, op: Operation) -> None:
        """Persist a new operation, assigning its insert sequence."""
        payload_json = self._to_json(op.payload)
        try:
            with self._connect() as conn:
                if self.max_storage_size is not None:
                    incoming = len(payload_json or "") + len(op.entity_type) + len(op.entity_id)
                    if self._used_bytes() + incoming > self.max_storage_size:
                        raise StorageFullError(
                            f"Operation log quota of {self.max_storage_size} bytes exhausted"
                        )
                seq = self._last_seq + 1
                conn.execute(
                    """INSERT INTO operations
                       (id, seq, kind, entity_type, entity_id, payload, created_at, priority,
                        retry_count, max_retries, status, dependencies, error, base_version,
                        metadata, next_retry_at, last_attempt_at, cancel_requested,
                        awaiting_resolution, superseded_by, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        op.id,
                        seq,
                        op.kind.value,
                        op.entity_type,
                        op.entity_id,
                        payload_json,
                        format_datetime(op.created_at),
                        op.priority.value,
                        op.retry_count,
                        op.max_retries,
                        op.status.value,
                        self._to_json(list(op.dependencies)),
                        op.error,
                        self._to_json(op.base_version),
                        self._to_json(op.metadata),
                        format_datetime(op.next_retry_at),
                        format_datetime(op.last_attempt_at),
                        int(op.cancel_requested),
                        op.awaiting_resolution,
                        op.superseded_by,
                        format_datetime(op.updated_at or utc_now()),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError(f"Operation {op.id} is already stored") from e
        except sqlite3.Error as e:
            logger.error(f"Failed to append operation {op.id}: {e}")
            raise _storage_error(e, f"append operation {op.id}") from e

        self._last_seq = seq
        op.seq = seq

    def update(self, op_id: str, patch: Mapping[str, Any]) -> None:
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch operation fields: {', '.join(sorted(unknown))}")
        if not patch:
            return

        values = dict(patch)
        values.setdefault("updated_at", utc_now())
        columns = sorted(values)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [self._serialize_field(column, values[column]) for column in columns]

        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE operations SET {assignments} WHERE id = ?", (*params, op_id)
                )
                if cursor.rowcount == 0:
                    raise OperationNotFoundError(op_id)
        except sqlite3.Error as e:
            logger.error(f"Failed to update operation {op_id}: {e}")
            raise _storage_error(e, f"update operation {op_id}") from e

    def remove(self, op_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM operations WHERE id = ?", (op_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            logger.error(f"Failed to remove operation {op_id}: {e}")
            raise _storage_error(e, f"remove operation {op_id}") from e

    def get(self, op_id: str) -> Optional[Operation]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM operations WHERE id = ?", (op_id,)).fetchone()
        except sqlite3.Error as e:
            raise _storage_error(e, f"read operation {op_id}") from e
        return self._row_to_operation(row) if row else None

    def load_pending(self) -> List[Operation]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM operations WHERE status != ? ORDER BY seq",
                    (OperationStatus.COMPLETED.value,),
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Could not load the operation log: {e}")
            raise _storage_error(e, "load operations") from e
        return [self._row_to_operation(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT status, COUNT(*) AS count FROM operations GROUP BY status"
                ).fetchall()
        except sqlite3.Error as e:
            raise _storage_error(e, "count operations") from e
        return {row["status"]: row["count"] for row in rows}

    def prune_failed(self, older_than: datetime) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM operations WHERE status = ? AND updated_at < ?",
                    (OperationStatus.FAILED.value, older_than.isoformat()),
                )
                count = cursor.rowcount
        except sqlite3.Error as e:
            raise _storage_error(e, "prune failed operations") from e
        if count:
            logger.info(f"Pruned {count} failed operations older than {older_than.isoformat()}")
        return count

    # === Storage info ===

    def _used_bytes(self) -> int:
        used = 0
        for suffix in ("", "-wal"):
            path = Path(f"{self.db_path}{suffix}")
            if path.exists():
                used += path.stat().st_size
        return used

    def get_storage_info(self) -> StorageInfo:
        used = self._used_bytes()
        if self.max_storage_size is not None:
            available = max(self.max_storage_size - used, 0)
        else:
            available = shutil.disk_usage(self.db_path.parent).free
        return StorageInfo(used=used, available=available, quota=self.max_storage_size)

    # === Settings ===

    def save_setting(self, key: str, value: Any) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, json.dumps(value, default=str), utc_now().isoformat()),
                )
        except sqlite3.Error as e:
            raise _storage_error(e, f"save setting {key}") from e

    def load_setting(self, key: str, default: Any = None) -> Any:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise _storage_error(e, f"load setting {key}") from e
        if row is None:
            return default
        value = self._from_json(row["value"])
        return default if value is None else value

    # === Sync history ===

    def record_sync_history(self, entry: SyncHistoryEntry, keep: int = 100) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO sync_history
                       (id, timestamp, duration_ms, operations_synced, operations_failed,
                        bytes_synced, success, errors)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.id,
                        entry.timestamp.isoformat(),
                        entry.duration_ms,
                        entry.operations_synced,
                        entry.operations_failed,
                        entry.bytes_synced,
                        int(entry.success),
                        json.dumps(entry.errors),
                    ),
                )
                conn.execute(
                    """DELETE FROM sync_history WHERE id NOT IN
                       (SELECT id FROM sync_history ORDER BY timestamp DESC LIMIT ?)""",
                    (keep,),
                )
        except sqlite3.Error as e:
            raise _storage_error(e, "record sync history") from e

    def load_sync_history(self, limit: int = 100) -> List[SyncHistoryEntry]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM sync_history ORDER BY timestamp DESC LIMIT ?", (limit,)
                ).fetchall()
        except sqlite3.Error as e:
            raise _storage_error(e, "load sync history") from e
        return [
            SyncHistoryEntry(
                id=row["id"],
                timestamp=parse_datetime(row["timestamp"]) or utc_now(),
                duration_ms=row["duration_ms"] or 0.0,
                operations_synced=row["operations_synced"] or 0,
                operations_failed=row["operations_failed"] or 0,
                bytes_synced=row["bytes_synced"] or 0,
                success=bool(row["success"]),
                errors=self._from_json(row["errors"]) or [],
            )
            for row in rows
        ]

    def clear_sync_history(self) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM sync_history")
                return cursor.rowcount
        except sqlite3.Error as e:
            raise _storage_error(e, "clear sync history") from e
