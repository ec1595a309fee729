"""Durable local queue of pending mutations awaiting sync.

Every local change to a tracked entity appends one row. Rows are never
edited in place to represent a newer change: a second edit of the same
record is a second row, so the full history is replayed in creation
order when the terminal comes back online.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from ..time_utils import now_timestamp, to_timestamp, utcnow
from .schemas import EntityType, Operation

logger = logging.getLogger(__name__)

# Schema for the local change queue
CHANGE_LOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_queue_record ON sync_queue(entity_type, record_id);
"""

_COLUMNS = (
    "id, change_id, entity_type, record_id, operation, payload, "
    "status, attempts, last_error, created_at, processed_at"
)


class ChangeStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class ChangeLogError(Exception):
    """Raised when a change cannot be durably recorded or updated."""


@dataclass
class ChangeRecord:
    """A single pending local mutation."""

    id: int
    change_id: str
    entity_type: EntityType
    record_id: str
    operation: Operation
    payload: dict[str, Any]
    created_at: str
    status: ChangeStatus = ChangeStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    processed_at: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the push request body."""
        return {
            "entityType": self.entity_type.value,
            "recordId": self.record_id,
            "operation": self.operation.value,
            "changeId": self.change_id,
            "payload": self.payload,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ChangeRecord":
        return cls(
            id=row["id"],
            change_id=row["change_id"],
            entity_type=EntityType(row["entity_type"]),
            record_id=row["record_id"],
            operation=Operation(row["operation"]),
            payload=json.loads(row["payload"]),
            created_at=row["created_at"],
            status=ChangeStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            processed_at=row["processed_at"],
        )


class ChangeLog:
    """SQLite-backed FIFO queue of local changes.

    Single writer (the terminal's mutation handlers) and single reader
    (the sync client). Each call commits before returning.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the change log.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CHANGE_LOG_SCHEMA)
        self._conn.commit()

        logger.info(f"ChangeLog connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute and commit one statement, surfacing failures as ChangeLogError."""
        conn = self._ensure_connected()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise ChangeLogError(str(e)) from e
        return cursor

    def record(
        self,
        entity_type: EntityType | str,
        record_id: str,
        operation: Operation | str,
        payload: dict[str, Any] | None = None,
    ) -> ChangeRecord:
        """Append a pending change.

        Args:
            entity_type: Entity the change belongs to.
            record_id: Primary key of the changed record.
            operation: create, update or delete.
            payload: Entity data (may be empty for deletes).

        Returns:
            The stored ChangeRecord.

        Raises:
            ChangeLogError: If the change could not be written durably.
        """
        change = ChangeRecord(
            id=0,
            change_id=str(uuid.uuid4()),
            entity_type=EntityType(entity_type),
            record_id=record_id,
            operation=Operation(operation),
            payload=payload or {},
            created_at=now_timestamp(),
        )

        cursor = self._execute(
            """
            INSERT INTO sync_queue (
                change_id, entity_type, record_id, operation, payload,
                status, attempts, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                change.change_id,
                change.entity_type.value,
                change.record_id,
                change.operation.value,
                json.dumps(change.payload),
                ChangeStatus.PENDING.value,
                change.created_at,
            ),
        )
        change.id = cursor.lastrowid

        logger.debug(
            f"Recorded {change.operation.value} {change.entity_type.value}/"
            f"{change.record_id} as change {change.change_id}"
        )
        return change

    def list_pending(self, limit: int = 100) -> list[ChangeRecord]:
        """Get pending changes, oldest first.

        Args:
            limit: Maximum changes to return.

        Returns:
            Pending ChangeRecords ordered by creation time.
        """
        conn = self._ensure_connected()

        cursor = conn.execute(
            f"""
            SELECT {_COLUMNS} FROM sync_queue
            WHERE status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (ChangeStatus.PENDING.value, limit),
        )
        return [ChangeRecord.from_row(row) for row in cursor]

    def get(self, change_pk: int) -> ChangeRecord | None:
        conn = self._ensure_connected()
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM sync_queue WHERE id = ?", (change_pk,)
        ).fetchone()
        return ChangeRecord.from_row(row) if row else None

    def mark_processed(self, change_pk: int) -> None:
        self._execute(
            "UPDATE sync_queue SET status = ?, processed_at = ? WHERE id = ?",
            (ChangeStatus.PROCESSED.value, now_timestamp(), change_pk),
        )

    def mark_failed(self, change_pk: int, error: str) -> None:
        """Mark a change as rejected by the server.

        Args:
            change_pk: Queue row id.
            error: Server-reported reason, kept in last_error.
        """
        self._execute(
            """
            UPDATE sync_queue
            SET status = ?, attempts = attempts + 1, last_error = ?
            WHERE id = ?
            """,
            (ChangeStatus.FAILED.value, error, change_pk),
        )

    def record_attempt(self, change_pks: list[int], error: str) -> int:
        """Count a failed delivery attempt without giving up on the changes.

        Used when no response arrived at all; the changes stay pending.

        Returns:
            Number of changes updated.
        """
        if not change_pks:
            return 0

        placeholders = ",".join("?" * len(change_pks))
        cursor = self._execute(
            f"""
            UPDATE sync_queue
            SET attempts = attempts + 1, last_error = ?
            WHERE id IN ({placeholders}) AND status = ?
            """,
            (error, *change_pks, ChangeStatus.PENDING.value),
        )
        return cursor.rowcount

    def remove(self, change_pk: int) -> bool:
        """Permanently delete a processed change.

        Returns:
            True if a row was deleted.
        """
        cursor = self._execute(
            "DELETE FROM sync_queue WHERE id = ? AND status = ?",
            (change_pk, ChangeStatus.PROCESSED.value),
        )
        return cursor.rowcount > 0

    def requeue_failed(self) -> int:
        """Move rejected changes back to pending so they are pushed again.

        Returns:
            Number of changes requeued.
        """
        cursor = self._execute(
            "UPDATE sync_queue SET status = ? WHERE status = ?",
            (ChangeStatus.PENDING.value, ChangeStatus.FAILED.value),
        )
        if cursor.rowcount:
            logger.info(f"Requeued {cursor.rowcount} failed changes")
        return cursor.rowcount

    def count_pending(self) -> int:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COUNT(*) FROM sync_queue WHERE status = ?",
            (ChangeStatus.PENDING.value,),
        ).fetchone()
        return row[0]

    def get_stats(self) -> dict[str, Any]:
        """Get queue statistics.

        Returns:
            Dictionary with counts by status and entity type.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}

        cursor = conn.execute("SELECT COUNT(*) FROM sync_queue")
        stats["total_changes"] = cursor.fetchone()[0]

        cursor = conn.execute(
            "SELECT status, COUNT(*) FROM sync_queue GROUP BY status"
        )
        by_status = {row[0]: row[1] for row in cursor}
        for status in ChangeStatus:
            stats[f"{status.value}_changes"] = by_status.get(status.value, 0)

        cursor = conn.execute(
            "SELECT entity_type, COUNT(*) FROM sync_queue WHERE status = ? GROUP BY entity_type",
            (ChangeStatus.PENDING.value,),
        )
        stats["pending_by_type"] = {row[0]: row[1] for row in cursor}

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats

    def cleanup_processed(self, days: int = 7) -> int:
        """Delete processed changes older than the given age.

        Processed changes are normally removed right after a push; this
        catches rows left behind by an interrupted cycle.

        Returns:
            Number of changes deleted.
        """
        cutoff = to_timestamp(utcnow() - timedelta(days=days))

        cursor = self._execute(
            "DELETE FROM sync_queue WHERE status = ? AND created_at < ?",
            (ChangeStatus.PROCESSED.value, cutoff),
        )

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} processed changes older than {days} days")
        return deleted
