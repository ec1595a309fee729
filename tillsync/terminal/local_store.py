"""Terminal-side SQLite store for catalog, sales and sync state.

Local mutations go through :meth:`LocalStore.save` / :meth:`LocalStore.delete`,
which also append a ChangeRecord to the change log. Pulled rows go through
:meth:`LocalStore.apply_remote`, which applies last-write-wins and never
enqueues a change.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable

from ..sync.change_log import ChangeLog, ChangeRecord
from ..sync.schemas import (
    ENTITY_TABLES,
    PULL_GROUPS,
    EntityType,
    Operation,
    document_to_wire,
    split_wire_row,
)
from ..time_utils import normalize_timestamp, now_timestamp

logger = logging.getLogger(__name__)

ENTITY_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    store_id TEXT,
    data TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_{table}_updated ON {table}(updated_at);
"""

SYNC_STATE_SCHEMA = """
-- Pull watermark per store: server as-of time of the last successful pull
CREATE TABLE IF NOT EXISTS sync_state (
    store_id TEXT PRIMARY KEY,
    last_sync_time TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

ChangeListener = Callable[[ChangeRecord], None]


class LocalStore:
    """Local relational store the point-of-sale screens read and write."""

    def __init__(
        self,
        db_path: str | Path,
        store_id: str,
        change_log: ChangeLog,
    ):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file.
            store_id: Store this terminal belongs to.
            change_log: Queue that receives a ChangeRecord per local mutation.
        """
        self.db_path = Path(db_path).expanduser()
        self.store_id = store_id
        self.change_log = change_log
        self._conn: sqlite3.Connection | None = None
        self._listeners: list[ChangeListener] = []

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        schema = "".join(
            ENTITY_TABLE_TEMPLATE.format(table=table) for table in ENTITY_TABLES.values()
        )
        self._conn.executescript(schema + SYNC_STATE_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked after every recorded local change."""
        self._listeners.append(listener)

    def _notify(self, change: ChangeRecord) -> None:
        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Change listener failed: {e}", exc_info=True)

    # ==================== Local Mutations ====================

    def save(
        self,
        entity_type: EntityType | str,
        record_id: str,
        data: dict[str, Any],
    ) -> ChangeRecord:
        """Create or update a record and queue the change for sync.

        The entity write and the change log append succeed or fail
        together: if the change cannot be recorded, the write is rolled
        back and the ChangeLogError propagates to the caller.

        Args:
            entity_type: Entity being written.
            record_id: Primary key of the record.
            data: Full entity payload (camelCase).

        Returns:
            The queued ChangeRecord.
        """
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]
        conn = self._ensure_connected()
        now = now_timestamp()

        existing = conn.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()

        if existing:
            operation = Operation.UPDATE
            merged = {**json.loads(existing["data"]), **data}
            conn.execute(
                f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(merged), now, record_id),
            )
        else:
            operation = Operation.CREATE
            conn.execute(
                f"""
                INSERT INTO {table} (id, store_id, data, is_active, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (record_id, self.store_id, json.dumps(data), now, now),
            )

        change = self._record_or_rollback(conn, entity_type, record_id, operation, data)
        self._notify(change)
        return change

    def delete(self, entity_type: EntityType | str, record_id: str) -> ChangeRecord | None:
        """Soft-delete a record and queue the delete for sync.

        Returns:
            The queued ChangeRecord, or None if the record does not exist.
        """
        entity_type = EntityType(entity_type)
        table = ENTITY_TABLES[entity_type]
        conn = self._ensure_connected()

        cursor = conn.execute(
            f"UPDATE {table} SET is_active = 0, updated_at = ? WHERE id = ?",
            (now_timestamp(), record_id),
        )
        if cursor.rowcount == 0:
            conn.rollback()
            return None

        change = self._record_or_rollback(conn, entity_type, record_id, Operation.DELETE, {})
        self._notify(change)
        return change

    def _record_or_rollback(
        self,
        conn: sqlite3.Connection,
        entity_type: EntityType,
        record_id: str,
        operation: Operation,
        data: dict[str, Any],
    ) -> ChangeRecord:
        try:
            change = self.change_log.record(entity_type, record_id, operation, data)
        except Exception:
            conn.rollback()
            raise
        conn.commit()
        return change

    # ==================== Reads ====================

    def get(self, entity_type: EntityType | str, record_id: str) -> dict[str, Any] | None:
        """Get one record in wire form, or None."""
        table = ENTITY_TABLES[EntityType(entity_type)]
        conn = self._ensure_connected()

        row = conn.execute(
            f"SELECT * FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return self._row_to_wire(row) if row else None

    def list_records(
        self,
        entity_type: EntityType | str,
        include_inactive: bool = False,
    ) -> list[dict[str, Any]]:
        """List records of one entity type in wire form."""
        table = ENTITY_TABLES[EntityType(entity_type)]
        conn = self._ensure_connected()

        if include_inactive:
            cursor = conn.execute(f"SELECT * FROM {table} ORDER BY created_at")
        else:
            cursor = conn.execute(
                f"SELECT * FROM {table} WHERE is_active = 1 ORDER BY created_at"
            )
        return [self._row_to_wire(row) for row in cursor]

    @staticmethod
    def _row_to_wire(row: sqlite3.Row) -> dict[str, Any]:
        return document_to_wire(
            record_id=row["id"],
            store_id=row["store_id"],
            data=json.loads(row["data"]),
            is_active=row["is_active"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ==================== Remote Merge ====================

    def apply_remote(self, entity_type: EntityType | str, row: dict[str, Any]) -> bool:
        """Merge one pulled row using last-write-wins.

        The incoming row replaces the local one only if its updatedAt is
        strictly newer. Concurrent offline edits therefore resolve to
        whichever side the server stamped last; the other side is dropped
        silently.

        Returns:
            True if the local row was written.
        """
        table = ENTITY_TABLES[EntityType(entity_type)]
        meta, data = split_wire_row(row)
        record_id = meta["id"]
        incoming = normalize_timestamp(meta["updatedAt"])
        if not record_id or not incoming:
            logger.warning(f"Skipping pulled {table} row without id/updatedAt")
            return False

        conn = self._ensure_connected()
        existing = conn.execute(
            f"SELECT updated_at FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()

        if existing and incoming <= existing["updated_at"]:
            return False

        is_active = 1 if meta["isActive"] is None else int(bool(meta["isActive"]))
        created_at = normalize_timestamp(meta["createdAt"]) or incoming
        conn.execute(
            f"""
            INSERT INTO {table} (id, store_id, data, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                store_id = excluded.store_id,
                data = excluded.data,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
            """,
            (
                record_id,
                meta["storeId"] or self.store_id,
                json.dumps(data),
                is_active,
                created_at,
                incoming,
            ),
        )
        conn.commit()
        return True

    def merge_pull(self, changes: dict[str, list[dict[str, Any]]]) -> int:
        """Merge a pull response's grouped rows.

        Args:
            changes: Mapping of group name ("products", ...) to rows.

        Returns:
            Number of rows written locally.
        """
        applied = 0
        for group, entity_type in PULL_GROUPS.items():
            for row in changes.get(group, []):
                if not isinstance(row, dict):
                    logger.warning(f"Skipping pulled {group} entry that is not an object")
                    continue
                try:
                    written = self.apply_remote(entity_type, row)
                except ValueError as e:
                    logger.warning(f"Skipping pulled {group} row {row.get('id')}: {e}")
                    continue
                if written:
                    applied += 1

        if applied:
            logger.info(f"Merged {applied} pulled rows")
        return applied

    # ==================== Watermark ====================

    def get_watermark(self, store_id: str | None = None) -> str | None:
        """Get the pull watermark for a store (defaults to this terminal's store)."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT last_sync_time FROM sync_state WHERE store_id = ?",
            (store_id or self.store_id,),
        ).fetchone()
        return row["last_sync_time"] if row else None

    def set_watermark(self, timestamp: str, store_id: str | None = None) -> str:
        """Advance the pull watermark.

        An older timestamp never replaces a newer one.

        Returns:
            The watermark in effect after the call.
        """
        value = normalize_timestamp(timestamp)
        store_id = store_id or self.store_id
        conn = self._ensure_connected()

        conn.execute(
            """
            INSERT INTO sync_state (store_id, last_sync_time, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(store_id) DO UPDATE SET
                last_sync_time = MAX(sync_state.last_sync_time, excluded.last_sync_time),
                updated_at = excluded.updated_at
            """,
            (store_id, value, now_timestamp()),
        )
        conn.commit()
        return self.get_watermark(store_id)

    def get_stats(self) -> dict[str, Any]:
        """Get record counts per entity table."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {"store_id": self.store_id}
        for table in ENTITY_TABLES.values():
            cursor = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE is_active = 1")
            stats[f"{table}_count"] = cursor.fetchone()[0]

        stats["watermark"] = self.get_watermark()

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
