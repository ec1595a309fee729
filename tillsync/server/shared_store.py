"""Shared multi-store SQLite store behind the sync gateway.

Holds one JSON-document table per tracked entity plus the sync ledger.
Each change is applied and recorded in the ledger inside one
transaction, so a replayed change id is either fully applied once or
not applied at all.
"""

import json
import logging
import sqlite3
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..sync.schemas import (
    ALLOWED_OPERATIONS,
    ENTITY_TABLES,
    PULL_GROUPS,
    ChangeIn,
    EntityType,
    Operation,
    document_to_wire,
    to_wire_keys,
    validate_payload,
)
from ..time_utils import parse_timestamp, to_timestamp, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTITY_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    store_id TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (store_id, id)
);

CREATE INDEX IF NOT EXISTS idx_{table}_store_updated ON {table}(store_id, updated_at);
"""

LEDGER_SCHEMA = """
-- Proof that a client change id was applied. Insert-only.
CREATE TABLE IF NOT EXISTS sync_ledger (
    change_id TEXT PRIMARY KEY,
    store_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    processed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_ledger_store ON sync_ledger(store_id, processed_at);
"""


class ChangeRejectedError(Exception):
    """A well-formed change that cannot be applied (unknown record, bad operation)."""


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float = 0.05,
) -> T:
    """Run a store operation, retrying when SQLite reports a lock.

    Only sqlite3.OperationalError is retried; everything else propagates
    on the first failure.
    """
    for attempt in range(attempts):
        try:
            return func()
        except sqlite3.OperationalError as e:
            if attempt >= attempts - 1:
                raise
            logger.warning(
                f"Store busy ({e}), attempt {attempt + 1}/{attempts}"
            )
            time.sleep(backoff_base * (2 ** attempt))
    raise RuntimeError("unreachable")


class SharedStore:
    """Server-side store shared by every terminal of every store."""

    def __init__(self, db_path: str | Path):
        """Initialize the shared store.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._last_stamp = utcnow()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row

        schema = "".join(
            ENTITY_TABLE_TEMPLATE.format(table=table) for table in ENTITY_TABLES.values()
        )
        self._conn.executescript(schema + LEDGER_SCHEMA)

        logger.info(f"SharedStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def _next_stamp(self) -> str:
        """Server clock reading, strictly increasing across calls.

        Row stamps and pull as-of times come from the same sequence, so a
        write that lands after a pull captured its as-of time always
        compares strictly greater than that as-of time.
        """
        now = utcnow()
        if now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return to_timestamp(now)

    # ==================== Push Side ====================

    def apply_change(self, store_id: str, change: ChangeIn) -> bool:
        """Apply one change and record it in the ledger atomically.

        Args:
            store_id: Store the change belongs to.
            change: Envelope-validated change.

        Returns:
            True if applied now, False if the change id was already in
            the ledger (idempotent replay, nothing re-applied).

        Raises:
            PayloadValidationError: If the payload fails its entity schema.
            ChangeRejectedError: If the change cannot be applied.
        """
        return run_with_retry(lambda: self._apply_change_once(store_id, change))

    def _apply_change_once(self, store_id: str, change: ChangeIn) -> bool:
        change_id = str(change.change_id)

        with self._lock:
            conn = self._ensure_connected()
            conn.execute("BEGIN IMMEDIATE")
            try:
                seen = conn.execute(
                    "SELECT 1 FROM sync_ledger WHERE change_id = ?", (change_id,)
                ).fetchone()
                if seen:
                    conn.execute("ROLLBACK")
                    logger.debug(f"Change {change_id} already applied, skipping")
                    return False

                stamp = self._next_stamp()
                self._apply_entity_effect(conn, store_id, change, stamp)

                conn.execute(
                    """
                    INSERT INTO sync_ledger (
                        change_id, store_id, entity_type, record_id, operation, processed_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        change_id,
                        store_id,
                        change.entity_type.value,
                        change.record_id,
                        change.operation.value,
                        stamp,
                    ),
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return True

    def _apply_entity_effect(
        self,
        conn: sqlite3.Connection,
        store_id: str,
        change: ChangeIn,
        stamp: str,
    ) -> None:
        entity_type = change.entity_type
        operation = change.operation
        table = ENTITY_TABLES[entity_type]

        if operation not in ALLOWED_OPERATIONS[entity_type]:
            raise ChangeRejectedError(
                f"{entity_type.value} does not support {operation.value}"
            )

        existing = conn.execute(
            f"SELECT data, is_active FROM {table} WHERE store_id = ? AND id = ?",
            (store_id, change.record_id),
        ).fetchone()

        if operation is Operation.DELETE:
            if not existing:
                raise ChangeRejectedError(
                    f"{entity_type.value} {change.record_id} not found"
                )
            conn.execute(
                f"UPDATE {table} SET is_active = 0, updated_at = ? WHERE store_id = ? AND id = ?",
                (stamp, store_id, change.record_id),
            )
            return

        incoming = to_wire_keys(entity_type, change.payload or {})
        if existing:
            data = validate_payload(entity_type, {**json.loads(existing["data"]), **incoming})
            # Only an explicit isActive in the payload revives or retires a row
            if "isActive" in incoming:
                is_active = int(bool(data.get("isActive", True)))
            else:
                is_active = existing["is_active"]
            conn.execute(
                f"""
                UPDATE {table} SET data = ?, is_active = ?, updated_at = ?
                WHERE store_id = ? AND id = ?
                """,
                (json.dumps(data), is_active, stamp, store_id, change.record_id),
            )
        else:
            data = validate_payload(entity_type, incoming)
            is_active = int(data.get("isActive", True))
            conn.execute(
                f"""
                INSERT INTO {table} (store_id, id, data, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (store_id, change.record_id, json.dumps(data), is_active, stamp, stamp),
            )

    # ==================== Pull Side ====================

    def changes_since(
        self,
        store_id: str,
        since: str | None,
    ) -> tuple[str, dict[str, list[dict[str, Any]]]]:
        """Collect every pulled entity row updated after ``since``.

        The as-of timestamp is taken before the queries run and under the
        same lock that writers hold, so the next pull starting at it
        cannot miss a write.

        Args:
            store_id: Store to scope the query to.
            since: Exclusive lower bound (ISO-8601), or None for everything.

        Returns:
            Tuple of (as_of timestamp, rows grouped by pull group name).
        """
        since_dt = parse_timestamp(since) if since else None
        since_ts = to_timestamp(since_dt) if since_dt else ""

        with self._lock:
            conn = self._ensure_connected()
            as_of = self._next_stamp()

            grouped: dict[str, list[dict[str, Any]]] = {}
            for group, entity_type in PULL_GROUPS.items():
                table = ENTITY_TABLES[entity_type]
                cursor = conn.execute(
                    f"""
                    SELECT * FROM {table}
                    WHERE store_id = ? AND updated_at > ?
                    """,
                    (store_id, since_ts),
                )
                grouped[group] = [self._row_to_wire(row) for row in cursor]

        return as_of, grouped

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

    # ==================== Lookups ====================

    def get_record(
        self,
        store_id: str,
        entity_type: EntityType | str,
        record_id: str,
    ) -> dict[str, Any] | None:
        table = ENTITY_TABLES[EntityType(entity_type)]
        with self._lock:
            row = self._ensure_connected().execute(
                f"SELECT * FROM {table} WHERE store_id = ? AND id = ?",
                (store_id, record_id),
            ).fetchone()
        return self._row_to_wire(row) if row else None

    def count_records(self, store_id: str, entity_type: EntityType | str) -> int:
        table = ENTITY_TABLES[EntityType(entity_type)]
        with self._lock:
            row = self._ensure_connected().execute(
                f"SELECT COUNT(*) FROM {table} WHERE store_id = ?", (store_id,)
            ).fetchone()
        return row[0]

    def get_ledger_entry(self, change_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._ensure_connected().execute(
                "SELECT * FROM sync_ledger WHERE change_id = ?", (change_id,)
            ).fetchone()
        return dict(row) if row else None

    def count_ledger_entries(self, change_id: str | None = None) -> int:
        with self._lock:
            conn = self._ensure_connected()
            if change_id:
                row = conn.execute(
                    "SELECT COUNT(*) FROM sync_ledger WHERE change_id = ?", (change_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM sync_ledger").fetchone()
        return row[0]

    def get_stats(self) -> dict[str, Any]:
        """Get row counts per table and ledger size."""
        stats: dict[str, Any] = {}
        with self._lock:
            conn = self._ensure_connected()
            for table in ENTITY_TABLES.values():
                stats[f"{table}_count"] = conn.execute(
                    f"SELECT COUNT(*) FROM {table}"
                ).fetchone()[0]
            stats["ledger_entries"] = conn.execute(
                "SELECT COUNT(*) FROM sync_ledger"
            ).fetchone()[0]

        if self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
