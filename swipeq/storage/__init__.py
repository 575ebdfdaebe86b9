"""Storage - durable key-value persistence for client state"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from swipeq.infrastructure.database import create_connection, db_transaction, retry_on_db_lock
from swipeq.observability.logging import get_logger
from swipeq.observability.telemetry import counter

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class KeyValueStore:
    """
    String-keyed JSON store backed by one SQLite table.

    Holds the automation-by-profile map, the unacknowledged URL list, the
    snapshot cache and pending swipe batches so they survive restarts.
    Reads and writes are synchronous; they never touch the network.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        """
        Open the connection and create the table if needed. Idempotent.

        Side Effects:
            - Opens SQLite connection
            - Creates kv_store table
        """
        if self._conn is not None:
            return
        self._conn = create_connection(self.db_path)
        with db_transaction(self._conn) as conn:
            conn.execute(_SCHEMA)
        logger.debug("Opened state store at %s", self.db_path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("KeyValueStore is not open")
        return self._conn

    def get_item(self, key: str) -> str | None:
        conn = self._require_conn()
        row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @retry_on_db_lock()
    def set_item(self, key: str, value: str) -> None:
        """
        Upsert a raw string value.

        Side Effects:
            - Writes to kv_store table, committed immediately
        """
        conn = self._require_conn()
        with db_transaction(conn):
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, value, datetime.now(UTC).isoformat()),
            )
        counter("storage.write")

    @retry_on_db_lock()
    def remove_item(self, key: str) -> None:
        conn = self._require_conn()
        with db_transaction(conn):
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        conn = self._require_conn()
        rows = conn.execute(
            "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (prefix.replace("%", r"\%").replace("_", r"\_") + "%",),
        ).fetchall()
        return [row["key"] for row in rows]

    def get_json(self, key: str, default: Any = None) -> Any:
        """
        Decode a stored JSON value.

        A corrupt value is logged and treated as absent so a bad write never
        prevents a warm start.
        """
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            counter("storage.decode_error")
            logger.warning("Discarding unreadable value for %s: %s", key, e)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value))


__all__ = ["KeyValueStore"]
