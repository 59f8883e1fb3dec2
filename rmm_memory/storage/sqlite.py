"""
SQLite key-value backend for buffers and reranker weights.

Uses aiosqlite for async operations. Namespaces are stored as a single
``/``-joined text column; values as JSON.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from rmm_memory.storage.base import (
    BaseKeyValueStore,
    ConnectionError,
    Namespace,
    StorageError,
    validate_namespace,
)


# SQL Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_kv_namespace ON kv_store(namespace);
"""

_NAMESPACE_SEP = "/"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _namespace_key(namespace: Namespace) -> str:
    ns = validate_namespace(namespace)
    if any(_NAMESPACE_SEP in part for part in ns):
        raise StorageError(f"Namespace parts may not contain '{_NAMESPACE_SEP}': {ns!r}")
    return _NAMESPACE_SEP.join(ns)


class SQLiteKeyValueStore(BaseKeyValueStore):
    """
    SQLite-based key-value store.

    Every put is a single-row upsert, so a value is always replaced whole.
    """

    def __init__(self, db_path: Path | str):
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to the database file (parents are created on connect)
        """
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None
        self._connected = False

    async def connect(self) -> None:
        """Open the connection and create the schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(str(self.db_path))
            self._connection.row_factory = aiosqlite.Row

            await self._connection.executescript(SCHEMA)
            await self._connection.commit()

            self._connected = True
        except Exception as e:
            raise StorageError(f"Failed to connect to SQLite: {e}") from e

    async def disconnect(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
        self._connected = False

    async def is_connected(self) -> bool:
        """Check if storage is connected."""
        return self._connected and self._connection is not None

    def _ensure_connected(self) -> aiosqlite.Connection:
        if not self._connected or self._connection is None:
            raise ConnectionError("Not connected to database")
        return self._connection

    async def aget(self, namespace: Namespace, key: str) -> dict[str, Any] | None:
        conn = self._ensure_connected()
        async with conn.execute(
            "SELECT value_json FROM kv_store WHERE namespace = ? AND key = ?",
            (_namespace_key(namespace), key),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value for {namespace}/{key}: {e}") from e

    async def aput(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None:
        conn = self._ensure_connected()
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {namespace}/{key} is not JSON-serializable: {e}") from e
        await conn.execute(
            """
            INSERT INTO kv_store (namespace, key, value_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(namespace, key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_at = excluded.updated_at
            """,
            (_namespace_key(namespace), key, payload, _utcnow()),
        )
        await conn.commit()

    async def adelete(self, namespace: Namespace, key: str) -> None:
        conn = self._ensure_connected()
        await conn.execute(
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
            (_namespace_key(namespace), key),
        )
        await conn.commit()

    async def alist_keys(self, namespace: Namespace) -> list[str]:
        conn = self._ensure_connected()
        async with conn.execute(
            "SELECT key FROM kv_store WHERE namespace = ? ORDER BY key",
            (_namespace_key(namespace),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["key"] for row in rows]

    async def __aenter__(self) -> "SQLiteKeyValueStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
