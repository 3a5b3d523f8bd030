"""
Durable key-value blob store using async SQLite.

Backs the PersistenceGateway. Each key holds one opaque BLOB that is
replaced wholesale on every write; there is no partial update. The store
survives process restarts because it is a SQLite file on disk in WAL mode.

Operations:
- get(key): SELECT the blob for a key, or None.
- set(key, value): UPSERT the blob for a key.
- delete(key): DELETE a key (no-op if absent).
- keys(): list stored keys.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-07: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS blobs (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO blobs (key, value, updated_at) VALUES (?, ?, datetime('now'))
ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
"""

_GET_SQL = "SELECT value FROM blobs WHERE key = ?;"

_DELETE_SQL = "DELETE FROM blobs WHERE key = ?;"

_KEYS_SQL = "SELECT key FROM blobs ORDER BY key ASC;"


class SqliteBlobStore:
    """Key-value store of opaque bytes backed by a SQLite database.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with SqliteBlobStore(path="/data/smartcb.db") as store:
            await store.set("smartcb:events", b"[]")
            blob = await store.get("smartcb:events")
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection.

        After calling close, no further operations should be performed
        on this store instance.
        """
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteBlobStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        """Return the blob stored under *key*, or ``None`` if absent."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_GET_SQL, (key,))
        row = await cursor.fetchone()
        if row is None:
            return None
        value = row[0]
        return value.encode("utf-8") if isinstance(value, str) else bytes(value)

    async def set(self, key: str, value: bytes) -> None:
        """Store *value* under *key*, replacing any previous blob."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_UPSERT_SQL, (key, value))
        await self._db.commit()

    async def delete(self, key: str) -> None:
        """Remove *key*. Nonexistent keys are silently ignored."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_DELETE_SQL, (key,))
        await self._db.commit()

    async def keys(self) -> list[str]:
        """Return all stored keys in ascending order."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_KEYS_SQL)
        rows = await cursor.fetchall()
        return [row[0] for row in rows]
