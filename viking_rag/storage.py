"""Ordered key-value storage on SQLite.

One store per logical dataset (``tiered-context``, ``session-memory`` ...),
persisted as ``<cache_dir>/<dataset>.db``. Keys iterate in binary
(lexicographic) order, batches are atomic, and a store that failed to open
degrades to misses and no-ops instead of raising.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from viking_rag.logging import get_logger

log = get_logger(__name__)

# Upper bound for prefix scans: the largest code point sorts after any suffix.
_PREFIX_END = "\U0010ffff"


@dataclass
class BatchOp:
    """One put/delete inside an atomic batch."""

    type: Literal["put", "del"]
    key: str
    value: str | None = None


def put_op(key: str, value: str) -> BatchOp:
    return BatchOp(type="put", key=key, value=value)


def delete_op(key: str) -> BatchOp:
    return BatchOp(type="del", key=key)


class KvStore:
    """Async key-value store backed by one SQLite database file."""

    def __init__(self, cache_dir: Path | str, db_name: str):
        """Initialize the store.

        The database is opened lazily by the first operation; every operation
        awaits that open and sees the same outcome.

        Args:
            cache_dir: Directory holding the database file
            db_name: Dataset name
        """
        self.db_path = Path(cache_dir).expanduser() / f"{db_name}.db"
        self.db_name = db_name
        self._db: aiosqlite.Connection | None = None
        self._state: Literal["pending", "open", "failed", "closed"] = "pending"
        self._open_lock = asyncio.Lock()

    @property
    def is_available(self) -> bool:
        return self._state == "open" and self._db is not None

    async def ensure_ready(self) -> bool:
        """Open the database if needed; return False when it is unavailable."""
        if self._state == "pending":
            async with self._open_lock:
                if self._state == "pending":
                    await self._open()
        return self.is_available

    async def _open(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(self.db_path))
            try:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    ) WITHOUT ROWID
                """)
                await db.commit()
            except Exception:
                await db.close()
                raise
            self._db = db
            self._state = "open"
        except Exception as exc:
            log.warning("Key-value store unavailable", db=str(self.db_path), error=str(exc))
            self._db = None
            self._state = "failed"

    async def get(self, key: str) -> str | None:
        """Return the value for ``key`` or None when absent/unavailable."""
        if not await self.ensure_ready():
            return None
        async with self._db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return None if row is None else str(row[0])

    async def get_json(self, key: str) -> Any | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set(self, key: str, value: str) -> None:
        if not await self.ensure_ready():
            return
        await self._db.execute(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )
        await self._db.commit()

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value, ensure_ascii=False))

    async def delete(self, key: str) -> None:
        """Delete ``key``; deleting an absent key is not an error."""
        if not await self.ensure_ready():
            return
        await self._db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self._db.commit()

    async def has(self, key: str) -> bool:
        return (await self.get(key)) is not None

    async def batch(self, ops: list[BatchOp]) -> None:
        """Apply puts/deletes in order inside one transaction."""
        if not ops or not await self.ensure_ready():
            return
        try:
            for op in ops:
                if op.type == "put" and op.value is not None:
                    await self._db.execute(
                        "INSERT INTO kv (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        (op.key, op.value),
                    )
                elif op.type == "del":
                    await self._db.execute("DELETE FROM kv WHERE key = ?", (op.key,))
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

    async def entries(self, prefix: str | None = None) -> AsyncIterator[tuple[str, str]]:
        """Yield ``(key, value)`` pairs in key order, optionally under ``prefix``."""
        if not await self.ensure_ready():
            return
        if prefix:
            sql = "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key"
            params: tuple[str, ...] = (prefix, prefix + _PREFIX_END)
        else:
            sql = "SELECT key, value FROM kv ORDER BY key"
            params = ()
        async with self._db.execute(sql, params) as cursor:
            async for row in cursor:
                yield str(row[0]), str(row[1])

    async def keys(self, prefix: str | None = None) -> list[str]:
        return [key async for key, _value in self.entries(prefix)]

    async def clear(self, prefix: str | None = None) -> None:
        """Delete every key, or every key under ``prefix``."""
        if not await self.ensure_ready():
            return
        if prefix:
            await self._db.execute(
                "DELETE FROM kv WHERE key >= ? AND key < ?",
                (prefix, prefix + _PREFIX_END),
            )
        else:
            await self._db.execute("DELETE FROM kv")
        await self._db.commit()

    async def close(self) -> None:
        """Release the database handle; later operations report unavailable."""
        async with self._open_lock:
            if self._db is not None:
                await self._db.close()
                self._db = None
            self._state = "closed"
