"""Keyword (BM25) search over indexed documents.

Documents live in an SQLite FTS5 table ranked with ``bm25()``. Identifiers
are also indexed split at camelCase and snake_case boundaries, so a query
for ``kv store`` finds ``KvStore``. Used when no embedding backend is
available and to confirm directory-boosted semantic results.
"""

import asyncio
import math
import re
import sqlite3
from pathlib import Path
from typing import Literal

import aiosqlite

from viking_rag.embeddings import SearchHit
from viking_rag.logging import get_logger
from viking_rag.workspace import WorkspaceDocument

log = get_logger(__name__)

DATASET_NAME = "keyword-index"

_STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
    "it", "of", "on", "or", "that", "the", "this", "to", "was", "were", "with",
}

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")


def split_identifier_terms(text: str) -> list[str]:
    """Lower-cased camelCase/snake_case parts of every identifier in ``text``."""
    terms: list[str] = []
    seen: set[str] = set()
    for identifier in _IDENTIFIER_RE.findall(text):
        for part in _CAMEL_RE.sub(r"\1 \2", identifier).replace("_", " ").lower().split():
            if len(part) >= 2 and part not in seen:
                seen.add(part)
                terms.append(part)
    return terms


def build_fts_query(query: str) -> str | None:
    raw_tokens = [token for token in re.findall(r"\w+", query.lower()) if token]
    raw_tokens += [term for term in split_identifier_terms(query) if term not in raw_tokens]
    tokens = [token for token in raw_tokens if len(token) >= 3 and token not in _STOPWORDS]
    if not tokens:
        tokens = [token for token in raw_tokens if len(token) >= 2]
    if not tokens:
        return None
    return " OR ".join(f'"{token.replace(chr(34), "")}"' for token in tokens)


class KeywordIndex:
    """FTS5 document index; degrades to empty results when SQLite cannot open it."""

    def __init__(self, cache_dir: Path | str, db_name: str = DATASET_NAME):
        self.db_path = Path(cache_dir).expanduser() / f"{db_name}.db"
        self._db: aiosqlite.Connection | None = None
        self._state: Literal["pending", "open", "failed", "closed"] = "pending"
        self._open_lock = asyncio.Lock()
        self._hashes: dict[str, str] = {}

    @property
    def is_available(self) -> bool:
        return self._state == "open" and self._db is not None

    @property
    def size(self) -> int:
        return len(self._hashes)

    async def ensure_ready(self) -> bool:
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
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        path TEXT PRIMARY KEY,
                        hash TEXT NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts
                    USING fts5(path UNINDEXED, content, terms)
                """)
                await db.commit()
                async with db.execute("SELECT path, hash FROM documents") as cursor:
                    hashes = {str(row[0]): str(row[1]) async for row in cursor}
            except Exception:
                await db.close()
                raise
            self._db = db
            self._hashes = hashes
            self._state = "open"
        except Exception as exc:
            log.warning("Keyword index unavailable", db=str(self.db_path), error=str(exc))
            self._db = None
            self._state = "failed"

    async def update(self, docs: list[WorkspaceDocument]) -> int:
        """Index documents whose hash changed; returns how many were (re)indexed."""
        if not await self.ensure_ready():
            return 0
        changed = [doc for doc in docs if self._hashes.get(doc.path) != doc.hash]
        if not changed:
            return 0
        try:
            for doc in changed:
                terms = " ".join(split_identifier_terms(f"{doc.path}\n{doc.content}"))
                await self._db.execute("DELETE FROM documents_fts WHERE path = ?", (doc.path,))
                await self._db.execute(
                    "INSERT INTO documents_fts (path, content, terms) VALUES (?, ?, ?)",
                    (doc.path, doc.content, terms),
                )
                await self._db.execute(
                    "INSERT INTO documents (path, hash) VALUES (?, ?) "
                    "ON CONFLICT(path) DO UPDATE SET hash = excluded.hash",
                    (doc.path, doc.hash),
                )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        for doc in changed:
            self._hashes[doc.path] = doc.hash
        log.debug("Keyword index updated", documents=len(changed))
        return len(changed)

    async def search(self, query: str, top_k: int = 10, paths: list[str] | None = None) -> list[SearchHit]:
        """BM25-ranked hits, optionally restricted to ``paths``; scores fall in (0, 1)."""
        fts_query = build_fts_query(query)
        if fts_query is None or top_k <= 0 or not await self.ensure_ready():
            return []
        allowed = set(paths) if paths is not None else None
        try:
            async with self._db.execute(
                "SELECT path, bm25(documents_fts) AS rank FROM documents_fts "
                "WHERE documents_fts MATCH ? ORDER BY rank ASC",
                (fts_query,),
            ) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            log.warning("Keyword search failed", query=query, error=str(exc))
            return []

        hits: list[SearchHit] = []
        for path, rank in rows:
            if allowed is not None and path not in allowed:
                continue
            # bm25() is negative; more negative ranks better
            relevance = -float(rank) if isinstance(rank, (int, float)) and math.isfinite(rank) else 0.0
            score = relevance / (1.0 + relevance) if relevance > 0 else 0.0
            hits.append(SearchHit(path=str(path), score=score))
            if len(hits) >= top_k:
                break
        return hits

    async def clear(self) -> None:
        if not await self.ensure_ready():
            return
        await self._db.execute("DELETE FROM documents_fts")
        await self._db.execute("DELETE FROM documents")
        await self._db.commit()
        self._hashes.clear()

    async def close(self) -> None:
        async with self._open_lock:
            if self._db is not None:
                await self._db.close()
                self._db = None
            self._state = "closed"
