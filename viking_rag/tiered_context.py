"""Tiered resource context: L0 one-line digests and L1 detailed digests.

L2 is the raw file content and is never stored here. Tiers are memoized
by content hash in an in-memory mirror, which serves every read; the
key-value store is a write-behind replica under the ``vk:`` prefix.
"""

import json
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from viking_rag.code_parser import CodeStructure, parse_code_structure
from viking_rag.context_generator import describe_structure
from viking_rag.logging import get_logger
from viking_rag.storage import BatchOp, KvStore, put_op
from viking_rag.workspace import WorkspaceDocument

log = get_logger(__name__)

TIER_PREFIX = "vk:"
DATASET_NAME = "tiered-context"
EXCERPT_LINES = 60
MAX_L1_IMPORTS = 15

Parser = Callable[[str, str], CodeStructure]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ResourceTier:
    """L0/L1 digests and parsed structure of one resource at one content hash."""

    path: str
    hash: str
    l0: str
    l1: str
    structure: CodeStructure
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "hash": self.hash,
            "l0": self.l0,
            "l1": self.l1,
            "structure": self.structure.to_dict(),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: str = "") -> "ResourceTier":
        return cls(
            path=str(data.get("path") or path),
            hash=str(data["hash"]),
            l0=str(data["l0"]),
            l1=str(data["l1"]),
            structure=CodeStructure.from_dict(data.get("structure") or {}),
            updated_at=str(data.get("updated_at") or data.get("updatedAt") or ""),
        )


@dataclass
class TieredContextStats:
    total_resources: int
    l0_total_tokens: int
    l1_total_tokens: int


def _split_path(path: str) -> tuple[str, str]:
    posix = PurePosixPath(path.replace("\\", "/"))
    return posix.name or path, posix.suffix.lower()


def build_l0(path: str, structure: CodeStructure) -> str:
    file_name, _ext = _split_path(path)
    parts = [f"[{file_name}]"]
    if structure.kind != "unknown":
        parts.append(f"type:{structure.kind}")
    if structure.classes:
        parts.append(f"cls:{','.join(structure.classes[:3])}")
    if structure.functions:
        parts.append(f"fn:{','.join(structure.functions[:5])}")
    if structure.exports:
        parts.append(f"exp:{','.join(structure.exports[:3])}")
    return " ".join(parts)


def build_l1(path: str, content: str, structure: CodeStructure, summary: str) -> str:
    _file_name, ext = _split_path(path)
    parts = [f"# {path}", f"Type: {structure.kind} | {ext}"]
    if summary:
        parts.append(f"Summary: {summary}")
    if structure.classes:
        parts.append(f"Classes: {', '.join(structure.classes)}")
    if structure.functions:
        parts.append(f"Functions: {', '.join(structure.functions)}")
    if structure.imports:
        parts.append(f"Imports: {', '.join(structure.imports[:MAX_L1_IMPORTS])}")
    if structure.exports:
        parts.append(f"Exports: {', '.join(structure.exports)}")
    excerpt = "\n".join(content.split("\n")[:EXCERPT_LINES])
    if excerpt and structure.kind != "config":
        parts.append(f"```{ext[1:] or 'text'}\n{excerpt}\n```")
    return "\n".join(parts)


class TieredContextStore:
    """In-memory tier mirror with a write-behind key-value replica."""

    def __init__(
        self,
        cache_dir: Path | str,
        *,
        parser: Parser = parse_code_structure,
        flush_every: int = 50,
        store: KvStore | None = None,
    ):
        self.store = store or KvStore(cache_dir, DATASET_NAME)
        self.parser = parser
        self.flush_every = max(1, int(flush_every))
        self._tiers: dict[str, ResourceTier] = {}
        self._pending: dict[str, ResourceTier] = {}

    async def init(self) -> int:
        """Load every persisted tier into memory; corrupt entries are skipped."""
        loaded = 0
        async for key, value in self.store.entries(TIER_PREFIX):
            path = key[len(TIER_PREFIX) :]
            try:
                self._tiers[path] = ResourceTier.from_dict(json.loads(value), path=path)
            except (ValueError, KeyError, TypeError) as exc:
                log.debug("Skipping corrupt tier entry", path=path, error=str(exc))
                continue
            loaded += 1
        log.debug("Tiered context loaded", resources=loaded, available=self.store.is_available)
        return loaded

    def _is_current(self, path: str, content_hash: str) -> ResourceTier | None:
        tier = self._tiers.get(path)
        if tier is not None and tier.hash == content_hash:
            return tier
        return None

    def _build(self, path: str, content: str, content_hash: str, summary: str | None) -> ResourceTier:
        structure = self.parser(content, path)
        tier = ResourceTier(
            path=path,
            hash=content_hash,
            l0=build_l0(path, structure),
            l1=build_l1(path, content, structure, summary or describe_structure(structure, path)),
            structure=structure,
            updated_at=_utcnow_iso(),
        )
        self._tiers[path] = tier
        return tier

    async def generate_tier(
        self,
        path: str,
        content: str,
        content_hash: str,
        *,
        summary: str | None = None,
    ) -> ResourceTier:
        """Return the tier for ``path`` at ``content_hash``, building it on a miss."""
        cached = self._is_current(path, content_hash)
        if cached is not None:
            return cached
        tier = self._build(path, content, content_hash, summary)
        self._pending[path] = tier
        if len(self._pending) >= self.flush_every:
            await self.flush()
        return tier

    async def batch_generate(
        self,
        docs: list[WorkspaceDocument],
        on_progress: Callable[[int, int], None] | None = None,
        summaries: Mapping[str, str] | None = None,
    ) -> int:
        """Build tiers for every changed document; returns how many were built."""
        generated = 0
        ops: list[BatchOp] = []
        total = len(docs)
        for index, doc in enumerate(docs, start=1):
            if self._is_current(doc.path, doc.hash) is None:
                summary = summaries.get(doc.path) if summaries else None
                tier = self._build(doc.path, doc.content, doc.hash, summary)
                self._pending.pop(doc.path, None)
                ops.append(put_op(TIER_PREFIX + doc.path, json.dumps(tier.to_dict(), ensure_ascii=False)))
                generated += 1
                if len(ops) >= self.flush_every:
                    await self.store.batch(ops)
                    ops = []
            if on_progress is not None:
                on_progress(index, total)
        if ops:
            await self.store.batch(ops)
        log.info("Tier generation finished", generated=generated, total=total)
        return generated

    async def flush(self) -> int:
        """Persist tiers built by single ``generate_tier`` calls."""
        if not self._pending:
            return 0
        pending = list(self._pending.values())
        self._pending = {}
        await self.store.batch(
            [put_op(TIER_PREFIX + tier.path, json.dumps(tier.to_dict(), ensure_ascii=False)) for tier in pending]
        )
        return len(pending)

    def get_tier(self, path: str) -> ResourceTier | None:
        return self._tiers.get(path)

    def get_l0_batch(self, paths: list[str]) -> str:
        return "\n".join(self._tiers[p].l0 for p in paths if p in self._tiers)

    def get_l1_batch(self, paths: list[str]) -> str:
        return "\n---\n".join(self._tiers[p].l1 for p in paths if p in self._tiers)

    def get_directory_l0(self, dir_prefix: str) -> str:
        """L0 lines of every path starting with ``dir_prefix`` (plain string prefix)."""
        return "\n".join(tier.l0 for path, tier in self._tiers.items() if path.startswith(dir_prefix))

    def get_all_paths(self) -> list[str]:
        return list(self._tiers)

    def get_stats(self) -> TieredContextStats:
        return TieredContextStats(
            total_resources=len(self._tiers),
            l0_total_tokens=sum(math.ceil(len(t.l0) / 4) for t in self._tiers.values()),
            l1_total_tokens=sum(math.ceil(len(t.l1) / 4) for t in self._tiers.values()),
        )

    async def clear(self) -> None:
        self._tiers.clear()
        self._pending.clear()
        await self.store.clear(TIER_PREFIX)

    async def close(self) -> None:
        await self.flush()
        await self.store.close()
