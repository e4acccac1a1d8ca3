"""RAG engine facade wiring tiers, embeddings, session memory and compression."""

import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from viking_rag.config import Config
from viking_rag.context_generator import ContextGenerator
from viking_rag.embeddings import DownloadCallback, EmbeddingEngine, SearchHit
from viking_rag.exceptions import ModelLoadError
from viking_rag.history import (
    CompressionResult,
    Exchange,
    compress_chat_history,
    compress_chat_history_by_tokens,
    get_model_context_limit,
)
from viking_rag.keyword_index import KeywordIndex
from viking_rag.logging import get_logger
from viking_rag.session_memory import SessionMemory, UserPreference
from viking_rag.tiered_context import TieredContextStore
from viking_rag.workspace import WorkspaceDocument

log = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]

# Top semantic directories whose keyword-matching files join the results.
BOOSTED_DIRECTORIES = 3
DIRECTORY_BOOST_SCORE = 0.3


@dataclass
class IndexResult:
    tiers_generated: int
    embeddings_computed: int
    total_documents: int
    keywords_indexed: int = 0


def _directory(path: str) -> str:
    return posixpath.dirname(path)


class RagEngine:
    """Facade over the tiered context store, embedding engine and session memory."""

    def __init__(
        self,
        *,
        tiers: TieredContextStore,
        embeddings: EmbeddingEngine,
        memory: SessionMemory,
        keywords: KeywordIndex,
        context_generator: ContextGenerator | None = None,
        config: Config | None = None,
    ):
        self.tiers = tiers
        self.embeddings = embeddings
        self.memory = memory
        self.keywords = keywords
        self.context_generator = context_generator
        self.config = config or Config()
        self.embedding_error: ModelLoadError | None = None
        self._started = False

    async def start(self) -> bool:
        """Load persisted state and pick an embedding backend.

        Returns whether embeddings are available. A local model that cannot
        be loaded leaves the engine without embeddings; tiers, keyword search
        and memory keep working. The failure is kept in ``embedding_error``.
        """
        if self._started:
            return self.embeddings.is_available
        await self.tiers.init()
        await self.memory.init()
        self._started = True
        try:
            return await self.embeddings.initialize()
        except ModelLoadError as exc:
            self.embedding_error = exc
            log.warning("Embeddings unavailable; continuing without them", error=str(exc))
            return False

    async def index_documents(
        self,
        docs: list[WorkspaceDocument],
        on_progress: ProgressCallback | None = None,
    ) -> IndexResult:
        """Build tiers for changed documents, then preload their embeddings."""

        def stage(name: str) -> Callable[[int, int], None] | None:
            if on_progress is None:
                return None
            return lambda current, total: on_progress(name, current, total)

        summaries: dict[str, str] | None = None
        generator = self.context_generator
        if generator is not None and generator.enabled:
            changed = [
                (doc.path, doc.content)
                for doc in docs
                if (tier := self.tiers.get_tier(doc.path)) is None or tier.hash != doc.hash
            ]
            results = await generator.batch_generate(
                changed,
                stage("describe"),
                concurrency=self.config.context.llm_concurrency,
                delay=self.config.context.llm_delay_ms / 1000.0,
            )
            summaries = {path: result.context for path, result in results.items()}

        generated = await self.tiers.batch_generate(docs, stage("tiers"), summaries=summaries)
        keywords = await self.keywords.update(docs)
        computed = 0
        if self.embeddings.is_available:
            computed = await self.embeddings.preload_embeddings(docs, stage("embeddings"))
        else:
            log.info("Embeddings unavailable; indexed tiers and keywords only", documents=len(docs))
        return IndexResult(
            tiers_generated=generated,
            embeddings_computed=computed,
            total_documents=len(docs),
            keywords_indexed=keywords,
        )

    async def search(self, query: str, docs: list[WorkspaceDocument], top_k: int = 10) -> list[SearchHit]:
        """Semantic search with a directory boost; BM25 keyword search without embeddings."""
        paths = [doc.path for doc in docs]
        if not self.embeddings.is_available:
            await self.keywords.update(docs)
            return await self.keywords.search(query, top_k, paths=paths)

        hits = await self.embeddings.semantic_search(query, docs, top_k=top_k * 3)
        if len(hits) <= top_k:
            return hits

        # Files in the best-scoring directories that also match the query
        # keywords get a fixed score, even when ranked out semantically.
        dir_scores: dict[str, float] = {}
        for hit in hits:
            directory = _directory(hit.path)
            if directory:
                dir_scores[directory] = dir_scores.get(directory, 0.0) + hit.score
        top_dirs = sorted(dir_scores, key=lambda d: dir_scores[d], reverse=True)[:BOOSTED_DIRECTORIES]
        seen = {hit.path for hit in hits}
        candidates = [
            path
            for path in paths
            if path not in seen and any(path.startswith(d + "/") for d in top_dirs)
        ]
        if candidates:
            await self.keywords.update(docs)
            matched = await self.keywords.search(query, len(candidates), paths=candidates)
            hits.extend(SearchHit(path=hit.path, score=DIRECTORY_BOOST_SCORE) for hit in matched)
            hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:top_k]

    async def observe_user_message(self, message: str, conversation_id: str) -> list[UserPreference]:
        return await self.memory.extract_from_user_message(message, conversation_id)

    def build_prompt_context(self, paths: list[str], memory_tokens: int | None = None) -> str:
        """L0 digests of ``paths`` followed by the rendered session memory."""
        sections: list[str] = []
        l0 = self.tiers.get_l0_batch(paths)
        if l0:
            sections.append(f"## Project Files\n{l0}")
        budget = memory_tokens if memory_tokens is not None else self.config.memory.max_prompt_tokens
        memory_prompt = self.memory.build_memory_prompt(budget)
        if memory_prompt:
            sections.append(memory_prompt)
        return "\n\n".join(sections)

    def compress_history(self, history: list[Exchange], model: str | None = None) -> CompressionResult:
        """Count-based compression, or token-based when ``model`` is given."""
        cfg = self.config.compression
        if model:
            return compress_chat_history_by_tokens(
                history,
                token_limit=get_model_context_limit(model),
                target_usage=cfg.target_usage,
                threshold=cfg.threshold,
            )
        return compress_chat_history(
            history,
            keep_recent_count=cfg.keep_recent_count,
            max_history_length=cfg.max_history_length,
        )

    async def close(self) -> None:
        await self.tiers.close()
        await self.memory.close()
        await self.keywords.close()
        await self.embeddings.close()
        if self.context_generator is not None:
            await self.context_generator.close()


def create_rag_engine(
    config: Config,
    *,
    runtime_base: Path | str | None = None,
    on_download_progress: DownloadCallback | None = None,
    **embedding_kwargs: Any,
) -> RagEngine:
    """Create a RAG engine from runtime config."""
    cache_dir = config.resolved_cache_dir(runtime_base)
    embeddings = EmbeddingEngine.from_config(
        config.embeddings,
        cache_dir,
        on_download_progress=on_download_progress,
        **embedding_kwargs,
    )
    ctx = config.context
    context_generator = None
    if ctx.llm_provider and ctx.llm_api_key:
        context_generator = ContextGenerator(
            ctx.llm_provider,
            ctx.llm_api_key,
            ctx.llm_base_url,
            ctx.llm_model,
            max_content_chars=ctx.llm_max_content_chars,
        )
    return RagEngine(
        tiers=TieredContextStore(cache_dir, flush_every=ctx.flush_every),
        embeddings=embeddings,
        memory=SessionMemory(cache_dir),
        keywords=KeywordIndex(cache_dir),
        context_generator=context_generator,
        config=config,
    )
