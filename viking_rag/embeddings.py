"""Embedding engine with remote/local backends and a per-backend vector cache.

Remote mode talks to an OpenAI-compatible ``/embeddings`` endpoint; local
mode runs a sentence-transformers model (mean pooling, normalized output).
Vectors are cached per document path + content hash in one JSON file per
backend identity, so switching providers or models never mixes
dimensionalities.
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import re
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

import httpx

from viking_rag.embedding_models import (
    DEFAULT_LOCAL_MODEL,
    EmbeddingProviderSpec,
    LocalModelSpec,
    get_local_model,
    resolve_provider,
)
from viking_rag.exceptions import (
    ConfigurationError,
    EmbeddingAPIError,
    EmbeddingError,
    ModelDownloadCancelledError,
    ModelLoadError,
)
from viking_rag.logging import get_logger
from viking_rag.workspace import WorkspaceDocument

log = get_logger(__name__)

REMOTE_BATCH_SIZE = 20
PORTABLE_DEVICE = "cpu"

# Binary-loader symptoms of the accelerated backend; retried on CPU.
_NATIVE_BACKEND_ERRORS = re.compile(
    r"cuda|cudnn|cublas|dlopen|shared object|\.so\b|\.dll\b|dll load failed|"
    r"undefined symbol|libtorch|mps backend|no kernel image",
    re.IGNORECASE,
)
# Deserialization symptoms of a damaged cached artifact; deleted and reloaded.
_CORRUPTED_ARTIFACT_ERRORS = re.compile(
    r"protobuf parsing failed|invalid load key|unpickling|error while deserializing|"
    r"headertoolarge|incomplete metadata|unexpected eof|corrupt|not a zip file|"
    r"unable to load weights|expecting value",
    re.IGNORECASE,
)


@dataclass
class DownloadProgress:
    """One model-download progress event."""

    stage: Literal["initiate", "download", "progress", "done"]
    model_id: str
    percent: float | None = None


@dataclass
class SearchHit:
    """One semantic search result."""

    path: str
    score: float


DownloadCallback = Callable[[DownloadProgress], None]
ProgressCallback = Callable[[int, int], None]


class Embedder(Protocol):
    identity: str

    async def embed(self, text: str) -> list[float] | None:
        """Return one embedding, or None when it cannot be produced."""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product over the product of L2 norms; 0.0 for a zero norm or length mismatch."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0 or not math.isfinite(magnitude):
        return 0.0
    return dot / magnitude


class RemoteEmbedder:
    """OpenAI-compatible embeddings over HTTP with client-side rate limiting."""

    def __init__(
        self,
        spec: EmbeddingProviderSpec,
        api_key: str,
        *,
        min_interval: float = 0.1,
        timeout: float = 30.0,
        batch_timeout: float = 60.0,
        batch_size: int = REMOTE_BATCH_SIZE,
    ):
        self.spec = spec
        self.api_key = api_key.strip()
        self.min_interval = max(0.0, float(min_interval))
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self.batch_size = max(1, int(batch_size))
        self.client = httpx.AsyncClient(timeout=timeout)
        self._last_call = 0.0
        self._throttle_lock = asyncio.Lock()

    @property
    def identity(self) -> str:
        return self.spec.name

    @property
    def model(self) -> str:
        return self.spec.default_model

    def _truncate(self, text: str) -> str:
        return text[: self.spec.max_input_tokens * 2]

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self._last_call + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    async def _request(self, inputs: str | list[str], timeout: float) -> list[list[float]]:
        await self._throttle()
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        body = {"model": self.model, "input": inputs}
        try:
            response = await self.client.post(self.spec.base_url, json=body, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            raise EmbeddingAPIError(f"Embedding HTTP error ({self.identity}): {e}")

        if response.status_code != 200:
            raise EmbeddingAPIError(
                f"Embedding API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingError(f"Embedding response decode error: {e}")

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or not data:
            raise EmbeddingError("Embedding response missing 'data' list")
        try:
            rows = sorted(
                (row for row in data if isinstance(row, dict)),
                key=lambda row: int(row.get("index", 0)),
            )
            vectors: list[list[float]] = []
            for row in rows:
                embedding = row.get("embedding")
                if not isinstance(embedding, list) or not embedding:
                    raise EmbeddingError("Embedding row missing list 'embedding'")
                vectors.append([float(v) for v in embedding])
        except (TypeError, ValueError) as e:
            raise EmbeddingError(f"Malformed embedding response ({self.identity}): {e}")
        return vectors

    async def embed_strict(self, text: str) -> list[float]:
        """Embed one text, raising EmbeddingError on any failure."""
        vectors = await self._request(self._truncate(text), self.timeout)
        return vectors[0]

    async def embed(self, text: str) -> list[float] | None:
        try:
            return await self.embed_strict(text)
        except EmbeddingError as exc:
            log.warning("Remote embedding failed", provider=self.identity, error=str(exc))
            return None

    async def embed_batch(self, texts: list[str]) -> list[list[float] | None]:
        """Embed many texts in fixed-size batches, keeping input order.

        A failed batch is retried item by item so one bad input only loses
        its own slot.
        """
        results: list[list[float] | None] = [None] * len(texts)
        for offset in range(0, len(texts), self.batch_size):
            chunk = texts[offset : offset + self.batch_size]
            try:
                vectors = await self._request([self._truncate(t) for t in chunk], self.batch_timeout)
                if len(vectors) != len(chunk):
                    raise EmbeddingError(
                        f"Embedding batch size mismatch: sent {len(chunk)}, got {len(vectors)}"
                    )
                results[offset : offset + len(chunk)] = vectors
            except EmbeddingError as exc:
                log.warning(
                    "Remote embedding batch failed; retrying items individually",
                    provider=self.identity,
                    batch_size=len(chunk),
                    error=str(exc),
                )
                for idx, text in enumerate(chunk):
                    results[offset + idx] = await self.embed(text)
        return results

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class ModelPipeline(Protocol):
    def encode(self, sentences: list[str], **kwargs: Any) -> Any:
        """Return one vector per sentence."""


class ModelFetcher(Protocol):
    def cached_path(self, model: LocalModelSpec, cache_dir: Path) -> Path | None:
        """Return the local snapshot when the model is fully cached."""

    def download(self, model: LocalModelSpec, cache_dir: Path, on_fraction: Callable[[float], None]) -> Path:
        """Download the model snapshot, reporting completion fractions."""

    def artifact_dir(self, model: LocalModelSpec, cache_dir: Path) -> Path:
        """Directory holding every cached file of the model."""


PipelineLoader = Callable[[LocalModelSpec, Path, "str | None"], ModelPipeline]


class HuggingFaceFetcher:
    """Model snapshots from the Hugging Face Hub cache layout."""

    def cached_path(self, model: LocalModelSpec, cache_dir: Path) -> Path | None:
        from huggingface_hub import snapshot_download
        from huggingface_hub.utils import LocalEntryNotFoundError

        try:
            return Path(
                snapshot_download(
                    repo_id=model.model_id,
                    cache_dir=str(cache_dir),
                    local_files_only=True,
                )
            )
        except LocalEntryNotFoundError:
            return None

    def download(self, model: LocalModelSpec, cache_dir: Path, on_fraction: Callable[[float], None]) -> Path:
        from huggingface_hub import snapshot_download
        from tqdm.auto import tqdm

        class _ProgressBar(tqdm):
            def update(self, n: float | None = 1) -> bool | None:
                result = super().update(n)
                if self.total:
                    on_fraction(min(1.0, self.n / self.total))
                return result

        return Path(
            snapshot_download(
                repo_id=model.model_id,
                cache_dir=str(cache_dir),
                tqdm_class=_ProgressBar,
            )
        )

    def artifact_dir(self, model: LocalModelSpec, cache_dir: Path) -> Path:
        return cache_dir / ("models--" + model.model_id.replace("/", "--"))


def load_sentence_transformer(model: LocalModelSpec, path: Path, device: str | None) -> ModelPipeline:
    """Build a sentence-transformers pipeline; ``device=None`` auto-selects an accelerator."""
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(str(path), device=device)


class LocalEmbedder:
    """Locally resident embedding model with bounded load recovery."""

    def __init__(
        self,
        model: LocalModelSpec,
        cache_dir: Path,
        *,
        device: str | None = None,
        fetcher: ModelFetcher | None = None,
        loader: PipelineLoader | None = None,
        on_download_progress: DownloadCallback | None = None,
    ):
        self.model = model
        self.cache_dir = Path(cache_dir)
        self.device = device or None
        self.fetcher = fetcher or HuggingFaceFetcher()
        self.loader = loader or load_sentence_transformer
        self.on_download_progress = on_download_progress
        self.loading = False
        self.active_device: str | None = None
        self._pipeline: ModelPipeline | None = None
        self._cancel_requested = False
        self._lock = asyncio.Lock()

    @property
    def identity(self) -> str:
        return self.model.short_name

    @property
    def is_ready(self) -> bool:
        return self._pipeline is not None

    def cancel_download(self) -> None:
        """Request cooperative cancellation of an in-flight download."""
        if self.loading:
            self._cancel_requested = True

    def _emit(self, stage: str, percent: float | None = None) -> None:
        if self.on_download_progress is not None:
            self.on_download_progress(DownloadProgress(stage=stage, model_id=self.model.model_id, percent=percent))

    def _on_fraction(self, fraction: float) -> None:
        if self._cancel_requested:
            raise ModelDownloadCancelledError(self.model.model_id)
        self._emit("progress", round(fraction * 100, 1))

    def _resolve_artifact(self) -> Path:
        cached = self.fetcher.cached_path(self.model, self.cache_dir)
        if cached is not None:
            return cached
        self._emit("initiate")
        self._emit("download")
        path = self.fetcher.download(self.model, self.cache_dir, self._on_fraction)
        self._emit("done", 100.0)
        return path

    def _load_blocking(self, device: str | None) -> ModelPipeline:
        return self.loader(self.model, self._resolve_artifact(), device)

    def _remove_artifact(self) -> None:
        shutil.rmtree(self.fetcher.artifact_dir(self.model, self.cache_dir), ignore_errors=True)

    async def load(self) -> bool:
        """Load the model; False on cancellation, ModelLoadError when recovery is exhausted."""
        async with self._lock:
            if self._pipeline is not None:
                return True
            self.loading = True
            self._cancel_requested = False
            try:
                return await self._load_with_recovery()
            finally:
                self.loading = False
                self._cancel_requested = False

    async def _load_with_recovery(self) -> bool:
        device = self.device
        tried_portable = False
        tried_repair = False
        while True:
            try:
                pipeline = await asyncio.to_thread(self._load_blocking, device)
            except ModelDownloadCancelledError:
                log.info("Model download cancelled", model=self.model.model_id)
                return False
            except Exception as exc:
                message = f"{type(exc).__name__}: {exc}"
                if not tried_portable and _NATIVE_BACKEND_ERRORS.search(message):
                    tried_portable = True
                    device = PORTABLE_DEVICE
                    log.warning(
                        "Native backend failed; retrying on portable backend",
                        model=self.model.model_id,
                        error=message,
                    )
                    continue
                if not tried_repair and _CORRUPTED_ARTIFACT_ERRORS.search(message):
                    tried_repair = True
                    log.warning(
                        "Cached model artifact corrupted; deleting and reloading",
                        model=self.model.model_id,
                        error=message,
                    )
                    await asyncio.to_thread(self._remove_artifact)
                    continue
                log.error("Local model load failed", model=self.model.model_id, error=message)
                raise ModelLoadError(self.model.model_id, str(exc)) from exc

            self._pipeline = pipeline
            self.active_device = device or "auto"
            log.info("Local embedding model loaded", model=self.model.model_id, device=self.active_device)
            return True

    async def embed(self, text: str) -> list[float] | None:
        if self._pipeline is None:
            return None
        truncated = text[: self.model.max_tokens * 4]
        try:
            output = await asyncio.to_thread(self._pipeline.encode, [truncated], normalize_embeddings=True)
        except Exception as exc:
            log.warning("Local embedding failed", model=self.model.model_id, error=str(exc))
            return None
        return [float(v) for v in output[0]]

    def release(self) -> None:
        self._pipeline = None
        self.active_device = None


def _safe_identity(identity: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", identity).strip("-") or "default"


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(tmp_path, path)


class EmbeddingEngine:
    """Choose a backend, embed texts, and keep document vectors cached."""

    def __init__(
        self,
        cache_dir: Path | str,
        *,
        local_model: str = DEFAULT_LOCAL_MODEL,
        device: str = "",
        fetcher: ModelFetcher | None = None,
        loader: PipelineLoader | None = None,
        on_download_progress: DownloadCallback | None = None,
        batch_size: int = REMOTE_BATCH_SIZE,
        concurrency: int = 3,
        request_interval: float = 0.1,
        worker_delay: float = 0.2,
        save_every: int = 50,
        request_timeout: float = 30.0,
        batch_timeout: float = 60.0,
    ):
        self.cache_dir = Path(cache_dir).expanduser()
        self.device = device or None
        self.fetcher = fetcher
        self.loader = loader
        self.on_download_progress = on_download_progress
        self.batch_size = max(1, int(batch_size))
        self.concurrency = max(1, int(concurrency))
        self.request_interval = max(0.0, float(request_interval))
        self.worker_delay = max(0.0, float(worker_delay))
        self.save_every = max(1, int(save_every))
        self.request_timeout = request_timeout
        self.batch_timeout = batch_timeout

        self.mode: Literal["local", "remote"] = "local"
        self.remote: RemoteEmbedder | None = None
        self._local_spec = get_local_model(local_model)
        self.local = self._make_local(self._local_spec)
        self._dimensions = self._local_spec.dimensions
        self._initialized = False
        self._cache: dict[str, dict[str, Any]] = {}
        self._cache_identity: str | None = None

    @classmethod
    def from_config(cls, cfg: Any, cache_dir: Path | str, **kwargs: Any) -> "EmbeddingEngine":
        """Build an engine from an ``EmbeddingsConfig`` section; ``kwargs`` override it."""
        options: dict[str, Any] = {
            "local_model": str(getattr(cfg, "local_model", DEFAULT_LOCAL_MODEL)),
            "device": str(getattr(cfg, "device", "")),
            "batch_size": int(getattr(cfg, "batch_size", REMOTE_BATCH_SIZE)),
            "concurrency": int(getattr(cfg, "concurrency", 3)),
            "request_interval": int(getattr(cfg, "request_interval_ms", 100)) / 1000.0,
            "save_every": int(getattr(cfg, "save_every", 50)),
            "request_timeout": float(getattr(cfg, "request_timeout_seconds", 30.0)),
            "batch_timeout": float(getattr(cfg, "batch_timeout_seconds", 60.0)),
        }
        options.update(kwargs)
        engine = cls(cache_dir, **options)
        engine.configure_remote(
            provider=str(getattr(cfg, "provider", "")),
            api_key=str(getattr(cfg, "api_key", "")),
            base_url=str(getattr(cfg, "base_url", "")),
            model=str(getattr(cfg, "model", "")),
        )
        return engine

    def _make_local(self, spec: LocalModelSpec) -> LocalEmbedder:
        return LocalEmbedder(
            spec,
            self.cache_dir / "models",
            device=self.device,
            fetcher=self.fetcher,
            loader=self.loader,
            on_download_progress=self.on_download_progress,
        )

    @property
    def backend_identity(self) -> str:
        if self.mode == "remote" and self.remote is not None:
            return self.remote.identity
        return self.local.identity

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def local_model(self) -> LocalModelSpec:
        return self._local_spec

    @property
    def is_available(self) -> bool:
        return (self.mode == "remote" and self.remote is not None) or self.local.is_ready

    def configure_remote(self, provider: str, api_key: str, base_url: str = "", model: str = "") -> bool:
        """Enable remote mode candidates; both provider and key are required."""
        if not provider.strip() or not api_key.strip():
            self.remote = None
            return False
        spec = resolve_provider(provider, base_url=base_url, model=model)
        self.remote = RemoteEmbedder(
            spec,
            api_key,
            min_interval=self.request_interval,
            timeout=self.request_timeout,
            batch_timeout=self.batch_timeout,
            batch_size=self.batch_size,
        )
        return True

    def set_local_model(self, model_id: str) -> None:
        """Select the local model; only valid before ``initialize()``."""
        if self._initialized:
            raise ConfigurationError("set_local_model must precede initialize(); use switch_local_model")
        self._local_spec = get_local_model(model_id)
        self.local = self._make_local(self._local_spec)
        if self.mode == "local":
            self._dimensions = self._local_spec.dimensions

    async def initialize(self) -> bool:
        """Pick the backend: remote when a test embedding succeeds, else the local model."""
        if self._initialized:
            return self.is_available
        if self.remote is not None:
            try:
                sample = await self.remote.embed_strict("test")
            except EmbeddingError as exc:
                log.warning(
                    "Remote embedding unavailable; falling back to local model",
                    provider=self.remote.identity,
                    error=str(exc),
                )
            else:
                self.mode = "remote"
                self._dimensions = len(sample)
                self._initialized = True
                await self.load_cache()
                log.info(
                    "Remote embedding active",
                    provider=self.remote.identity,
                    model=self.remote.model,
                    dimensions=self._dimensions,
                )
                return True

        self.mode = "local"
        self._dimensions = self._local_spec.dimensions
        self._initialized = True
        await self.load_cache()
        return await self.load_local_model()

    async def load_local_model(self) -> bool:
        return await self.local.load()

    def cancel_download(self) -> None:
        self.local.cancel_download()

    async def switch_local_model(self, model_id: str) -> bool:
        """Replace the local model; in local mode the vector cache is swapped too."""
        spec = get_local_model(model_id)
        if self.mode == "local":
            await self.save_cache()
            self._cache = {}
        self.local.release()
        self._local_spec = spec
        self.local = self._make_local(spec)
        if self.mode == "local":
            self._dimensions = spec.dimensions
            await self.load_cache()
        log.info("Switching local embedding model", model=spec.model_id)
        return await self.load_local_model()

    async def _embed_with_source(self, text: str) -> tuple[list[float] | None, str | None]:
        if self.mode == "remote" and self.remote is not None:
            vector = await self.remote.embed(text)
            if vector is not None:
                return vector, self.remote.identity
            if self.local.is_ready:
                log.debug("Using local model after remote failure", model=self.local.identity)
                return await self.local.embed(text), self.local.identity
            return None, None
        return await self.local.embed(text), self.local.identity

    async def embed(self, text: str) -> list[float] | None:
        vector, _source = await self._embed_with_source(text)
        return vector

    async def embed_batch_remote(self, texts: list[str]) -> list[list[float] | None]:
        if self.remote is None:
            return [None] * len(texts)
        return await self.remote.embed_batch(texts)

    def _remember(self, path: str, vector: list[float], content_hash: str) -> None:
        if self._dimensions and len(vector) != self._dimensions:
            log.warning(
                "Embedding dimensionality changed; invalidating cache",
                expected=self._dimensions,
                actual=len(vector),
                backend=self.backend_identity,
            )
            self._cache.clear()
        self._dimensions = len(vector)
        self._cache[path] = {"embedding": vector, "hash": content_hash}

    def get_cached(self, path: str, content_hash: str) -> list[float] | None:
        cached = self._cache.get(path)
        if cached and cached.get("hash") == content_hash:
            return cached["embedding"]
        return None

    async def get_doc_embedding(self, path: str, content: str, content_hash: str) -> list[float] | None:
        """Return the cached vector for ``path`` at ``content_hash``, computing it on a miss."""
        cached = self.get_cached(path, content_hash)
        if cached is not None:
            return cached
        vector, source = await self._embed_with_source(content)
        # Fallback vectors belong to another backend's space; return but do not cache.
        if vector is not None and source == self.backend_identity:
            self._remember(path, vector, content_hash)
        return vector

    async def semantic_search(self, query: str, docs: list[WorkspaceDocument], top_k: int = 10) -> list[SearchHit]:
        """Rank ``docs`` by cosine similarity to ``query``."""
        query_vector = await self.embed(query)
        if query_vector is None:
            return []
        hits: list[SearchHit] = []
        for doc in docs:
            vector = await self.get_doc_embedding(doc.path, doc.content, doc.hash)
            if vector is None:
                continue
            hits.append(SearchHit(path=doc.path, score=cosine_similarity(query_vector, vector)))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[: max(0, int(top_k))]

    async def preload_embeddings(
        self,
        docs: list[WorkspaceDocument],
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """Compute vectors for every uncached doc; returns how many were computed."""
        total = len(docs)
        pending = [doc for doc in docs if self.get_cached(doc.path, doc.hash) is None]
        done = total - len(pending)
        computed = 0
        unsaved = 0

        def report() -> None:
            if on_progress is not None:
                on_progress(done, total)

        async def store(doc: WorkspaceDocument, vector: list[float] | None) -> None:
            nonlocal done, computed, unsaved
            if vector is not None:
                self._remember(doc.path, vector, doc.hash)
                computed += 1
                unsaved += 1
            done += 1
            report()
            if unsaved >= self.save_every:
                unsaved = 0
                await self.save_cache()

        if done:
            report()

        if self.mode == "remote" and self.remote is not None:
            queue: asyncio.Queue[list[WorkspaceDocument]] = asyncio.Queue()
            for offset in range(0, len(pending), self.batch_size):
                queue.put_nowait(pending[offset : offset + self.batch_size])

            async def worker() -> None:
                while True:
                    try:
                        batch = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    vectors = await self.embed_batch_remote([doc.content for doc in batch])
                    for doc, vector in zip(batch, vectors):
                        await store(doc, vector)
                    if not queue.empty() and self.worker_delay > 0:
                        await asyncio.sleep(self.worker_delay)

            await asyncio.gather(*(worker() for _ in range(self.concurrency)))
        else:
            for doc in pending:
                await store(doc, await self.local.embed(doc.content))

        await self.save_cache()
        log.info("Embedding preload finished", backend=self.backend_identity, computed=computed, total=total)
        return computed

    def _cache_path(self, identity: str) -> Path:
        return self.cache_dir / "embeddings" / f"{_safe_identity(identity)}.json"

    async def load_cache(self) -> int:
        """Load the active backend's cache file; a dimension mismatch discards it whole."""
        identity = self.backend_identity
        path = self._cache_path(identity)
        self._cache = {}
        self._cache_identity = identity
        if not path.exists():
            return 0
        try:
            data = await asyncio.to_thread(_read_json, path)
        except (OSError, ValueError) as exc:
            log.warning("Embedding cache unreadable; starting empty", path=str(path), error=str(exc))
            return 0
        if not isinstance(data, dict):
            log.warning("Embedding cache malformed; starting empty", path=str(path))
            return 0

        try:
            entries = {
                str(key): {"embedding": [float(v) for v in value["embedding"]], "hash": str(value["hash"])}
                for key, value in data.items()
                if isinstance(value, dict) and isinstance(value.get("embedding"), list) and "hash" in value
            }
        except (TypeError, ValueError) as exc:
            log.warning("Embedding cache corrupted; discarding cache", path=str(path), error=str(exc))
            await asyncio.to_thread(path.unlink, missing_ok=True)
            return 0
        expected = self._dimensions or (len(next(iter(entries.values()))["embedding"]) if entries else 0)
        if any(len(entry["embedding"]) != expected for entry in entries.values()):
            log.warning(
                "Embedding cache dimension mismatch; discarding cache",
                path=str(path),
                expected=expected,
                backend=identity,
            )
            await asyncio.to_thread(path.unlink, missing_ok=True)
            return 0
        self._cache = entries
        log.debug("Embedding cache loaded", backend=identity, documents=len(entries))
        return len(entries)

    async def save_cache(self) -> None:
        if self._cache_identity is None:
            return
        payload = json.dumps(self._cache)
        path = self._cache_path(self._cache_identity)
        try:
            await asyncio.to_thread(_write_atomic, path, payload)
        except OSError as exc:
            log.warning("Embedding cache save failed", path=str(path), error=str(exc))

    async def clear_cache(self) -> None:
        self._cache = {}
        path = self._cache_path(self._cache_identity or self.backend_identity)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def get_cache_stats(self) -> dict[str, int]:
        return {"documents": len(self._cache), "size": len(json.dumps(self._cache))}

    async def close(self) -> None:
        """Persist the cache and release HTTP/model resources."""
        await self.save_cache()
        if self.remote is not None:
            await self.remote.close()
        self.local.release()
