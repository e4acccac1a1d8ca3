"""Known remote embedding providers and local embedding models."""

from dataclasses import dataclass

from viking_rag.exceptions import ConfigurationError


@dataclass(frozen=True)
class EmbeddingProviderSpec:
    """Defaults for one OpenAI-compatible embedding API."""

    name: str
    base_url: str
    default_model: str
    dimensions: int
    max_input_tokens: int


@dataclass(frozen=True)
class LocalModelSpec:
    """One locally runnable sentence-embedding model."""

    short_name: str
    model_id: str
    dimensions: int
    max_tokens: int
    size_mb: int
    description: str = ""


EMBEDDING_PROVIDERS: dict[str, EmbeddingProviderSpec] = {
    spec.name: spec
    for spec in (
        EmbeddingProviderSpec(
            name="openai",
            base_url="https://api.openai.com/v1/embeddings",
            default_model="text-embedding-3-small",
            dimensions=1536,
            max_input_tokens=8191,
        ),
        EmbeddingProviderSpec(
            name="jina",
            base_url="https://api.jina.ai/v1/embeddings",
            default_model="jina-embeddings-v3",
            dimensions=1024,
            max_input_tokens=8192,
        ),
        EmbeddingProviderSpec(
            name="voyage",
            base_url="https://api.voyageai.com/v1/embeddings",
            default_model="voyage-code-3",
            dimensions=1024,
            max_input_tokens=32000,
        ),
        EmbeddingProviderSpec(
            name="mistral",
            base_url="https://api.mistral.ai/v1/embeddings",
            default_model="mistral-embed",
            dimensions=1024,
            max_input_tokens=8192,
        ),
        EmbeddingProviderSpec(
            name="siliconflow",
            base_url="https://api.siliconflow.cn/v1/embeddings",
            default_model="BAAI/bge-m3",
            dimensions=1024,
            max_input_tokens=8192,
        ),
        EmbeddingProviderSpec(
            name="zhipu",
            base_url="https://open.bigmodel.cn/api/paas/v4/embeddings",
            default_model="embedding-3",
            dimensions=2048,
            max_input_tokens=8192,
        ),
    )
}

LOCAL_MODELS: dict[str, LocalModelSpec] = {
    spec.short_name: spec
    for spec in (
        LocalModelSpec(
            short_name="all-MiniLM-L6-v2",
            model_id="sentence-transformers/all-MiniLM-L6-v2",
            dimensions=384,
            max_tokens=256,
            size_mb=90,
            description="Fast general-purpose English model",
        ),
        LocalModelSpec(
            short_name="all-MiniLM-L12-v2",
            model_id="sentence-transformers/all-MiniLM-L12-v2",
            dimensions=384,
            max_tokens=256,
            size_mb=120,
            description="Deeper MiniLM, better quality, slower",
        ),
        LocalModelSpec(
            short_name="bge-small-en-v1.5",
            model_id="BAAI/bge-small-en-v1.5",
            dimensions=384,
            max_tokens=512,
            size_mb=133,
        ),
        LocalModelSpec(
            short_name="bge-base-en-v1.5",
            model_id="BAAI/bge-base-en-v1.5",
            dimensions=768,
            max_tokens=512,
            size_mb=438,
        ),
        LocalModelSpec(
            short_name="paraphrase-multilingual-MiniLM-L12-v2",
            model_id="sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
            dimensions=384,
            max_tokens=128,
            size_mb=470,
            description="Multilingual (50+ languages, incl. Chinese)",
        ),
    )
}

DEFAULT_LOCAL_MODEL = "all-MiniLM-L6-v2"


def get_local_model(name: str) -> LocalModelSpec:
    """Resolve a local model by short name or full model id."""
    key = (name or "").strip()
    if key in LOCAL_MODELS:
        return LOCAL_MODELS[key]
    for spec in LOCAL_MODELS.values():
        if spec.model_id == key:
            return spec
    raise ConfigurationError(
        f"Unknown local embedding model '{name}'. Known: {', '.join(LOCAL_MODELS)}"
    )


def list_local_models() -> list[LocalModelSpec]:
    return list(LOCAL_MODELS.values())


def resolve_provider(
    provider: str,
    base_url: str = "",
    model: str = "",
) -> EmbeddingProviderSpec:
    """Merge caller overrides with the provider's defaults.

    Unknown providers need an explicit base URL and model; their
    dimensionality is left at 0 until the first embedding is seen.
    """
    name = provider.strip().lower()
    known = EMBEDDING_PROVIDERS.get(name)
    if known is None:
        if not base_url.strip() or not model.strip():
            raise ConfigurationError(
                f"Unknown embedding provider '{provider}' requires base_url and model"
            )
        return EmbeddingProviderSpec(
            name=name,
            base_url=base_url.strip(),
            default_model=model.strip(),
            dimensions=0,
            max_input_tokens=8192,
        )
    return EmbeddingProviderSpec(
        name=known.name,
        base_url=base_url.strip() or known.base_url,
        default_model=model.strip() or known.default_model,
        dimensions=known.dimensions,
        max_input_tokens=known.max_input_tokens,
    )
