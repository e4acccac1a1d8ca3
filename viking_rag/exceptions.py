"""Custom exceptions for Viking RAG."""


class VikingRagError(Exception):
    """Base exception for Viking RAG."""

    pass


class ConfigurationError(VikingRagError):
    """Configuration-related errors."""

    pass


class EmbeddingError(VikingRagError):
    """Embedding-related errors."""

    pass


class EmbeddingAPIError(EmbeddingError):
    """Remote embedding API errors (status, transport, timeout)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ModelLoadError(EmbeddingError):
    """Local embedding model could not be loaded."""

    def __init__(self, model_id: str, message: str):
        super().__init__(f"Failed to load local model '{model_id}': {message}")
        self.model_id = model_id


class ModelDownloadCancelledError(EmbeddingError):
    """Model download aborted on user request."""

    def __init__(self, model_id: str):
        super().__init__(f"Download cancelled: {model_id}")
        self.model_id = model_id


class ContextGenerationError(VikingRagError):
    """Context-description LLM call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
