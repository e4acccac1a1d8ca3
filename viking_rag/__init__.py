"""Viking RAG - tiered context, embeddings and session memory for codebases."""

__version__ = "0.1.0"

from viking_rag.config import Config
from viking_rag.engine import RagEngine, create_rag_engine

__all__ = ["Config", "RagEngine", "create_rag_engine", "__version__"]
