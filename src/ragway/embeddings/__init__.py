"""Embedding services."""

from .service import (
    EmbeddingBackend,
    EmbeddingConfig,
    EmbeddingError,
    HashEmbeddingBackend,
    OllamaEmbeddingBackend,
    hash_embedding,
)

__all__ = [
    "EmbeddingBackend",
    "EmbeddingConfig",
    "EmbeddingError",
    "HashEmbeddingBackend",
    "OllamaEmbeddingBackend",
    "hash_embedding",
]
