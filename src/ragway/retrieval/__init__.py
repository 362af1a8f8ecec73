"""Retrieval components."""

from .service import (
    ContextRetriever,
    DimensionMismatchError,
    DocumentIndexingError,
    RetrieverError,
    chroma_client_factory,
)

__all__ = [
    "ContextRetriever",
    "DimensionMismatchError",
    "DocumentIndexingError",
    "RetrieverError",
    "chroma_client_factory",
]
