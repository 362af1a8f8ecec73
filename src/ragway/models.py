"""Shared domain models used across the ragway pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Tuple, Union

Scalar = Union[str, int, float, bool]


class DistanceMetric(str, Enum):
    """Similarity measure a collection is built with."""

    COSINE = "cosine"
    DOT = "dot"
    EUCLIDEAN = "euclidean"

    @property
    def chroma_space(self) -> str:
        return {"cosine": "cosine", "dot": "ip", "euclidean": "l2"}[self.value]

    @classmethod
    def from_chroma_space(cls, space: str) -> "DistanceMetric":
        for metric in cls:
            if metric.chroma_space == space:
                return metric
        raise ValueError(f"Unknown chroma space: {space}")

    def score(self, distance: float) -> float:
        """Convert a backend distance into a higher-is-more-similar score."""
        if self is DistanceMetric.EUCLIDEAN:
            return 1.0 / (1.0 + distance)
        return 1.0 - distance


@dataclass(frozen=True)
class Document:
    """Text content plus scalar metadata stored in the vector index."""

    content: str
    metadata: Mapping[str, Scalar] = field(default_factory=dict)

    @property
    def source(self) -> str | None:
        value = self.metadata.get("source")
        return str(value) if value else None


@dataclass(frozen=True)
class ScoredDocument:
    """Document returned from similarity search."""

    document: Document
    score: float


@dataclass(frozen=True)
class CacheEntry:
    """A generated response addressed by its derived cache key."""

    key: str
    value: str
    ttl: timedelta | None = None


@dataclass(frozen=True)
class CollectionSchema:
    name: str
    vector_width: int
    distance: DistanceMetric = DistanceMetric.COSINE


@dataclass(frozen=True)
class GenerationRequest:
    """A single inbound query and its retrieval options."""

    raw_query: str
    use_context: bool = True
    max_docs: int = 3
    min_score: float = 0.0
    include_scores: bool = False


@dataclass(frozen=True)
class EmbeddingResult:
    """Embedding vector tagged with whether the hash fallback produced it."""

    vector: Tuple[float, ...]
    degraded: bool = False


@dataclass(frozen=True)
class CacheStatus:
    connected: bool
    client_state: str

    def to_dict(self) -> dict[str, Any]:
        return {"connected": self.connected, "client": self.client_state}


@dataclass(frozen=True)
class RetrieverHealth:
    initialized: bool
    connected: bool
    dimensions: int | None = None
    error: str | None = None
    degraded_embeddings: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "initialized": self.initialized,
            "connected": self.connected,
            "degradedEmbeddings": self.degraded_embeddings,
        }
        if self.dimensions is not None:
            payload["embeddingDimensions"] = self.dimensions
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class DimensionDiagnosis:
    model_dimensions: int
    collection_dimensions: int | None
    match: bool
    suggestions: Tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "modelDimensions": self.model_dimensions,
            "collectionDimensions": self.collection_dimensions,
            "match": self.match,
            "suggestions": list(self.suggestions),
        }


@dataclass
class HealthReport:
    """Aggregated liveness of the model backend, cache and vector index."""

    backend: bool = False
    cache: bool = False
    vector_store: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        checks = (self.backend, self.cache, self.vector_store)
        if all(checks):
            return "healthy"
        if any(checks):
            return "degraded"
        return "unhealthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "ollama": self.backend,
            "cache": self.cache,
            "vectorStore": self.vector_store,
            "details": self.details,
        }
