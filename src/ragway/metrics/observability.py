"""Observability helpers for ragway."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "ragway") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    cache_lookups = Counter(
        "ragway_cache_lookups_total",
        "Cache lookups by namespace and outcome.",
        ["namespace", "result"],
    )
    retrieval_latency = Histogram(
        "ragway_retrieval_duration_seconds",
        "Time spent retrieving context documents.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_document_count = Histogram(
        "ragway_retrieved_document_count",
        "Number of documents returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    similarity_score = Histogram(
        "ragway_similarity_score",
        "Similarity score of retrieved documents.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "ragway_generation_duration_seconds",
        "Time spent in the model backend.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 60.0),
    )
    fallbacks = Counter(
        "ragway_fallbacks_total",
        "Requests served by a more basic path than asked for.",
        ["reason"],
    )
    degraded_embeddings = Counter(
        "ragway_degraded_embeddings_total",
        "Embeddings produced by the hash fallback instead of the model.",
    )

    @classmethod
    def observe_cache_lookup(cls, namespace: str, hit: bool) -> None:
        cls.cache_lookups.labels(namespace=namespace, result="hit" if hit else "miss").inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        document_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_document_count.observe(document_count)
        for score in scores:
            cls.similarity_score.observe(_clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_fallback(cls, reason: str) -> None:
        cls.fallbacks.labels(reason=reason).inc()

    @classmethod
    def observe_degraded_embedding(cls) -> None:
        cls.degraded_embeddings.inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
