"""Cached, context-augmented generation.

Every fallback here moves toward a more basic path: a cache outage becomes a
miss, an unavailable index becomes plain generation, and a failing model
becomes an error message. Nothing in a request path raises to the caller.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Mapping, Sequence

from ragway.cache import HEALTHCHECK_NAMESPACE, LLM_NAMESPACE, RAG_NAMESPACE, CacheError, CacheGateway, CacheKeyCodec
from ragway.metrics.observability import PipelineMetrics, get_logger
from ragway.models import CacheEntry, CacheStatus, Document, GenerationRequest, HealthReport, ScoredDocument
from ragway.retrieval import ContextRetriever
from ragway.services.generation import GenerationBackend, extract_text
from ragway.services.prompts import PromptBuilder


@dataclass(frozen=True)
class OrchestratorConfig:
    """Defaults for the orchestrator's request handling."""

    cache_ttl_seconds: int = 3600
    max_docs: int = 3
    min_score: float = 0.0
    include_scores: bool = False
    cache_ready_attempts: int = 50
    cache_ready_interval: float = 0.1
    healthcheck_ttl_seconds: int = 10
    stream_delay: float = 0.0


class RagOrchestrator:
    """Composes cache, retriever and model backend into one request pipeline."""

    def __init__(
        self,
        backend: GenerationBackend,
        retriever: ContextRetriever,
        cache: CacheGateway | None = None,
        *,
        codec: CacheKeyCodec | None = None,
        prompt_builder: PromptBuilder | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._backend = backend
        self._retriever = retriever
        self._cache = cache
        self._codec = codec or CacheKeyCodec()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._config = config or OrchestratorConfig()
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._logger = get_logger("orchestrator")

    @property
    def caching_enabled(self) -> bool:
        return self._cache is not None

    # Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Start the cache (best effort) and the retriever.

        If the cache does not come up within the configured wait, caching is
        disabled for the lifetime of this orchestrator.
        """
        async with self._init_lock:
            if self._initialized:
                return
            if self._cache is not None:
                ready = await self._cache.start(
                    attempts=self._config.cache_ready_attempts,
                    interval=self._config.cache_ready_interval,
                )
                if not ready:
                    self._logger.warning("cache.disabled", reason="cache service failed to initialize within timeout")
                    self._cache = None
                else:
                    self._logger.info("cache.initialized", status=self._cache.status().to_dict())
            await self._retriever.initialize()
            self._initialized = True

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def shutdown(self) -> None:
        """Release every collaborator; called by the hosting process."""
        for name, close in (
            ("backend", self._backend.aclose),
            ("retriever", self._retriever.close),
            ("cache", self._cache.disconnect if self._cache is not None else None),
        ):
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                self._logger.error("shutdown.error", component=name, error=str(exc))
        self._logger.info("orchestrator.shutdown")

    # Generation ------------------------------------------------------------

    async def respond(self, request: GenerationRequest) -> str:
        if request.use_context:
            return await self.generate_with_context(
                request.raw_query,
                max_docs=request.max_docs,
                min_score=request.min_score,
                include_scores=request.include_scores,
            )
        return await self.generate(request.raw_query)

    async def generate(self, prompt: str) -> str:
        """Answer ``prompt`` without retrieval; always returns a string."""
        try:
            await self._ensure_initialized()
            key = self._codec.derive_key(LLM_NAMESPACE, self._model_parameters(), prompt)
            cached = await self._lookup(LLM_NAMESPACE, key)
            if cached is not None:
                return cached
            text = await self._invoke(prompt)
            await self._store(key, text)
            return text
        except Exception as exc:
            self._logger.error("generate.failed", error=str(exc))
            return f"Error generating response: {exc}"

    async def generate_with_context(
        self,
        prompt: str,
        *,
        max_docs: int | None = None,
        min_score: float | None = None,
        include_scores: bool | None = None,
    ) -> str:
        """Answer ``prompt`` from retrieved context, falling back to :meth:`generate`."""
        max_docs = self._config.max_docs if max_docs is None else max_docs
        min_score = self._config.min_score if min_score is None else min_score
        include_scores = self._config.include_scores if include_scores is None else include_scores
        try:
            await self._ensure_initialized()
            key = self._codec.derive_key(
                RAG_NAMESPACE,
                self._rag_parameters(max_docs, min_score, include_scores),
                prompt,
            )
            cached = await self._lookup(RAG_NAMESPACE, key)
            if cached is not None:
                return cached

            if not await self._retriever.ensure_ready():
                self._logger.warning("rag.fallback", reason="retriever_not_ready")
                PipelineMetrics.observe_fallback("retriever_not_ready")
                return await self.generate(prompt)

            documents = await self._retriever.search(prompt, max_docs)
            if not documents and not self._retriever.is_ready():
                # Search detected a width mismatch and took the retriever down
                self._logger.warning("rag.fallback", reason="retriever_failed_during_search")
                PipelineMetrics.observe_fallback("retriever_not_ready")
                return await self.generate(prompt)
            if include_scores:
                documents = [item for item in documents if item.score >= min_score]

            if not documents:
                self._logger.info("rag.no_context", max_docs=max_docs, min_score=min_score)
                PipelineMetrics.observe_fallback("no_context")
                text = await self._invoke(self._prompt_builder.build_no_context_prompt(prompt))
                await self._store(key, text)
                return text

            augmented = self._prompt_builder.build_prompt(prompt, documents, include_scores=include_scores)
            text = await self._invoke(augmented)
            await self._store(key, text)
            self._logger.info("rag.complete", document_count=len(documents))
            return text
        except Exception as exc:
            self._logger.error("rag.failed", error=str(exc))
            PipelineMetrics.observe_fallback("error")
            return await self.generate(prompt)

    async def generate_stream(
        self,
        prompt: str,
        *,
        use_context: bool = False,
        delay: float | None = None,
        **options: Any,
    ) -> AsyncIterator[str]:
        """Yield the full response word by word."""
        if use_context:
            text = await self.generate_with_context(prompt, **options)
        else:
            text = await self.generate(prompt)
        delay = self._config.stream_delay if delay is None else delay
        for token in text.split(" "):
            yield token + " "
            if delay:
                await asyncio.sleep(delay)

    # Documents -------------------------------------------------------------

    async def add_documents(self, documents: Sequence[Document]) -> list[str]:
        await self._ensure_initialized()
        ids = await self._retriever.add_documents(documents)
        self._logger.info("documents.added", count=len(ids))
        return ids

    async def search_documents(
        self,
        query: str,
        *,
        max_results: int = 5,
        where: Mapping[str, Any] | None = None,
    ) -> list[ScoredDocument]:
        await self._ensure_initialized()
        return await self._retriever.search(query, max_results, where)

    # Cache administration --------------------------------------------------

    async def clear_cache(self, pattern: str | None = None) -> int:
        await self._ensure_initialized()
        if self._cache is None:
            return 0
        return await self._cache.flush(pattern or self._codec.namespace_pattern(LLM_NAMESPACE))

    async def cache_status(self) -> CacheStatus:
        await self._ensure_initialized()
        if self._cache is None:
            return CacheStatus(connected=False, client_state="Cache service not initialized")
        return self._cache.status()

    # Health ----------------------------------------------------------------

    async def health_check(self) -> HealthReport:
        """Probe each subsystem independently; never raises."""
        report = HealthReport()

        try:
            await self._backend.ping()
            report.backend = True
        except Exception as exc:
            report.details["ollama"] = str(exc)

        try:
            await self._ensure_initialized()
            if self._cache is None:
                report.details["cache"] = {"connected": False, "error": "Cache service not initialized"}
            else:
                status = self._cache.status()
                round_trip = await self._probe_cache()
                report.cache = status.connected and round_trip
                report.details["cache"] = {**status.to_dict(), "roundTrip": round_trip}
        except Exception as exc:
            report.details["cache"] = {"connected": False, "error": str(exc)}

        try:
            vector_health = await self._retriever.health_check()
            report.vector_store = vector_health.connected
            report.details["vectorStore"] = vector_health.to_dict()
        except Exception as exc:
            report.details["vectorStore"] = {"connected": False, "error": str(exc)}

        return report

    async def _probe_cache(self) -> bool:
        key = self._codec.derive_key(HEALTHCHECK_NAMESPACE, (), "ok")
        try:
            await self._cache.set(key, "ok", self._config.healthcheck_ttl_seconds)
        except CacheError as exc:
            self._logger.warning("cache.probe_failed", error=str(exc))
            return False
        return await self._cache.get(key) == "ok"

    # Internals -------------------------------------------------------------

    def _model_parameters(self) -> list[tuple[str, Any]]:
        return [("model", self._backend.model), ("temperature", self._backend.temperature)]

    def _rag_parameters(self, max_docs: int, min_score: float, include_scores: bool) -> list[tuple[str, Any]]:
        return self._model_parameters() + [
            ("max_docs", max_docs),
            ("min_score", min_score),
            ("include_scores", include_scores),
            ("collection", self._retriever.collection_name),
        ]

    async def _lookup(self, namespace: str, key: str) -> str | None:
        if self._cache is None:
            return None
        cached = await self._cache.get(key)
        PipelineMetrics.observe_cache_lookup(namespace, cached is not None)
        self._logger.info("cache.hit" if cached is not None else "cache.miss", key=key)
        return cached

    async def _store(self, key: str, text: str) -> None:
        if self._cache is None:
            return
        entry = CacheEntry(key=key, value=text, ttl=timedelta(seconds=self._config.cache_ttl_seconds))
        try:
            await self._cache.store(entry)
        except CacheError as exc:
            self._logger.warning("cache.store_failed", key=key, error=str(exc))

    async def _invoke(self, prompt: str) -> str:
        start = time.perf_counter()
        response = await self._backend.invoke(prompt)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_generation(duration)
        text = extract_text(response)
        self._logger.info("generation.complete", duration_seconds=duration, response_length=len(text))
        return text
