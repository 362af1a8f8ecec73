"""FastAPI application exposing the ragway gateway."""

from __future__ import annotations

import json
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ragway.api.schemas import (
    AddDocumentsRequest,
    AddDocumentsResponse,
    CacheFlushResponse,
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    SearchResponse,
    SearchResult,
)
from ragway.cache import CacheError, CacheGateway
from ragway.config import Settings, get_settings
from ragway.embeddings import EmbeddingConfig, OllamaEmbeddingBackend
from ragway.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from ragway.models import DistanceMetric, Document, GenerationRequest
from ragway.retrieval import ContextRetriever, RetrieverError, chroma_client_factory
from ragway.services.generation import GenerationConfig, OllamaGenerator
from ragway.services.orchestrator import OrchestratorConfig, RagOrchestrator

SAMPLE_DOCUMENTS = (
    Document(
        content="Hello, I am a test document about AI and machine learning.",
        metadata={"source": "test1.txt"},
    ),
    Document(
        content="This is another test document about web development and programming.",
        metadata={"source": "test2.txt"},
    ),
    Document(
        content="DevUps is a digital agency that helps with web development and digital marketing.",
        metadata={"source": "test3.txt"},
    ),
)


class ApiError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class RateLimiter:
    """Sliding-window request limiter keyed by client and path.

    Buckets whose requests have all left the window are dropped, so the
    table only holds clients seen within the last window.
    """

    def __init__(self, requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.requests = requests
        self.window = window_seconds
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def __call__(self, request: Request) -> None:
        client_ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "-")
        self.hit(f"{client_ip}:{request.url.path}")

    def hit(self, key: str) -> None:
        now = self._clock()
        cutoff = now - self.window
        if now - self._last_sweep >= self.window:
            self._sweep(cutoff)
            self._last_sweep = now
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = deque()
        # Drop old entries
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.requests:
            raise ApiError(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")
        bucket.append(now)

    def tracked_clients(self) -> int:
        return len(self._buckets)

    def _sweep(self, cutoff: float) -> None:
        for key in [key for key, bucket in self._buckets.items() if not bucket or bucket[-1] < cutoff]:
            del self._buckets[key]


@dataclass(frozen=True)
class AppDependencies:
    orchestrator: RagOrchestrator
    retriever: ContextRetriever


def _build_dependencies(settings: Settings) -> AppDependencies:
    embeddings = OllamaEmbeddingBackend(
        EmbeddingConfig(
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            base_url=settings.ollama_url,
            timeout=settings.embedding_timeout_seconds,
        ),
    )
    retriever = ContextRetriever(
        embeddings,
        collection_name=settings.chroma_collection,
        client_factory=chroma_client_factory(
            host=settings.chroma_host,
            port=settings.chroma_port,
            ssl=settings.chroma_ssl,
            headers=settings.chroma_headers,
            persist_directory=str(settings.chroma_persist_dir) if settings.chroma_persist_dir else None,
        ),
        distance=DistanceMetric(settings.distance_metric),
        max_concurrency=settings.max_concurrent_searches,
        timeout=settings.retriever_timeout_seconds,
    )
    backend = OllamaGenerator(
        GenerationConfig(
            model=settings.generator_model,
            temperature=settings.generator_temperature,
            base_url=settings.ollama_url,
            timeout=settings.generator_timeout_seconds,
            max_concurrency=settings.max_concurrent_generations,
        ),
    )
    cache = None
    if settings.cache_enabled:
        cache = CacheGateway(
            settings.redis_url,
            retry_base=settings.cache_retry_base_seconds,
            retry_ceiling=settings.cache_retry_ceiling_seconds,
            max_retries=settings.cache_max_retries,
            socket_timeout=settings.cache_socket_timeout_seconds,
        )
    orchestrator = RagOrchestrator(
        backend,
        retriever,
        cache,
        config=OrchestratorConfig(
            cache_ttl_seconds=settings.cache_ttl_seconds,
            max_docs=settings.rag_max_docs,
            min_score=settings.rag_min_score,
            include_scores=settings.rag_include_scores,
            cache_ready_attempts=settings.cache_ready_attempts,
            cache_ready_interval=settings.cache_ready_interval_seconds,
            stream_delay=settings.stream_delay_seconds,
        ),
    )
    return AppDependencies(orchestrator=orchestrator, retriever=retriever)


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await deps.orchestrator.initialize()
        logger.info("api.started", environment=settings.environment)
        yield
        await deps.orchestrator.shutdown()

    app = FastAPI(title="ragway API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "Invalid API key")

    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    def _error(request: Request, status_code: int, message: str) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None)
        body = ErrorResponse(error=message, correlation_id=correlation_id)
        return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        return _error(request, exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("request.invalid", path=request.url.path, errors=len(exc.errors()))
        return _error(request, status.HTTP_400_BAD_REQUEST, "Invalid request body")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled.error", path=request.url.path, detail=str(exc))
        return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to generate response")

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_orchestrator(dep: AppDependencies = Depends(get_dependencies)) -> RagOrchestrator:
        return dep.orchestrator

    def get_retriever(dep: AppDependencies = Depends(get_dependencies)) -> ContextRetriever:
        return dep.retriever

    def to_generation_request(payload: ChatRequest, message: str) -> GenerationRequest:
        return GenerationRequest(
            raw_query=message,
            use_context=payload.use_context,
            max_docs=payload.max_docs if payload.max_docs is not None else settings.rag_max_docs,
            min_score=payload.min_score if payload.min_score is not None else settings.rag_min_score,
            include_scores=(
                payload.include_scores if payload.include_scores is not None else settings.rag_include_scores
            ),
        )

    @app.post(
        "/api/chat",
        response_model=ChatResponse,
        responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    )
    async def chat(
        payload: ChatRequest,
        request: Request,
        orchestrator: RagOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> ChatResponse | JSONResponse:
        message = (payload.message or "").strip()
        if not message:
            return _error(request, status.HTTP_400_BAD_REQUEST, "Message is required")
        response = await orchestrator.respond(to_generation_request(payload, message))
        return ChatResponse(response=response)

    @app.post("/api/chat/stream")
    async def chat_stream(
        payload: ChatRequest,
        request: Request,
        orchestrator: RagOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
        _rl: None = Depends(rate_limiter),
    ) -> Response:
        message = (payload.message or "").strip()
        if not message:
            return _error(request, status.HTTP_400_BAD_REQUEST, "Message is required")
        generation = to_generation_request(payload, message)

        async def iter_sse():
            # Initial heartbeat to keep idle proxies open
            yield ": heartbeat\n\n"
            tokens = orchestrator.generate_stream(
                generation.raw_query,
                use_context=generation.use_context,
                **(
                    {
                        "max_docs": generation.max_docs,
                        "min_score": generation.min_score,
                        "include_scores": generation.include_scores,
                    }
                    if generation.use_context
                    else {}
                ),
            )
            async for token in tokens:
                yield f"data: {json.dumps(token)}\n\n"
            yield "event: done\ndata: {}\n\n"

        return StreamingResponse(iter_sse(), media_type="text/event-stream")

    @app.get("/health")
    async def health(orchestrator: RagOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
        report = await orchestrator.health_check()
        body = {**report.to_dict(), "timestamp": datetime.now(timezone.utc).isoformat()}
        code = status.HTTP_503_SERVICE_UNAVAILABLE if report.status == "unhealthy" else status.HTTP_200_OK
        return JSONResponse(status_code=code, content=body)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.delete("/api/cache", response_model=CacheFlushResponse)
    async def flush_cache(
        request: Request,
        pattern: str = "llm:*",
        orchestrator: RagOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
    ) -> CacheFlushResponse | JSONResponse:
        try:
            deleted = await orchestrator.clear_cache(pattern)
        except CacheError as exc:
            return _error(request, status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))
        return CacheFlushResponse(pattern=pattern, deleted=deleted)

    @app.post("/api/test/add-data", response_model=AddDocumentsResponse)
    async def add_test_data(
        request: Request,
        payload: AddDocumentsRequest | None = None,
        orchestrator: RagOrchestrator = Depends(get_orchestrator),
        _auth: None = Depends(require_api_key),
    ) -> AddDocumentsResponse | JSONResponse:
        documents = (
            [Document(content=item.content, metadata=dict(item.metadata)) for item in payload.documents]
            if payload is not None
            else list(SAMPLE_DOCUMENTS)
        )
        try:
            ids = await orchestrator.add_documents(documents)
        except RetrieverError as exc:
            logger.error("test.add_data_failed", error=str(exc))
            return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
        return AddDocumentsResponse(
            success=True,
            message="Test data added successfully",
            documents_added=len(ids),
            ids=ids,
        )

    @app.get("/api/test/search", response_model=SearchResponse)
    async def search_test(
        q: str = "What is AI?",
        k: int = 3,
        orchestrator: RagOrchestrator = Depends(get_orchestrator),
    ) -> SearchResponse:
        results = await orchestrator.search_documents(q, max_results=k)
        return SearchResponse(
            success=True,
            query=q,
            results=[
                SearchResult(
                    rank=index,
                    score=round(item.score, 3),
                    source=item.document.source,
                    content=item.document.content,
                )
                for index, item in enumerate(results, start=1)
            ],
        )

    @app.get("/api/test/status")
    async def vector_store_status(retriever: ContextRetriever = Depends(get_retriever)) -> dict:
        health = await retriever.health_check()
        diagnosis = await retriever.diagnose_dimensions()
        return {
            "success": True,
            "vectorStore": {
                **health.to_dict(),
                "documentCount": await retriever.count(),
                "error": health.error,
            },
            "dimensions": diagnosis.to_dict(),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("ragway.api.app:app", host=_settings.host, port=_settings.port)
