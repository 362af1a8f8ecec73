from __future__ import annotations

import pytest

from ragway.cache import LLM_NAMESPACE, RAG_NAMESPACE, CacheGateway, CacheKeyCodec
from ragway.models import Document, GenerationRequest
from ragway.services.orchestrator import OrchestratorConfig, RagOrchestrator

from fakes import FailingRedis, FakeBackend, FakeRedis, FakeRetriever, scored

FAST_START = OrchestratorConfig(cache_ready_attempts=5, cache_ready_interval=0.01)


def _orchestrator(backend, retriever, cache=None) -> RagOrchestrator:
    return RagOrchestrator(backend, retriever, cache, config=FAST_START)


def _llm_key(backend: FakeBackend, prompt: str) -> str:
    return CacheKeyCodec().derive_key(
        LLM_NAMESPACE, [("model", backend.model), ("temperature", backend.temperature)], prompt
    )


@pytest.mark.asyncio
async def test_cached_response_short_circuits_backend(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend()
    fake_redis.data[_llm_key(backend, "ping")] = "cached pong"
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    assert await orchestrator.generate("ping") == "cached pong"
    assert backend.prompts == []


@pytest.mark.asyncio
async def test_generate_stores_response_with_ttl(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend({"response": "pong"})
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    assert await orchestrator.generate("ping") == "pong"
    key = _llm_key(backend, "ping")
    assert fake_redis.data[key] == "pong"
    assert fake_redis.ttls[key] == 3600


@pytest.mark.asyncio
async def test_cache_down_still_generates():
    backend = FakeBackend("fresh text")
    cache = CacheGateway(client=FailingRedis(), retry_base=0.0, max_retries=100)
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    assert await orchestrator.generate("ping") == "fresh text"
    assert orchestrator.caching_enabled is False
    status = await orchestrator.cache_status()
    assert status.client_state == "Cache service not initialized"


@pytest.mark.asyncio
async def test_cache_failing_after_start_still_generates(fake_redis: FakeRedis):
    backend = FakeBackend("fresh text")
    cache = CacheGateway(client=fake_redis, retry_base=0.0, max_retries=0)
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)
    await orchestrator.initialize()

    failing = FailingRedis()
    fake_redis.get = failing.get
    fake_redis.setex = failing.setex
    assert await orchestrator.generate("ping") == "fresh text"


@pytest.mark.asyncio
async def test_backend_error_is_reported_and_not_cached(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend(RuntimeError("model crashed"))
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    assert await orchestrator.generate("ping") == "Error generating response: model crashed"
    assert not [key for key in fake_redis.data if key.startswith("llm:")]


@pytest.mark.asyncio
async def test_empty_retrieval_uses_no_context_note_under_rag_key(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend("no docs answer")
    orchestrator = _orchestrator(backend, FakeRetriever([]), cache)

    assert await orchestrator.generate_with_context("Q") == "no docs answer"
    assert backend.prompts == ["Answer this question: Q\n\nNote: No specific context documents were available."]
    assert [key.split(":")[0] for key in fake_redis.data if not key.startswith("healthcheck:")] == [RAG_NAMESPACE]


@pytest.mark.asyncio
async def test_unready_retriever_falls_back_to_plain_generation(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend("plain answer")
    orchestrator = _orchestrator(backend, FakeRetriever(ready=False), cache)

    assert await orchestrator.generate_with_context("Q") == "plain answer"
    assert backend.prompts == ["Q"]
    assert fake_redis.data[_llm_key(backend, "Q")] == "plain answer"


@pytest.mark.asyncio
async def test_retrieval_exception_falls_back_to_plain_generation():
    class BrokenRetriever(FakeRetriever):
        async def search(self, query, k=4, where=None):
            raise RuntimeError("index corrupted")

    backend = FakeBackend("plain answer")
    orchestrator = _orchestrator(backend, BrokenRetriever())

    assert await orchestrator.generate_with_context("Q") == "plain answer"
    assert backend.prompts == ["Q"]


@pytest.mark.asyncio
async def test_scores_below_threshold_are_dropped():
    backend = FakeBackend("answer")
    retriever = FakeRetriever(
        [scored("high", 0.9, "high.txt"), scored("mid", 0.6, "mid.txt"), scored("low", 0.2, "low.txt")]
    )
    orchestrator = _orchestrator(backend, retriever)

    await orchestrator.generate_with_context("Q", max_docs=3, min_score=0.5, include_scores=True)
    prompt = backend.prompts[0]
    assert "SOURCE: high.txt (relevance: 0.900)" in prompt
    assert "SOURCE: mid.txt (relevance: 0.600)" in prompt
    assert "low.txt" not in prompt


@pytest.mark.asyncio
async def test_min_score_ignored_without_include_scores():
    backend = FakeBackend("answer")
    retriever = FakeRetriever([scored("high", 0.9, "high.txt"), scored("low", 0.2, "low.txt")])
    orchestrator = _orchestrator(backend, retriever)

    await orchestrator.generate_with_context("Q", max_docs=2, min_score=0.5)
    assert "SOURCE: low.txt\n" in backend.prompts[0]


@pytest.mark.asyncio
async def test_include_scores_changes_rag_key(cache: CacheGateway):
    backend = FakeBackend("answer")
    orchestrator = _orchestrator(backend, FakeRetriever([scored("doc", 0.9, "a.txt")]), cache)

    await orchestrator.generate_with_context("Q", include_scores=False)
    await orchestrator.generate_with_context("Q", include_scores=True)
    assert len(backend.prompts) == 2


@pytest.mark.asyncio
async def test_end_to_end_context_answer_is_cached(cache: CacheGateway, hash_retriever):
    backend = FakeBackend({"response": "AI is artificial intelligence."})
    orchestrator = _orchestrator(backend, hash_retriever, cache)
    await orchestrator.add_documents(
        [
            Document(content="AI is a field of CS", metadata={"source": "a.txt"}),
            Document(content="Qdrant is a vector database", metadata={"source": "b.txt"}),
        ]
    )

    first = await orchestrator.generate_with_context("What is AI?", max_docs=2)
    assert len(backend.prompts) == 1
    assert "SOURCE: a.txt" in backend.prompts[0]
    assert "What is AI?" in backend.prompts[0]

    second = await orchestrator.generate_with_context("What is AI?", max_docs=2)
    assert second == first == "AI is artificial intelligence."
    assert len(backend.prompts) == 1


@pytest.mark.asyncio
async def test_respond_dispatches_on_use_context():
    backend = FakeBackend("answer")
    retriever = FakeRetriever([scored("doc", 0.9, "a.txt")])
    orchestrator = _orchestrator(backend, retriever)

    await orchestrator.respond(GenerationRequest(raw_query="plain", use_context=False))
    await orchestrator.respond(GenerationRequest(raw_query="rag", max_docs=2))
    assert backend.prompts[0] == "plain"
    assert retriever.searches == [("rag", 2)]


@pytest.mark.asyncio
async def test_stream_yields_words():
    orchestrator = _orchestrator(FakeBackend("one two three"), FakeRetriever())
    tokens = [token async for token in orchestrator.generate_stream("Q", delay=0)]
    assert tokens == ["one ", "two ", "three "]


@pytest.mark.asyncio
async def test_clear_cache_defaults_to_llm_namespace(cache: CacheGateway, fake_redis: FakeRedis):
    orchestrator = _orchestrator(FakeBackend(), FakeRetriever(), cache)
    await orchestrator.initialize()
    fake_redis.data.update({"llm:a": "1", "llm:b": "2", "rag:c": "3"})

    assert await orchestrator.clear_cache() == 2
    assert list(fake_redis.data) == ["rag:c"]


@pytest.mark.asyncio
async def test_health_checks_are_isolated(cache: CacheGateway):
    backend = FakeBackend()
    backend.healthy = False
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    report = await orchestrator.health_check()
    payload = report.to_dict()
    assert payload["status"] == "degraded"
    assert payload["ollama"] is False
    assert payload["cache"] is True
    assert payload["vectorStore"] is True
    assert payload["details"]["ollama"] == "backend offline"
    assert payload["details"]["cache"]["roundTrip"] is True


@pytest.mark.asyncio
async def test_health_unhealthy_when_everything_is_down():
    backend = FakeBackend()
    backend.healthy = False
    cache = CacheGateway(client=FailingRedis(), retry_base=0.0, max_retries=100)
    orchestrator = _orchestrator(backend, FakeRetriever(ready=False), cache)

    report = await orchestrator.health_check()
    assert report.status == "unhealthy"
    assert report.details["cache"]["error"] == "Cache service not initialized"


@pytest.mark.asyncio
async def test_shutdown_closes_collaborators(cache: CacheGateway, fake_redis: FakeRedis):
    backend = FakeBackend()
    retriever = FakeRetriever()
    orchestrator = _orchestrator(backend, retriever, cache)
    await orchestrator.initialize()
    await orchestrator.shutdown()
    assert backend.closed and retriever.closed and fake_redis.closed


@pytest.mark.asyncio
async def test_undecodable_cache_entry_still_generates(cache: CacheGateway, fake_redis: FakeRedis):
    async def undecodable(key):
        raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")

    fake_redis.get = undecodable
    backend = FakeBackend("fresh text")
    orchestrator = _orchestrator(backend, FakeRetriever(), cache)

    assert await orchestrator.generate("ping") == "fresh text"
    assert backend.prompts == ["ping"]


@pytest.mark.asyncio
async def test_retriever_lost_during_search_falls_back_without_rag_entry(cache: CacheGateway, fake_redis: FakeRedis):
    class DriftingRetriever(FakeRetriever):
        async def search(self, query, k=4, where=None):
            self.ready = False
            return []

    backend = FakeBackend("plain answer")
    orchestrator = _orchestrator(backend, DriftingRetriever(), cache)

    assert await orchestrator.generate_with_context("Q") == "plain answer"
    assert backend.prompts == ["Q"]
    assert not [key for key in fake_redis.data if key.startswith("rag:")]
