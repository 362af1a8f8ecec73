from __future__ import annotations

import asyncio
import threading

import httpx
import pytest

from ragway.embeddings import EmbeddingConfig, HashEmbeddingBackend, OllamaEmbeddingBackend
from ragway.models import DistanceMetric, Document, EmbeddingResult
from ragway.retrieval import ContextRetriever, DimensionMismatchError, DocumentIndexingError, RetrieverError


class ExplodingEmbeddings(HashEmbeddingBackend):
    async def embed(self, text: str) -> EmbeddingResult:
        if text == "boom":
            raise RuntimeError("embedding service exploded")
        return await super().embed(text)


def _docs() -> list[Document]:
    return [
        Document(content="alpha beta gamma", metadata={"source": "a.txt"}),
        Document(content="lorem ipsum dolor", metadata={"source": "b.txt"}),
    ]


@pytest.mark.asyncio
async def test_initialize_creates_collection_with_width(hash_retriever: ContextRetriever, chroma_client, collection_name):
    assert await hash_retriever.initialize() is True
    assert hash_retriever.is_ready()
    assert hash_retriever.schema.vector_width == 16
    assert hash_retriever.schema.distance is DistanceMetric.COSINE
    metadata = chroma_client.get_collection(collection_name).metadata
    assert metadata["dimension"] == 16
    assert metadata["hnsw:space"] == "cosine"


@pytest.mark.asyncio
async def test_add_and_search_returns_ordered_documents(hash_retriever: ContextRetriever):
    await hash_retriever.initialize()
    ids = await hash_retriever.add_documents(_docs())
    assert len(ids) == 2
    assert await hash_retriever.count() == 2

    results = await hash_retriever.search("alpha beta gamma", k=2)
    assert [item.document.content for item in results][0] == "alpha beta gamma"
    assert results[0].score >= results[-1].score
    assert results[0].document.metadata == {"source": "a.txt"}
    # hash embeddings are always tagged degraded
    assert hash_retriever.degraded_embeddings == 3


@pytest.mark.asyncio
async def test_upsert_is_idempotent_for_identical_documents(hash_retriever: ContextRetriever):
    await hash_retriever.initialize()
    first = await hash_retriever.add_documents(_docs())
    second = await hash_retriever.add_documents(_docs())
    assert first == second
    assert await hash_retriever.count() == 2


@pytest.mark.asyncio
async def test_search_honours_metadata_filter(hash_retriever: ContextRetriever):
    await hash_retriever.initialize()
    await hash_retriever.add_documents(_docs())
    results = await hash_retriever.search("alpha", k=2, where={"source": "b.txt"})
    assert [item.document.source for item in results] == ["b.txt"]


@pytest.mark.asyncio
async def test_delete_documents_by_filter(hash_retriever: ContextRetriever):
    await hash_retriever.initialize()
    await hash_retriever.add_documents(_docs())
    await hash_retriever.delete_documents({"source": "a.txt"})
    assert await hash_retriever.count() == 1


@pytest.mark.asyncio
async def test_dimension_mismatch_refuses_to_serve(chroma_client, collection_name):
    narrow = ContextRetriever(
        HashEmbeddingBackend(EmbeddingConfig(dim=8)), collection_name=collection_name, client=chroma_client
    )
    assert await narrow.initialize()

    wide = ContextRetriever(
        HashEmbeddingBackend(EmbeddingConfig(dim=16)), collection_name=collection_name, client=chroma_client
    )
    assert await wide.initialize() is False
    assert not wide.is_ready()

    health = await wide.health_check()
    assert health.error
    assert "collection=8" in health.error and "model=16" in health.error
    assert await wide.search("anything") == []

    diagnosis = await wide.diagnose_dimensions()
    assert diagnosis.match is False
    assert diagnosis.collection_dimensions == 8
    assert len(diagnosis.suggestions) == 3


@pytest.mark.asyncio
async def test_ensure_schema_raises_mismatch(chroma_client, collection_name):
    retriever = ContextRetriever(
        HashEmbeddingBackend(EmbeddingConfig(dim=8)), collection_name=collection_name, client=chroma_client
    )
    await retriever.ensure_schema(8)
    with pytest.raises(DimensionMismatchError) as excinfo:
        await retriever.ensure_schema(32)
    assert excinfo.value.expected == 32
    assert excinfo.value.actual == 8


@pytest.mark.asyncio
async def test_failing_document_aborts_batch_with_index(chroma_client, collection_name):
    retriever = ContextRetriever(
        ExplodingEmbeddings(EmbeddingConfig(dim=16)), collection_name=collection_name, client=chroma_client
    )
    await retriever.initialize()
    docs = [Document(content="fine"), Document(content="boom"), Document(content="never reached")]
    with pytest.raises(DocumentIndexingError) as excinfo:
        await retriever.add_documents(docs)
    assert excinfo.value.index == 1
    assert await retriever.count() == 0


@pytest.mark.asyncio
async def test_unreachable_index_is_not_ready():
    def factory():
        raise ConnectionError("chroma is down")

    retriever = ContextRetriever(HashEmbeddingBackend(EmbeddingConfig(dim=16)), client_factory=factory)
    assert await retriever.initialize() is False
    assert await retriever.search("query") == []
    assert await retriever.count() == -1
    health = await retriever.health_check()
    assert health.to_dict()["connected"] is False
    assert "chroma is down" in health.error
    with pytest.raises(RetrieverError):
        await retriever.add_documents([Document(content="x")])


@pytest.mark.asyncio
async def test_health_reports_width_when_ready(hash_retriever: ContextRetriever):
    await hash_retriever.initialize()
    health = await hash_retriever.health_check()
    assert health.connected
    assert health.to_dict()["embeddingDimensions"] == 16


class SwitchableOllama:
    """Serves ``/api/embeddings`` with a status and width that tests can change."""

    def __init__(self, status: int = 200, width: int = 16) -> None:
        self.status = status
        self.width = width

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.status != 200:
            return httpx.Response(self.status, text="model is loading")
        return httpx.Response(200, json={"embedding": [0.1] * self.width})

    def backend(self, configured_dim: int = 16) -> OllamaEmbeddingBackend:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self), base_url="http://ollama.test")
        return OllamaEmbeddingBackend(EmbeddingConfig(dim=configured_dim), client=client)


@pytest.mark.asyncio
async def test_model_down_at_startup_does_not_create_collection(chroma_client, collection_name):
    ollama = SwitchableOllama(status=503, width=8)
    retriever = ContextRetriever(
        ollama.backend(configured_dim=16), collection_name=collection_name, client=chroma_client
    )

    assert await retriever.initialize() is False
    assert not retriever.is_ready()
    assert retriever.schema is None
    assert collection_name not in {getattr(item, "name", item) for item in chroma_client.list_collections()}
    assert await retriever.search("What is AI?") == []

    ollama.status = 200
    assert await retriever.ensure_ready() is True
    assert retriever.schema.vector_width == 8


@pytest.mark.asyncio
async def test_width_change_after_startup_marks_retriever_unready(chroma_client, collection_name):
    ollama = SwitchableOllama(width=16)
    retriever = ContextRetriever(ollama.backend(), collection_name=collection_name, client=chroma_client)
    assert await retriever.initialize() is True
    await retriever.add_documents([Document(content="AI is a field of CS", metadata={"source": "a.txt"})])

    ollama.width = 8
    assert await retriever.search("What is AI?") == []
    assert not retriever.is_ready()

    health = await retriever.health_check()
    assert health.connected is False
    assert "collection=16" in health.error and "model=8" in health.error
    assert await retriever.ensure_ready() is False
    with pytest.raises(RetrieverError):
        await retriever.add_documents([Document(content="new")])


@pytest.mark.asyncio
async def test_health_check_detects_width_change(chroma_client, collection_name):
    ollama = SwitchableOllama(width=16)
    retriever = ContextRetriever(ollama.backend(), collection_name=collection_name, client=chroma_client)
    await retriever.initialize()

    ollama.width = 8
    health = await retriever.health_check()
    assert health.connected is False
    assert health.dimensions == 8
    assert "collection=16" in health.error
    assert not retriever.is_ready()


@pytest.mark.asyncio
async def test_concurrent_searches_initialize_once(chroma_client, collection_name):
    class CountingEmbeddings(HashEmbeddingBackend):
        width_checks = 0

        async def dimensions(self, *, strict: bool = False) -> int:
            CountingEmbeddings.width_checks += 1
            await asyncio.sleep(0.01)
            return await super().dimensions(strict=strict)

    retriever = ContextRetriever(
        CountingEmbeddings(EmbeddingConfig(dim=16)), collection_name=collection_name, client=chroma_client
    )
    await asyncio.gather(*(retriever.search(f"query {index}") for index in range(5)))
    assert CountingEmbeddings.width_checks == 1
    assert retriever.is_ready()


@pytest.mark.asyncio
async def test_timed_out_call_keeps_its_concurrency_slot():
    retriever = ContextRetriever(HashEmbeddingBackend(EmbeddingConfig(dim=16)), max_concurrency=1, timeout=0.05)
    release = threading.Event()

    with pytest.raises(asyncio.TimeoutError):
        await retriever._run(release.wait, 5)
    # the worker thread is still blocked, so the only slot stays taken
    assert retriever._semaphore.locked()

    release.set()
    for _ in range(100):
        if not retriever._semaphore.locked():
            break
        await asyncio.sleep(0.01)
    assert not retriever._semaphore.locked()
