from __future__ import annotations

from uuid import uuid4

import chromadb
import pytest

from ragway.cache import CacheGateway
from ragway.embeddings import EmbeddingConfig, HashEmbeddingBackend
from ragway.retrieval import ContextRetriever

from fakes import FailingRedis, FakeRedis


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis: FakeRedis) -> CacheGateway:
    return CacheGateway(client=fake_redis, retry_base=0.0, max_retries=0)


@pytest.fixture()
def failing_cache() -> CacheGateway:
    return CacheGateway(client=FailingRedis(), retry_base=0.0, max_retries=0)


@pytest.fixture()
def chroma_client():
    return chromadb.EphemeralClient()


@pytest.fixture()
def collection_name() -> str:
    return f"test-{uuid4().hex[:12]}"


@pytest.fixture()
def hash_retriever(chroma_client, collection_name: str) -> ContextRetriever:
    return ContextRetriever(
        HashEmbeddingBackend(EmbeddingConfig(dim=16)),
        collection_name=collection_name,
        client=chroma_client,
    )
