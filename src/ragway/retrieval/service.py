"""Context retrieval over a Chroma collection."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Mapping, MutableMapping, Sequence
from uuid import NAMESPACE_URL, uuid5

import chromadb
from chromadb.api import ClientAPI

from ragway.embeddings import EmbeddingBackend
from ragway.metrics.observability import PipelineMetrics, get_logger
from ragway.models import (
    CollectionSchema,
    DimensionDiagnosis,
    DistanceMetric,
    Document,
    EmbeddingResult,
    RetrieverHealth,
    ScoredDocument,
)

ClientFactory = Callable[[], ClientAPI]

_ID_KEY = "_ragway_id"
_WIDTH_KEY = "dimension"
_SPACE_KEY = "hnsw:space"


class RetrieverError(RuntimeError):
    """Raised when the vector index cannot serve a write or admin operation."""


class DimensionMismatchError(RetrieverError):
    """Persisted collection width differs from the embedding width."""

    def __init__(self, expected: int, actual: int, collection: str) -> None:
        self.expected = expected
        self.actual = actual
        self.collection = collection
        super().__init__(
            f"Dimension mismatch: collection={actual}, model={expected}. "
            f"Delete and recreate collection '{collection}' with {expected} dimensions, "
            f"or switch to an embedding model that produces {actual} dimensions."
        )


class DocumentIndexingError(RetrieverError):
    """A batch insert was aborted; ``index`` is the failing document, if any."""

    def __init__(self, index: int | None, reason: str) -> None:
        self.index = index
        self.reason = reason
        where = f"document {index}" if index is not None else "batch upsert"
        super().__init__(f"Failed to add documents ({where}): {reason}")


def chroma_client_factory(
    *,
    host: str | None = None,
    port: int = 8000,
    ssl: bool = False,
    headers: Mapping[str, str] | None = None,
    persist_directory: str | None = None,
) -> ClientFactory:
    """Build a deferred Chroma client constructor.

    Chroma's HTTP client talks to the server as soon as it is created, so
    construction is postponed until the retriever initializes.
    """

    def factory() -> ClientAPI:
        if host:
            return chromadb.HttpClient(host=host, port=port, ssl=ssl, headers=dict(headers or {}))
        if persist_directory:
            return chromadb.PersistentClient(path=persist_directory)
        return chromadb.EphemeralClient()

    return factory


class ContextRetriever:
    """Resilient wrapper over a Chroma collection.

    ``search`` never raises: an unreachable or misconfigured index yields no
    documents, the same as an index with nothing relevant. The collection
    width is checked against the embedding width before the retriever marks
    itself ready, and a mismatch keeps it unready for good.
    """

    def __init__(
        self,
        embeddings: EmbeddingBackend,
        collection_name: str = "chatbot_docs",
        *,
        client: ClientAPI | None = None,
        client_factory: ClientFactory | None = None,
        distance: DistanceMetric = DistanceMetric.COSINE,
        max_concurrency: int = 8,
        timeout: float | None = 10.0,
    ) -> None:
        self._embeddings = embeddings
        self._collection_name = collection_name
        self._client = client
        self._client_factory = client_factory or chroma_client_factory()
        self._distance = distance
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._timeout = timeout
        self._collection: Any = None
        self._schema: CollectionSchema | None = None
        self._ready = False
        self._error: str | None = None
        self._degraded_embeddings = 0
        self._init_lock = asyncio.Lock()
        self._logger = get_logger("retrieval")

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def schema(self) -> CollectionSchema | None:
        return self._schema

    @property
    def degraded_embeddings(self) -> int:
        return self._degraded_embeddings

    def is_ready(self) -> bool:
        return self._ready and self._collection is not None

    async def ensure_ready(self) -> bool:
        """Re-run initialization if needed; False while the index cannot serve."""
        try:
            await self._require_ready()
        except RetrieverError:
            return False
        return True

    # Setup -----------------------------------------------------------------

    async def initialize(self) -> bool:
        try:
            # A guessed width must never define the collection
            width = await self._embeddings.dimensions(strict=True)
            await self.ensure_schema(width, self._distance)
        except DimensionMismatchError as exc:
            self._ready = False
            self._error = str(exc)
            return False
        except Exception as exc:
            self._ready = False
            self._error = f"Vector store initialization failed: {exc}"
            self._logger.error("retriever.init_failed", collection=self._collection_name, error=str(exc))
            return False
        self._ready = True
        self._error = None
        self._logger.info(
            "retriever.ready",
            collection=self._collection_name,
            dimensions=self._schema.vector_width if self._schema else None,
        )
        return True

    async def ensure_schema(self, expected_width: int, distance: DistanceMetric | None = None) -> CollectionSchema:
        distance = distance or self._distance

        def ensure() -> tuple[Any, int | None, bool]:
            client = self._get_client()
            existing = self._existing_collection(client)
            if existing is None:
                created = client.create_collection(
                    name=self._collection_name,
                    metadata={_WIDTH_KEY: expected_width, _SPACE_KEY: distance.chroma_space},
                )
                return created, expected_width, True
            return existing, self._persisted_width(existing), False

        collection, actual, created = await self._run(ensure)
        if created:
            self._logger.info("retriever.collection_created", collection=self._collection_name, dimensions=expected_width)
        if actual is not None and actual != expected_width:
            self._collection = None
            self._schema = None
            self._logger.error(
                "retriever.dimension_mismatch",
                collection=self._collection_name,
                collection_dimensions=actual,
                model_dimensions=expected_width,
            )
            raise DimensionMismatchError(expected_width, actual, self._collection_name)
        space = (collection.metadata or {}).get(_SPACE_KEY)
        persisted_distance = DistanceMetric.from_chroma_space(space) if space else distance
        if persisted_distance is not distance:
            self._logger.warning(
                "retriever.distance_differs",
                requested=distance.value,
                persisted=persisted_distance.value,
            )
        self._collection = collection
        self._schema = CollectionSchema(
            name=self._collection_name,
            vector_width=expected_width,
            distance=persisted_distance,
        )
        return self._schema

    # Operations ------------------------------------------------------------

    async def add_documents(self, documents: Sequence[Document]) -> list[str]:
        if not documents:
            return []
        await self._require_ready()
        ids: list[str] = []
        contents: list[str] = []
        vectors: list[list[float]] = []
        metadatas: list[MutableMapping[str, Any]] = []
        for index, document in enumerate(documents):
            try:
                embedding = await self._embed(document.content)
            except Exception as exc:
                raise DocumentIndexingError(index, str(exc)) from exc
            try:
                self._check_width(embedding)
            except DimensionMismatchError as exc:
                raise DocumentIndexingError(index, str(exc)) from exc
            document_id = _document_id(document)
            ids.append(document_id)
            contents.append(document.content)
            vectors.append(list(embedding.vector))
            metadatas.append(self._serialize_metadata(document, document_id))
        try:
            await self._run(
                self._collection.upsert,
                ids=ids,
                documents=contents,
                embeddings=vectors,
                metadatas=metadatas,
            )
        except Exception as exc:
            raise DocumentIndexingError(None, str(exc)) from exc
        self._logger.info("retriever.documents_added", count=len(ids), collection=self._collection_name)
        return ids

    async def search(
        self,
        query: str,
        k: int = 4,
        where: Mapping[str, Any] | None = None,
    ) -> list[ScoredDocument]:
        if k <= 0:
            return []
        start = time.perf_counter()
        try:
            await self._require_ready()
            embedding = await self._embed(query)
            self._check_width(embedding)
            results = await self._query(embedding, k, where)
        except Exception as exc:
            self._logger.warning("retrieval.search_failed", query=query[:50], error=str(exc))
            if "dimension" in str(exc).lower():
                self._logger.error(
                    "retrieval.dimension_error",
                    hint="embedding model and collection have different vector widths",
                )
            return []
        documents = sorted(self._deserialize_results(results), key=lambda item: item.score, reverse=True)
        duration = time.perf_counter() - start
        PipelineMetrics.observe_retrieval(duration, len(documents), (item.score for item in documents))
        self._logger.info(
            "retrieval.complete",
            document_count=len(documents),
            duration_seconds=duration,
            top_k=k,
            scores=[round(item.score, 3) for item in documents],
        )
        return documents

    async def delete_documents(self, where: Mapping[str, Any]) -> None:
        await self._require_ready()
        try:
            await self._run(self._collection.delete, where=dict(where))
        except Exception as exc:
            raise RetrieverError(f"Deletion failed: {exc}") from exc
        self._logger.info("retriever.documents_deleted", where=dict(where))

    async def count(self) -> int:
        try:
            await self._require_ready()
            return int(await self._run(self._collection.count))
        except Exception as exc:
            self._logger.warning("retriever.count_failed", error=str(exc))
            return -1

    async def health_check(self) -> RetrieverHealth:
        if not self.is_ready():
            return RetrieverHealth(
                initialized=False,
                connected=False,
                error=self._error or "Vector store not initialized",
                degraded_embeddings=self._degraded_embeddings,
            )
        try:
            embedding = await self._embed("health check")
            self._check_width(embedding)
            await self._query(embedding, 1, None)
        except DimensionMismatchError as exc:
            return RetrieverHealth(
                initialized=False,
                connected=False,
                dimensions=exc.expected,
                error=str(exc),
                degraded_embeddings=self._degraded_embeddings,
            )
        except Exception as exc:
            return RetrieverHealth(
                initialized=True,
                connected=False,
                error=str(exc),
                degraded_embeddings=self._degraded_embeddings,
            )
        return RetrieverHealth(
            initialized=True,
            connected=True,
            dimensions=len(embedding.vector),
            degraded_embeddings=self._degraded_embeddings,
        )

    async def diagnose_dimensions(self) -> DimensionDiagnosis:
        try:
            model_dims = await self._embeddings.dimensions()

            def read_width() -> int | None:
                existing = self._existing_collection(self._get_client())
                return self._persisted_width(existing) if existing is not None else None

            collection_dims = await self._run(read_width)
        except Exception as exc:
            return DimensionDiagnosis(
                model_dimensions=0,
                collection_dimensions=None,
                match=False,
                suggestions=(f"Error diagnosing: {exc}",),
            )
        match = collection_dims is None or collection_dims == model_dims
        suggestions: tuple[str, ...] = ()
        if not match:
            suggestions = (
                f"Current: Model={model_dims}d, Collection={collection_dims}d",
                f"Option 1: Delete collection '{self._collection_name}' and recreate with {model_dims} dimensions",
                f"Option 2: Switch to an embedding model that produces {collection_dims} dimensions",
            )
        return DimensionDiagnosis(
            model_dimensions=model_dims,
            collection_dimensions=collection_dims,
            match=match,
            suggestions=suggestions,
        )

    async def close(self) -> None:
        await self._embeddings.aclose()

    # Internals -------------------------------------------------------------

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Chroma call in a worker thread.

        The concurrency slot is held until the worker finishes, even when the
        caller stops waiting on timeout, so abandoned calls still count
        against the limit.
        """
        await self._semaphore.acquire()
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
        worker.add_done_callback(self._release_slot)
        return await asyncio.wait_for(asyncio.shield(worker), timeout=self._timeout)

    def _release_slot(self, worker: "asyncio.Future[Any]") -> None:
        self._semaphore.release()
        if not worker.cancelled() and worker.exception() is not None:
            self._logger.debug("retriever.worker_failed", error=str(worker.exception()))

    async def _require_ready(self) -> None:
        if self.is_ready():
            return
        async with self._init_lock:
            if self.is_ready():
                return
            if not await self.initialize():
                raise RetrieverError(self._error or "Vector store initialization failed")

    def _check_width(self, embedding: EmbeddingResult) -> None:
        """Refuse vectors whose width no longer matches the collection.

        The retriever is marked unready; the next request re-runs
        initialization, which keeps refusing until the widths agree again.
        """
        width = self._schema.vector_width if self._schema else None
        actual = len(embedding.vector)
        if width is None or actual == width:
            return
        error = DimensionMismatchError(actual, width, self._collection_name)
        self._ready = False
        self._collection = None
        self._error = str(error)
        self._logger.error(
            "retriever.dimension_mismatch",
            collection=self._collection_name,
            collection_dimensions=width,
            model_dimensions=actual,
        )
        raise error

    async def _embed(self, text: str) -> EmbeddingResult:
        embedding = await self._embeddings.embed(text)
        if embedding.degraded:
            self._degraded_embeddings += 1
            PipelineMetrics.observe_degraded_embedding()
        return embedding

    async def _query(self, embedding: EmbeddingResult, k: int, where: Mapping[str, Any] | None) -> Mapping[str, Any]:
        return await self._run(
            self._collection.query,
            query_embeddings=[list(embedding.vector)],
            n_results=k,
            where=dict(where) if where else None,
        )

    def _get_client(self) -> ClientAPI:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _existing_collection(self, client: ClientAPI) -> Any:
        # list_collections yields names on some chromadb releases, Collection objects on others
        names = {getattr(item, "name", item) for item in client.list_collections()}
        if self._collection_name not in names:
            return None
        return client.get_collection(name=self._collection_name)

    @staticmethod
    def _persisted_width(collection: Any) -> int | None:
        metadata = collection.metadata or {}
        if _WIDTH_KEY in metadata:
            return int(metadata[_WIDTH_KEY])
        sample = collection.get(limit=1, include=["embeddings"])
        embeddings = sample.get("embeddings")
        if embeddings is not None and len(embeddings) > 0:
            return len(embeddings[0])
        return None

    @staticmethod
    def _serialize_metadata(document: Document, document_id: str) -> MutableMapping[str, Any]:
        metadata: MutableMapping[str, Any] = {_ID_KEY: document_id}
        for key, value in document.metadata.items():
            if value is None:
                continue
            metadata[str(key)] = value if isinstance(value, (str, int, float, bool)) else str(value)
        return metadata

    def _deserialize_results(self, results: Mapping[str, Any]) -> list[ScoredDocument]:
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        if not documents:
            return []
        metric = self._schema.distance if self._schema else self._distance
        scored: list[ScoredDocument] = []
        for index, content in enumerate(documents):
            metadata = metadatas[index] if index < len(metadatas) and metadatas[index] else {}
            distance = distances[index] if index < len(distances) else None
            scored.append(
                ScoredDocument(
                    document=Document(
                        content=content or "",
                        metadata={k: v for k, v in dict(metadata).items() if k != _ID_KEY},
                    ),
                    score=metric.score(float(distance)) if distance is not None else 0.0,
                )
            )
        return scored

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list) and value:
            first = value[0]
            return list(first) if first is not None else []
        return []


def _document_id(document: Document) -> str:
    payload = json.dumps(
        {"content": document.content, "metadata": dict(document.metadata)},
        sort_keys=True,
        default=str,
    )
    return uuid5(NAMESPACE_URL, payload).hex
