"""Embedding backends for ragway."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, Tuple

import httpx

from ragway.models import EmbeddingResult

LOGGER = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Raised when the embedding endpoint returns an unusable response."""


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding backends."""

    model: str = "dengcao/Qwen3-Embedding-0.6B:Q8_0"
    dim: int = 384
    base_url: str = "http://localhost:11434"
    timeout: float = 30.0


class EmbeddingBackend(Protocol):
    """Protocol describing embedding behaviour."""

    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding for ``text``, tagged if it is degraded."""

    async def dimensions(self, *, strict: bool = False) -> int:
        """Return the width of produced vectors.

        With ``strict`` the width must come from the model itself; a backend
        that can only guess raises :class:`EmbeddingError` instead.
        """

    async def aclose(self) -> None:
        """Release network resources."""


def hash_embedding(text: str, dim: int) -> Tuple[float, ...]:
    """Fold character codes into ``dim`` buckets and L2-normalize."""
    buckets = [0.0] * dim
    for index, char in enumerate(text):
        buckets[index % dim] += ord(char)
    norm = math.sqrt(sum(value * value for value in buckets))
    if norm == 0:
        return tuple(buckets)
    return tuple(value / norm for value in buckets)


class HashEmbeddingBackend:
    """Deterministic lightweight embedding used offline and as a fallback.

    Every vector it produces is tagged ``degraded``: it carries no semantics
    beyond character overlap.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()

    async def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=hash_embedding(text, self._config.dim), degraded=True)

    async def dimensions(self, *, strict: bool = False) -> int:
        return self._config.dim

    async def aclose(self) -> None:
        return None


class OllamaEmbeddingBackend:
    """Embedding backend calling Ollama's ``/api/embeddings`` endpoint.

    When the endpoint fails, the text is embedded with :func:`hash_embedding`
    at the detected width and the result is tagged ``degraded``.
    """

    def __init__(self, config: EmbeddingConfig | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self._client = client or httpx.AsyncClient(base_url=self._config.base_url, timeout=self._config.timeout)
        self._dimensions: int | None = None
        self._degraded_count = 0

    @property
    def degraded_count(self) -> int:
        return self._degraded_count

    async def dimensions(self, *, strict: bool = False) -> int:
        if self._dimensions is not None:
            return self._dimensions
        try:
            probe = await self._request("test")
            self._dimensions = len(probe)
            LOGGER.info("Detected embedding dimensions: %d", self._dimensions)
        except (httpx.HTTPError, EmbeddingError) as exc:
            if strict:
                raise EmbeddingError(f"Embedding width could not be detected: {exc}") from exc
            # Not cached: the model may come up later and report its real width.
            LOGGER.warning(
                "Failed to detect embedding dimensions, assuming %d: %s", self._config.dim, exc
            )
            return self._config.dim
        return self._dimensions

    async def embed(self, text: str) -> EmbeddingResult:
        try:
            vector = await self._request(text)
        except (httpx.HTTPError, EmbeddingError) as exc:
            LOGGER.warning("Embedding request failed for %r, using hash fallback: %s", text[:50], exc)
            self._degraded_count += 1
            # No probe here: the endpoint just failed
            width = self._dimensions or self._config.dim
            return EmbeddingResult(vector=hash_embedding(text, width), degraded=True)
        if self._dimensions != len(vector):
            if self._dimensions is not None:
                LOGGER.warning("Embedding width changed from %d to %d", self._dimensions, len(vector))
            self._dimensions = len(vector)
        return EmbeddingResult(vector=vector)

    async def _request(self, text: str) -> Tuple[float, ...]:
        response = await self._client.post(
            "/api/embeddings",
            json={"model": self._config.model, "prompt": text},
        )
        if response.status_code >= 400:
            raise EmbeddingError(f"Ollama API error: {response.status_code} - {response.text}")
        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Invalid embedding response from Ollama") from exc
        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Invalid embedding response from Ollama")
        return tuple(float(value) for value in embedding)

    async def aclose(self) -> None:
        await self._client.aclose()
