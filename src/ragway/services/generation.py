"""Generation backends for ragway."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

LOGGER = logging.getLogger(__name__)

# Fields checked, in order, when a backend returns a structure instead of text.
TEXT_FIELDS = ("content", "text", "message", "output", "response")


class GenerationError(RuntimeError):
    """Raised when the model backend fails to produce a response."""


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "mistral:7b-instruct-v0.2-q3_K_S"
    temperature: float = 0.7
    base_url: str = "http://localhost:11434"
    timeout: float = 120.0
    max_concurrency: int = 4


class GenerationBackend(Protocol):
    """Protocol describing generation behaviour.

    ``invoke`` may return plain text or any structure :func:`extract_text`
    understands.
    """

    model: str
    temperature: float

    async def invoke(self, prompt: str) -> Any:
        """Run the model on ``prompt``."""

    async def ping(self) -> None:
        """Raise if the backend is not serving."""

    async def aclose(self) -> None:
        """Release network resources."""


def extract_text(response: Any) -> str:
    """Return the text carried by a backend response.

    Strings are returned as-is. Mappings and objects are searched for the
    first non-empty field among ``content``, ``text``, ``message``,
    ``output`` and ``response``; a nested structure in that field is searched
    the same way. Anything else falls back to ``str(response)``.
    """
    if isinstance(response, str):
        return response
    if response is None:
        return ""
    for name in TEXT_FIELDS:
        if isinstance(response, Mapping):
            value = response.get(name)
        else:
            value = getattr(response, name, None)
        if value:
            return value if isinstance(value, str) else extract_text(value)
    return str(response)


class OllamaGenerator:
    """Generation backend calling Ollama's ``/api/generate`` endpoint."""

    def __init__(self, config: GenerationConfig | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config or GenerationConfig()
        self._client = client or httpx.AsyncClient(base_url=self._config.base_url, timeout=self._config.timeout)
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def temperature(self) -> float:
        return self._config.temperature

    async def invoke(self, prompt: str) -> Mapping[str, Any]:
        return await self._generate(prompt, {"temperature": self._config.temperature})

    async def ping(self) -> None:
        await self._generate("ping", {"temperature": 0.0, "num_predict": 1})

    async def _generate(self, prompt: str, options: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = {"model": self._config.model, "prompt": prompt, "stream": False, "options": dict(options)}
        async with self._semaphore:
            try:
                response = await self._client.post("/api/generate", json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise GenerationError(
                    f"Ollama returned {exc.response.status_code}: {exc.response.text[:200]}"
                ) from exc
            except httpx.HTTPError as exc:
                raise GenerationError(f"Ollama request failed: {exc!r}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("Ollama returned a non-JSON body") from exc
        if isinstance(data, Mapping) and data.get("error"):
            raise GenerationError(str(data["error"]))
        LOGGER.debug("Ollama generation finished for model %s", self._config.model)
        return data

    async def aclose(self) -> None:
        await self._client.aclose()
