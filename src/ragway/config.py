"""Runtime configuration for the ragway services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="ragway_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"
    host: str = "0.0.0.0"
    port: int = 3000

    # Redis response cache
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_retry_base_seconds: float = 0.1
    cache_retry_ceiling_seconds: float = 5.0
    cache_max_retries: int = 20
    # 50 polls x 0.1s bounds the startup wait to ~5 seconds
    cache_ready_attempts: int = 50
    cache_ready_interval_seconds: float = 0.1
    cache_socket_timeout_seconds: float = 2.0

    # Chroma vector index; chroma_host wins over chroma_persist_dir
    chroma_host: str | None = "localhost"
    chroma_port: int = 8000
    chroma_ssl: bool = False
    chroma_api_key: str | None = None
    chroma_persist_dir: Path | None = None
    chroma_collection: str = "chatbot_docs"
    distance_metric: Literal["cosine", "dot", "euclidean"] = "cosine"

    # Ollama model backend
    ollama_url: str = "http://localhost:11434"
    generator_model: str = "mistral:7b-instruct-v0.2-q3_K_S"
    generator_temperature: float = 0.7
    generator_timeout_seconds: float = 120.0
    embedding_model: str = "dengcao/Qwen3-Embedding-0.6B:Q8_0"
    # Width used when the embedding model cannot be probed
    embedding_dim: int = 384
    embedding_timeout_seconds: float = 30.0

    # RAG defaults
    rag_max_docs: int = 3
    rag_min_score: float = 0.0
    rag_include_scores: bool = False

    # Backpressure
    max_concurrent_generations: int = 4
    max_concurrent_searches: int = 8
    retriever_timeout_seconds: float = 10.0

    stream_delay_seconds: float = 0.05

    # CORS
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "DELETE", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    rate_limit_requests: int = 120  # per window per client
    rate_limit_window_seconds: int = 60

    @property
    def chroma_headers(self) -> dict[str, str]:
        if not self.chroma_api_key:
            return {}
        return {"x-chroma-token": self.chroma_api_key}


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
