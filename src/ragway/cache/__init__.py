"""Response cache components."""

from .gateway import CacheError, CacheGateway, reconnect_delay
from .keys import HEALTHCHECK_NAMESPACE, LLM_NAMESPACE, RAG_NAMESPACE, CacheKeyCodec

__all__ = [
    "CacheError",
    "CacheGateway",
    "CacheKeyCodec",
    "HEALTHCHECK_NAMESPACE",
    "LLM_NAMESPACE",
    "RAG_NAMESPACE",
    "reconnect_delay",
]
