"""Deterministic cache key derivation.

Keys have the form ``<namespace>:<digest>``. The digest is a 128-bit BLAKE2b
hash over the canonical JSON rendering of the ordered parameters followed by
the payload, so any change to a parameter or to the payload moves the entry to
a different key. Namespaces keep plain generations, RAG generations and health
probes apart so a pattern flush of one never evicts another.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Sequence, Tuple

LLM_NAMESPACE = "llm"
RAG_NAMESPACE = "rag"
HEALTHCHECK_NAMESPACE = "healthcheck"

_FORBIDDEN_NAMESPACE_CHARS = frozenset(":*?[]\\")
_SEPARATOR = "\x1f"

Parameters = Sequence[Tuple[str, Any]]


class CacheKeyCodec:
    """Maps (namespace, parameters, payload) to a compact cache key."""

    def __init__(self, digest_size: int = 16) -> None:
        self._digest_size = digest_size

    def derive_key(self, namespace: str, parameters: Parameters, payload: str) -> str:
        _validate_namespace(namespace)
        hasher = hashlib.blake2b(digest_size=self._digest_size)
        hasher.update(self.render_parameters(parameters).encode("utf-8"))
        hasher.update(_SEPARATOR.encode("utf-8"))
        hasher.update(payload.encode("utf-8"))
        return f"{namespace}:{hasher.hexdigest()}"

    @staticmethod
    def render_parameters(parameters: Parameters) -> str:
        # Order is significant; callers pass parameters in a fixed order.
        pairs = [[str(name), value] for name, value in parameters]
        return json.dumps(pairs, separators=(",", ":"), sort_keys=True, default=str)

    @staticmethod
    def namespace_pattern(namespace: str) -> str:
        _validate_namespace(namespace)
        return f"{namespace}:*"


def _validate_namespace(namespace: str) -> None:
    if not namespace:
        raise ValueError("Cache namespace must be non-empty")
    if _FORBIDDEN_NAMESPACE_CHARS.intersection(namespace):
        raise ValueError(f"Cache namespace contains reserved characters: {namespace!r}")
