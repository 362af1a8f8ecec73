from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from ragway.cache import LLM_NAMESPACE, RAG_NAMESPACE, CacheKeyCodec

codec = CacheKeyCodec()

BASE_PARAMETERS = [("model", "mistral"), ("temperature", 0.7), ("max_docs", 3), ("min_score", 0.0)]


def test_key_is_deterministic_and_prefixed():
    first = codec.derive_key(RAG_NAMESPACE, BASE_PARAMETERS, "What is AI?")
    second = codec.derive_key(RAG_NAMESPACE, list(BASE_PARAMETERS), "What is AI?")
    assert first == second
    assert first.startswith("rag:")
    # 128-bit digest rendered as hex
    assert len(first.split(":", 1)[1]) == 32


def test_namespaces_are_disjoint():
    llm = codec.derive_key(LLM_NAMESPACE, BASE_PARAMETERS[:2], "ping")
    rag = codec.derive_key(RAG_NAMESPACE, BASE_PARAMETERS[:2], "ping")
    assert llm != rag
    assert llm.startswith("llm:")
    assert codec.namespace_pattern(LLM_NAMESPACE) == "llm:*"


def test_payload_change_moves_key():
    assert codec.derive_key(LLM_NAMESPACE, BASE_PARAMETERS, "a") != codec.derive_key(
        LLM_NAMESPACE, BASE_PARAMETERS, "b"
    )


def test_parameters_and_payload_do_not_bleed_together():
    left = codec.derive_key(LLM_NAMESPACE, [("model", "ab")], "c")
    right = codec.derive_key(LLM_NAMESPACE, [("model", "a")], "bc")
    assert left != right


@pytest.mark.parametrize("namespace", ["", "llm:v2", "rag*", "a?b", "x[1]"])
def test_invalid_namespace_rejected(namespace):
    with pytest.raises(ValueError):
        codec.derive_key(namespace, BASE_PARAMETERS, "payload")


@given(
    index=st.integers(min_value=0, max_value=len(BASE_PARAMETERS) - 1),
    replacement=st.one_of(st.integers(), st.floats(allow_nan=False), st.text(min_size=1), st.booleans()),
    payload=st.text(),
)
def test_any_single_parameter_change_changes_key(index, replacement, payload):
    name, value = BASE_PARAMETERS[index]
    # 1, 1.0 and True render differently; only identical values map to the same key
    if replacement == value and type(replacement) is type(value):
        return
    perturbed = list(BASE_PARAMETERS)
    perturbed[index] = (name, replacement)
    original = codec.derive_key(RAG_NAMESPACE, BASE_PARAMETERS, payload)
    assert codec.derive_key(RAG_NAMESPACE, perturbed, payload) != original
