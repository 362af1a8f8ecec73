"""Prompt assembly for context-augmented generation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ragway.models import ScoredDocument

INSTRUCTIONS = """You are a helpful assistant that answers questions based on the provided context.

INSTRUCTIONS:
- Use the context below to answer the question
- If the context doesn't contain enough information to fully answer the question, say so clearly
- Be specific and cite relevant parts of the context when possible
- If multiple sources provide conflicting information, acknowledge this"""

NO_CONTEXT_TEMPLATE = "Answer this question: {question}\n\nNote: No specific context documents were available."


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    delimiter: str = "\n\n---\n\n"
    score_precision: int = 3


class PromptBuilder:
    """Builds prompts for the generation backend."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_context(self, documents: Sequence[ScoredDocument], *, include_scores: bool = False) -> str:
        blocks = []
        for index, item in enumerate(documents, start=1):
            source = item.document.source or f"Document {index}"
            score = f" (relevance: {item.score:.{self._config.score_precision}f})" if include_scores else ""
            blocks.append(f"SOURCE: {source}{score}\nCONTENT: {item.document.content}")
        return self._config.delimiter.join(blocks)

    def build_prompt(
        self,
        question: str,
        documents: Sequence[ScoredDocument],
        *,
        include_scores: bool = False,
    ) -> str:
        context = self.build_context(documents, include_scores=include_scores)
        return (
            f"{INSTRUCTIONS}\n\n"
            f"CONTEXT:\n{context}\n\n"
            f"QUESTION: {question}\n\n"
            "Please provide a comprehensive answer based on the context above:"
        )

    @staticmethod
    def build_no_context_prompt(question: str) -> str:
        return NO_CONTEXT_TEMPLATE.format(question=question)
