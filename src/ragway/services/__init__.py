"""Service layer orchestrations for ragway."""

from .generation import GenerationBackend, GenerationConfig, GenerationError, OllamaGenerator, extract_text
from .orchestrator import OrchestratorConfig, RagOrchestrator
from .prompts import PromptBuilder, PromptBuilderConfig

__all__ = [
    "GenerationBackend",
    "GenerationConfig",
    "GenerationError",
    "OllamaGenerator",
    "OrchestratorConfig",
    "PromptBuilder",
    "PromptBuilderConfig",
    "RagOrchestrator",
    "extract_text",
]
