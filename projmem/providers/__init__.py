"""Generation providers for consolidation and question answering."""

from .base import (
    GenerationProvider,
    NullGeneration,
    ProviderRegistry,
    build_ask_prompt,
    build_consolidation_prompt,
    get_registry,
)

__all__ = [
    "GenerationProvider",
    "NullGeneration",
    "ProviderRegistry",
    "build_ask_prompt",
    "build_consolidation_prompt",
    "get_registry",
]
