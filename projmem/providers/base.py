"""
Base provider protocol and prompt builders.

Generation providers are the only part of projmem that talks to a
language model. The store itself never does network I/O; consolidation and
question answering call a provider through this interface. Any object
with a matching generate() method qualifies.
"""

from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class GenerationProvider(Protocol):
    """
    Sends a system+user prompt to a language model and returns its text.

    A minimal provider:

        class EchoGeneration:
            def generate(self, system, user, *, max_tokens=4096):
                return user
    """

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        """Return the model reply to ``user`` under ``system``, capped at
        ``max_tokens``. None means no text was produced.
        """
        ...


class NullGeneration:
    """Provider used when no language model is configured."""

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        return None


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

CONSOLIDATION_SYSTEM_PROMPT = (
    "You are a memory consolidator for a coding project. "
    "You reply with a single JSON object and nothing else."
)

ASK_SYSTEM_PROMPT = (
    "You answer questions about a software project using only the "
    "project memories you are given."
)


def build_consolidation_prompt(type_name: str, memories: Iterable[Mapping[str, str]]) -> str:
    """Prompt asking for a keep/merge/drop plan over one group of memories."""
    memories = list(memories)
    mem_list = "\n".join(f"  {m['id']}: {m['content']}" for m in memories)
    return f"""Below are {len(memories)} memories of type "{type_name}" from a coding project.

Merge memories that overlap or can be combined into one clearer memory.
Remove memories that are outdated or no longer relevant given later ones.
Keep memories that are unique and still valuable.

Return JSON only:
{{
  "keep": ["mem_id1", "mem_id2"],
  "merge": [
    {{"content": "merged text here", "tags": ["tag1"], "sources": ["mem_id3", "mem_id4"]}}
  ],
  "drop": ["mem_id5"]
}}

Every input memory ID must appear in exactly one of: keep, merge.sources, or drop.

MEMORIES:
{mem_list}"""


def build_ask_prompt(question: str, memories: Iterable) -> str:
    """Prompt answering a question from a list of Memory records."""
    mem_list = "\n".join(f"  [{m.type.value}] {m.content}" for m in memories)
    return f"""Answer the question using ONLY the memories below. Be concise and specific. If the memories don't contain enough info, say so.

MEMORIES:
{mem_list}

QUESTION: {question}"""


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Maps provider names used in projmem.toml to provider classes.

        provider = get_registry().create_generation("anthropic", {"model": "claude-haiku-4-5-20251001"})
    """

    def __init__(self):
        self._generation_providers: dict[str, type] = {"none": NullGeneration}
        self._builtins_imported = False

    def _import_builtins(self) -> None:
        """Import the built-in provider module, which registers its classes."""
        if self._builtins_imported:
            return
        self._builtins_imported = True
        from . import llm  # noqa: F401

    def register_generation(self, name: str, provider_class: type) -> None:
        """Register a generation provider class."""
        self._generation_providers[name] = provider_class

    def create_generation(self, name: str, params: dict | None = None) -> GenerationProvider:
        """Create a generation provider instance."""
        self._import_builtins()
        if name not in self._generation_providers:
            available = ", ".join(self._generation_providers.keys()) or "none"
            raise ValueError(
                f"Unknown generation provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._generation_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(f"Generation provider '{name}' is missing a dependency: {e}") from e

    def list_generation_providers(self) -> list[str]:
        """List registered generation provider names."""
        self._import_builtins()
        return list(self._generation_providers.keys())


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Process-wide registry; built-in providers register on first use."""
    return _registry
