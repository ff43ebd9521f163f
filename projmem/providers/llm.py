"""
Generation providers backed by hosted or local language models.

Each provider exposes ``generate(system, user, *, max_tokens)`` and returns
the model's text, or None when the model produced nothing usable. Transport
and API errors propagate; callers decide whether to fall back.
"""

import os

import requests

from . import ollama_utils
from .base import get_registry

ANTHROPIC_KEY_VARS = ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")
OPENAI_KEY_VARS = ("PROJMEM_OPENAI_API_KEY", "OPENAI_API_KEY")

# Models that reject max_tokens/temperature in favour of max_completion_tokens
_OPENAI_REASONING_PREFIXES = ("gpt-5", "o3", "o4")


def _key_from_env(explicit: str | None, names: tuple[str, ...]) -> str | None:
    if explicit:
        return explicit
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _as_chat(system: str, user: str) -> list[dict]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


class AnthropicGeneration:
    """
    Claude via the Anthropic SDK.

    The key comes from ``api_key``, then ANTHROPIC_API_KEY, then
    CLAUDE_CODE_OAUTH_TOKEN. Haiku is the default because consolidation
    and ask prompts are short and frequent.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
    ):
        from anthropic import Anthropic

        key = _key_from_env(api_key, ANTHROPIC_KEY_VARS)
        if key is None:
            raise ValueError(
                "Anthropic authentication required: set "
                + " or ".join(ANTHROPIC_KEY_VARS)
            )
        self.model = model
        self.client = Anthropic(api_key=key)

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        # Anthropic takes the system prompt as a separate field
        reply = self.client.messages.create(
            model=self.model,
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=max_tokens,
        )
        blocks = reply.content or []
        return blocks[0].text if blocks else None


class OpenAIGeneration:
    """Chat completions via the OpenAI SDK."""

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
    ):
        from openai import OpenAI

        key = _key_from_env(api_key, OPENAI_KEY_VARS)
        if key is None:
            raise ValueError(
                "OpenAI API key required: set " + " or ".join(OPENAI_KEY_VARS)
            )
        self.model = model
        self._client = OpenAI(api_key=key)

    def _completion_kwargs(self, max_tokens: int) -> dict:
        if self.model.startswith(_OPENAI_REASONING_PREFIXES):
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens, "temperature": 0.2}

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        reply = self._client.chat.completions.create(
            model=self.model,
            messages=_as_chat(system, user),
            **self._completion_kwargs(max_tokens),
        )
        if not reply.choices:
            return None
        return reply.choices[0].message.content


class OllamaGeneration:
    """
    A local model served by Ollama.

    The server address follows OLLAMA_HOST unless ``base_url`` is given.
    The model must already be pulled; construction fails otherwise.
    """

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str | None = None,
    ):
        self.model = model
        self.base_url = ollama_utils.ollama_base_url(base_url)
        ollama_utils.ollama_require_model(self.base_url, self.model)

    def generate(self, system: str, user: str, *, max_tokens: int = 4096) -> str | None:
        payload = {
            "model": self.model,
            "messages": _as_chat(system, user),
            "stream": False,
            "options": {"num_predict": max_tokens},
        }
        resp = requests.post(f"{self.base_url}/api/chat", json=payload, timeout=(10, 300))
        if not resp.ok:
            raise RuntimeError(
                f"Ollama returned HTTP {resp.status_code} for {self.model} "
                f"at {self.base_url}: {(resp.text or '')[:200]}"
            )
        text = resp.json()["message"]["content"].strip()
        return text or None


_registry = get_registry()
_registry.register_generation("anthropic", AnthropicGeneration)
_registry.register_generation("openai", OpenAIGeneration)
_registry.register_generation("ollama", OllamaGeneration)
