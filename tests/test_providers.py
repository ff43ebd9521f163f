"""
Tests for generation providers, the provider registry and prompt builders.

SDK clients and HTTP calls are mocked; nothing leaves the machine.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from projmem.providers.base import (
    NullGeneration,
    ProviderRegistry,
    build_ask_prompt,
    build_consolidation_prompt,
    get_registry,
)
from projmem.providers.ollama_utils import ollama_base_url, ollama_require_model
from projmem.types import Memory, MemoryType


class TestRegistry:

    def test_builtin_providers(self):
        names = get_registry().list_generation_providers()
        assert {"none", "anthropic", "openai", "ollama"} <= set(names)

    def test_none_provider(self):
        provider = ProviderRegistry().create_generation("none")
        assert isinstance(provider, NullGeneration)
        assert provider.generate("sys", "user") is None

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown generation provider"):
            ProviderRegistry().create_generation("gemini")

    def test_params_passed_to_constructor(self):
        registry = ProviderRegistry()
        created = MagicMock()
        registry.register_generation("fake", created)
        registry.create_generation("fake", {"model": "m1"})
        created.assert_called_once_with(model="m1")


class TestPrompts:

    def test_consolidation_prompt_lists_ids(self):
        prompt = build_consolidation_prompt("gotcha", [
            {"id": "mem_1_a", "content": "Cron runs in UTC"},
            {"id": "mem_2_b", "content": "Cron jobs run in UTC"},
        ])
        assert 'Below are 2 memories of type "gotcha"' in prompt
        assert "  mem_1_a: Cron runs in UTC" in prompt
        assert "exactly one of" in prompt

    def test_ask_prompt(self):
        mem = Memory(id="m", type=MemoryType.DECISION, content="Chose SQLite")
        prompt = build_ask_prompt("Which database?", [mem])
        assert "  [decision] Chose SQLite" in prompt
        assert prompt.endswith("QUESTION: Which database?")


class TestAnthropicGeneration:

    def test_requires_key(self, monkeypatch):
        from projmem.providers.llm import AnthropicGeneration
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("CLAUDE_CODE_OAUTH_TOKEN", raising=False)
        with pytest.raises(ValueError, match="Anthropic authentication required"):
            AnthropicGeneration()

    def test_generate(self):
        from projmem.providers.llm import AnthropicGeneration
        with patch("anthropic.Anthropic") as client_cls:
            response = MagicMock()
            response.content = [MagicMock(text="plan")]
            client_cls.return_value.messages.create.return_value = response

            provider = AnthropicGeneration(api_key="sk-test")
            assert provider.generate("sys", "user", max_tokens=2048) == "plan"

            kwargs = client_cls.return_value.messages.create.call_args.kwargs
            assert kwargs["system"] == "sys"
            assert kwargs["max_tokens"] == 2048
            assert kwargs["messages"] == [{"role": "user", "content": "user"}]


class TestOpenAIGeneration:

    def test_token_kwargs_by_model(self):
        from projmem.providers.llm import OpenAIGeneration
        with patch("openai.OpenAI"):
            assert OpenAIGeneration(api_key="k")._completion_kwargs(10) == {
                "max_tokens": 10, "temperature": 0.2,
            }
            assert OpenAIGeneration(model="gpt-5-mini", api_key="k")._completion_kwargs(10) == {
                "max_completion_tokens": 10,
            }

    def test_generate(self):
        from projmem.providers.llm import OpenAIGeneration
        with patch("openai.OpenAI") as client_cls:
            response = MagicMock()
            response.choices = [MagicMock()]
            response.choices[0].message.content = "answer"
            client_cls.return_value.chat.completions.create.return_value = response
            assert OpenAIGeneration(api_key="k").generate("s", "u") == "answer"


class TestOllama:

    def test_base_url(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert ollama_base_url() == "http://localhost:11434"
        monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434/")
        assert ollama_base_url() == "http://gpu-box:11434"
        assert ollama_base_url("https://x.example") == "https://x.example"

    def test_require_model_present(self):
        resp = MagicMock()
        resp.json.return_value = {"models": [{"name": "llama3.2:latest"}]}
        with patch("projmem.providers.ollama_utils.requests.get", return_value=resp):
            ollama_require_model("http://localhost:11434", "llama3.2")

    def test_require_model_missing(self):
        resp = MagicMock()
        resp.json.return_value = {"models": []}
        with patch("projmem.providers.ollama_utils.requests.get", return_value=resp):
            with pytest.raises(RuntimeError, match="ollama pull qwen2.5"):
                ollama_require_model("http://localhost:11434", "qwen2.5")

    def test_require_model_unreachable(self):
        with patch("projmem.providers.ollama_utils.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(RuntimeError, match="Cannot reach Ollama"):
                ollama_require_model("http://localhost:11434", "llama3.2")

    def test_generate(self):
        from projmem.providers.llm import OllamaGeneration
        with patch("projmem.providers.ollama_utils.ollama_require_model"):
            provider = OllamaGeneration(base_url="http://localhost:11434")
        resp = MagicMock(ok=True)
        resp.json.return_value = {"message": {"content": "  hi  "}}
        with patch("requests.post", return_value=resp) as post:
            assert provider.generate("s", "u", max_tokens=64) == "hi"
        body = post.call_args.kwargs["json"]
        assert body["options"] == {"num_predict": 64}
        assert body["stream"] is False
