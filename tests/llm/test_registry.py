import json

import pytest

from cairn.config import Config
from cairn.llm import Model, ModelCatalog, ProviderRegistry
from cairn.llm.anthropic import AnthropicProvider
from cairn.llm.ollama import OllamaProvider
from cairn.llm.openai import OpenAICompatibleProvider
from cairn.usage import Usage
from tests.conftest import ScriptedProvider


@pytest.fixture
def config(monkeypatch, tmp_path) -> Config:
    monkeypatch.chdir(tmp_path)
    for name in ("ANTHROPIC_API_KEY", "OLLAMA_HOST", "GROQ_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return Config(provider="anthropic", model="claude-haiku-4-5", ANTHROPIC_API_KEY="sk-test", max_retries=2)


class TestModelCatalog:
    def test_lookup_and_pricing(self):
        catalog = ModelCatalog()

        assert catalog.get("claude-sonnet-4-5").context_window == 200_000
        assert catalog.get("unknown") is None
        assert catalog.pricing("unknown").price_in == 0

        usage = Usage(input_tokens=1_000_000, output_tokens=100_000).with_cost(catalog.pricing("claude-sonnet-4-5"))
        assert usage.cost == pytest.approx(4.5)

    def test_default_model(self):
        catalog = ModelCatalog([Model("local-1", provider="lmstudio", context_window=8192)])
        assert catalog.default_model("anthropic") == "claude-sonnet-4-5"
        assert catalog.default_model("lmstudio") == "local-1"
        assert catalog.default_model("nobody") is None

    def test_models_by_provider(self):
        ids = {m.id for m in ModelCatalog().models("gemini")}
        assert ids == {"gemini-2.5-pro", "gemini-2.5-flash"}

    def test_load_custom(self, tmp_path):
        path = tmp_path / "models.json"
        path.write_text(
            json.dumps(
                {
                    "my-model": {"provider": "ollama", "context_window": 65536, "price_in": 0.1},
                    "no-provider": {"context_window": 1},
                    "not-an-object": 3,
                }
            )
        )
        catalog = ModelCatalog()
        catalog.load_custom(path)

        assert catalog.get("my-model").context_window == 65536
        assert catalog.get("my-model").price_in == 0.1
        assert catalog.get("no-provider") is None
        assert catalog.get("not-an-object") is None

    def test_load_custom_ignores_missing_and_broken_files(self, tmp_path):
        catalog = ModelCatalog()
        catalog.load_custom(tmp_path / "missing.json")

        broken = tmp_path / "broken.json"
        broken.write_text("{")
        catalog.load_custom(broken)

        assert len(catalog.models()) == len(ModelCatalog().models())


class TestProviderRegistry:
    @pytest.mark.asyncio
    async def test_instances_are_cached_and_closed(self):
        registry = ProviderRegistry()
        registry.register("scripted", ScriptedProvider)

        provider = registry.get("scripted")
        assert registry.get("scripted") is provider
        assert "scripted" in registry

        await registry.aclose()
        assert provider.closed
        assert registry.get("scripted") is not provider

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider: nope"):
            ProviderRegistry().get("nope")

    @pytest.mark.asyncio
    async def test_default_registry(self, config):
        registry = ProviderRegistry.default(config)
        try:
            anthropic = registry.get("anthropic")
            assert isinstance(anthropic, AnthropicProvider)
            assert anthropic.default_model == "claude-haiku-4-5"
            assert anthropic.max_retries == 2
            assert anthropic.is_configured()

            ollama = registry.get("ollama")
            assert isinstance(ollama, OllamaProvider)
            assert ollama.default_model == "llama3.1"
            assert ollama.base_url == "http://localhost:11434"

            groq = registry.get("groq")
            assert isinstance(groq, OpenAICompatibleProvider)
            assert groq.base_url == "https://api.groq.com/openai/v1"
            assert not groq.is_configured()
        finally:
            await registry.aclose()

    @pytest.mark.asyncio
    async def test_ollama_host_without_scheme(self, config, monkeypatch):
        monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434")
        registry = ProviderRegistry.default(Config(provider="ollama"))
        try:
            assert registry.get("ollama").base_url == "http://gpu-box:11434"
        finally:
            await registry.aclose()
