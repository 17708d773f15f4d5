from collections.abc import Callable

from cairn.llm.anthropic import AnthropicProvider
from cairn.llm.base import Provider
from cairn.llm.gemini import GeminiProvider
from cairn.llm.models import ModelCatalog
from cairn.llm.ollama import OllamaProvider
from cairn.llm.openai import PRESETS, OpenAICompatibleProvider, OpenAIProvider

type ProviderFactory = Callable[[], Provider]


class ProviderRegistry:
    """Provider name -> factory, with one cached instance per name.

    Owned by whoever builds the processor; closing the registry closes every
    HTTP client it created.
    """

    def __init__(self, catalog: ModelCatalog | None = None):
        self.catalog = catalog or ModelCatalog()
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[str, Provider] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory
        self._instances.pop(name, None)

    def get(self, name: str) -> Provider:
        if name not in self._instances:
            if name not in self._factories:
                raise ValueError(f"Unknown provider: {name}. Available: {', '.join(self.names)}")
            self._instances[name] = self._factories[name]()
        return self._instances[name]

    @property
    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    async def aclose(self) -> None:
        for provider in self._instances.values():
            await provider.close()
        self._instances.clear()

    @classmethod
    def default(cls, config, catalog: ModelCatalog | None = None) -> "ProviderRegistry":
        registry = cls(catalog)

        def common(name: str) -> dict:
            is_selected = name == config.provider
            return {
                "default_model": (config.model if is_selected and config.model else None)
                or registry.catalog.default_model(name),
                "base_url": config.base_url if is_selected else None,
                "max_retries": config.max_retries,
                "idle_timeout": config.request_idle_timeout,
            }

        registry.register("anthropic", lambda: AnthropicProvider(api_key=config.anthropic_api_key, **common("anthropic")))
        registry.register("openai", lambda: OpenAIProvider(api_key=config.openai_api_key, **common("openai")))
        registry.register("gemini", lambda: GeminiProvider(api_key=config.gemini_api_key, **common("gemini")))

        def ollama() -> Provider:
            kwargs = common("ollama")
            base_url = kwargs["base_url"] or config.ollama_base_url
            if base_url and "://" not in base_url:
                base_url = f"http://{base_url}"
            kwargs["base_url"] = base_url
            return OllamaProvider(**kwargs)

        registry.register("ollama", ollama)

        for name, preset in PRESETS.items():
            registry.register(
                name,
                lambda name=name, preset=preset: OpenAICompatibleProvider(
                    name=name,
                    base_url=preset.base_url,
                    api_key_envs=(preset.api_key_env,),
                    **common(name),
                ),
            )
        return registry
