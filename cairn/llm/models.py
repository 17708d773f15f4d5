import json
from dataclasses import dataclass
from pathlib import Path

from cairn.constants import CAIRN_DIR
from cairn.logging import get_logger
from cairn.usage import Pricing

_logger = get_logger(__name__)

MODELS_PATH = CAIRN_DIR / "models.json"


@dataclass(frozen=True)
class Model:
    id: str
    provider: str
    context_window: int
    max_output_tokens: int = 8192
    price_in: float = 0
    price_out: float = 0
    price_cache_read: float = 0
    price_cache_write: float = 0
    supports_tools: bool = True

    @property
    def pricing(self) -> Pricing:
        return Pricing(
            price_in=self.price_in,
            price_out=self.price_out,
            price_cache_read=self.price_cache_read,
            price_cache_write=self.price_cache_write,
        )


# Prices are per million tokens.
DEFAULTS = [
    Model(
        "claude-opus-4-5",
        provider="anthropic",
        context_window=200_000,
        max_output_tokens=64_000,
        price_in=5,
        price_out=25,
        price_cache_read=0.50,
        price_cache_write=6.25,
    ),
    Model(
        "claude-sonnet-4-5",
        provider="anthropic",
        context_window=200_000,
        max_output_tokens=64_000,
        price_in=3,
        price_out=15,
        price_cache_read=0.30,
        price_cache_write=3.75,
    ),
    Model(
        "claude-haiku-4-5",
        provider="anthropic",
        context_window=200_000,
        max_output_tokens=64_000,
        price_in=1,
        price_out=5,
        price_cache_read=0.10,
        price_cache_write=1.25,
    ),
    Model("gpt-5", provider="openai", context_window=400_000, max_output_tokens=128_000, price_in=1.25, price_out=10),
    Model("gpt-5-mini", provider="openai", context_window=400_000, max_output_tokens=128_000, price_in=0.25, price_out=2),
    Model("gpt-4.1", provider="openai", context_window=1_000_000, max_output_tokens=32_768, price_in=2, price_out=8),
    Model("gpt-4o", provider="openai", context_window=128_000, max_output_tokens=16_384, price_in=2.5, price_out=10),
    Model("o3-mini", provider="openai", context_window=200_000, max_output_tokens=100_000, price_in=1.1, price_out=4.4),
    Model(
        "gemini-2.5-pro",
        provider="gemini",
        context_window=1_048_576,
        max_output_tokens=65_536,
        price_in=1.25,
        price_out=10,
    ),
    Model(
        "gemini-2.5-flash",
        provider="gemini",
        context_window=1_048_576,
        max_output_tokens=65_536,
        price_in=0.30,
        price_out=2.50,
    ),
    Model("llama3.1", provider="ollama", context_window=128_000, max_output_tokens=8192),
    Model("qwen2.5-coder", provider="ollama", context_window=32_768, max_output_tokens=8192),
    Model("llama-3.3-70b-versatile", provider="groq", context_window=128_000, max_output_tokens=32_768, price_in=0.59, price_out=0.79),
    Model("mistral-large-latest", provider="mistral", context_window=128_000, max_output_tokens=8192, price_in=2, price_out=6),
    Model("codestral-latest", provider="mistral", context_window=256_000, max_output_tokens=8192, price_in=0.3, price_out=0.9),
    Model("deepseek-chat", provider="deepseek", context_window=128_000, max_output_tokens=8192, price_in=0.27, price_out=1.1),
    Model("grok-4", provider="xai", context_window=256_000, max_output_tokens=32_768, price_in=3, price_out=15),
]

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o",
    "gemini": "gemini-2.5-flash",
    "ollama": "llama3.1",
    "groq": "llama-3.3-70b-versatile",
    "mistral": "mistral-large-latest",
    "deepseek": "deepseek-chat",
    "xai": "grok-4",
}


class ModelCatalog:
    def __init__(self, models: list[Model] | None = None):
        self._models: dict[str, Model] = {m.id: m for m in (models if models is not None else DEFAULTS)}

    def register(self, model: Model) -> None:
        self._models[model.id] = model

    def get(self, model_id: str) -> Model | None:
        return self._models.get(model_id)

    def pricing(self, model_id: str | None) -> Pricing:
        model = self._models.get(model_id) if model_id else None
        return model.pricing if model else Pricing()

    def models(self, provider: str | None = None) -> list[Model]:
        return [m for m in self._models.values() if provider is None or m.provider == provider]

    def default_model(self, provider: str) -> str | None:
        if model_id := DEFAULT_MODELS.get(provider):
            return model_id
        for model in self._models.values():
            if model.provider == provider:
                return model.id
        return None

    def load_custom(self, path: Path = MODELS_PATH) -> None:
        """Register extra models from a JSON object keyed by model id."""
        if not path.exists():
            return

        try:
            raw = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            _logger.warning("Failed to read %s", path, exc_info=True)
            return

        if not isinstance(raw, dict):
            _logger.warning("%s: expected a JSON object, got %s", path, type(raw).__name__)
            return

        for model_id, entry in raw.items():
            if not isinstance(entry, dict):
                _logger.warning("Skipping custom model %s: expected object", model_id)
                continue
            if "provider" not in entry:
                _logger.warning("Skipping custom model %s: missing provider", model_id)
                continue
            if "context_window" not in entry:
                _logger.warning("Skipping custom model %s: missing context_window", model_id)
                continue

            model = Model(
                id=model_id,
                provider=entry["provider"],
                context_window=int(entry["context_window"]),
                max_output_tokens=int(entry.get("max_output_tokens", 8192)),
                price_in=float(entry.get("price_in", 0)),
                price_out=float(entry.get("price_out", 0)),
                supports_tools=bool(entry.get("supports_tools", True)),
            )
            self.register(model)
            _logger.info("Registered custom model: %s (provider=%s)", model_id, model.provider)
