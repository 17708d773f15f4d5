import json
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cairn.constants import (
    CAIRN_DIR,
    COMPACTION_KEEP_RECENT,
    COMPACTION_THRESHOLD,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_TOKENS,
    MAX_TURNS,
    REQUEST_IDLE_TIMEOUT,
    SESSION_MAX_AGE_DAYS,
    TOOL_TIMEOUT,
)
from cairn.logging import get_logger
from cairn.permissions import DEFAULT_RULES, PermissionMode, PermissionPolicy, PermissionRule

SETTINGS_PATH = CAIRN_DIR / "settings.json"

PROVIDERS = frozenset({"anthropic", "openai", "gemini", "ollama", "groq", "openrouter", "mistral", "together", "deepseek", "xai"})

_logger = get_logger(__name__)


def load_user_settings(path: Path = SETTINGS_PATH) -> dict:
    if not path.exists():
        return {}
    try:
        settings = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}
    if not isinstance(settings, dict):
        _logger.warning("Ignoring %s: expected a JSON object", path)
        return {}
    return settings


def save_user_settings(settings: dict, path: Path = SETTINGS_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2))


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CAIRN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # API keys, read from the vendors' standard env vars via aliases
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("gemini_api_key", "GEMINI_API_KEY", "GOOGLE_API_KEY"),
    )
    ollama_base_url: str | None = Field(default=None, alias="OLLAMA_HOST")

    # Model
    provider: str = "anthropic"
    model: str | None = None
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS

    # Turn limits
    max_turns: int = MAX_TURNS
    request_idle_timeout: float = REQUEST_IDLE_TIMEOUT
    tool_timeout: float = TOOL_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES

    # Context compaction
    compaction: bool = True
    compaction_threshold: int = COMPACTION_THRESHOLD
    compaction_keep_recent: int = COMPACTION_KEEP_RECENT

    # Permissions
    permission_mode: PermissionMode = PermissionMode.ASK
    permission_rules: list[PermissionRule] = Field(default_factory=lambda: list(DEFAULT_RULES))

    # Sessions
    session_max_age_days: int = SESSION_MAX_AGE_DAYS
    data_dir: Path = CAIRN_DIR

    log_level: str = "WARNING"

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, v: str) -> str:
        v = v.lower()
        if v not in PROVIDERS:
            raise ValueError(f"Unknown provider: {v}. Must be one of: {', '.join(sorted(PROVIDERS))}")
        return v

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and not 0 <= v <= 2:
            raise ValueError(f"temperature must be 0-2, got {v}")
        return v

    @field_validator("permission_mode", mode="before")
    @classmethod
    def _normalize_permission_mode(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace("_", "-")
        return v

    @field_validator("max_turns", "max_retries", "compaction_keep_recent", "session_max_age_days")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be at least 1, got {v}")
        return v

    @property
    def permission_policy(self) -> PermissionPolicy:
        return PermissionPolicy(rules=tuple(self.permission_rules), default=self.permission_mode)

    @property
    def sessions_db_path(self) -> Path:
        return self.data_dir / "sessions.db"

    @property
    def models_path(self) -> Path:
        return self.data_dir / "models.json"

    def api_key_for(self, provider: str) -> str | None:
        match provider:
            case "anthropic":
                return self.anthropic_api_key
            case "openai":
                return self.openai_api_key
            case "gemini":
                return self.gemini_api_key
        return None


PERSIST_KEYS = frozenset(
    {
        "provider",
        "model",
        "base_url",
        "temperature",
        "max_tokens",
        "max_turns",
        "request_idle_timeout",
        "tool_timeout",
        "max_retries",
        "compaction",
        "compaction_threshold",
        "compaction_keep_recent",
        "permission_mode",
        "permission_rules",
        "session_max_age_days",
        "log_level",
    }
)


def get_config(**overrides) -> Config:
    settings = load_user_settings()

    # Build config: explicit overrides > settings.json > env vars > defaults
    values = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Config(**values)  # type: ignore - pydantic handles validation
