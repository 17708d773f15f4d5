import pytest
from pydantic import ValidationError

from cairn import config as config_module
from cairn.config import Config, get_config, load_user_settings, save_user_settings
from cairn.permissions import Action, Permission, PermissionMode


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "OLLAMA_HOST",
        "CAIRN_PROVIDER",
        "CAIRN_MODEL",
        "CAIRN_MAX_TURNS",
        "CAIRN_PERMISSION_MODE",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep the developer's .env out of the picture
    monkeypatch.chdir(tmp_path)


class TestConfig:
    def test_defaults(self):
        config = Config()
        assert config.provider == "anthropic"
        assert config.model is None
        assert config.permission_mode == PermissionMode.ASK
        assert config.compaction is True
        assert config.sessions_db_path == config.data_dir / "sessions.db"

    def test_vendor_key_aliases(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        config = Config()

        assert config.api_key_for("anthropic") == "sk-ant"
        assert config.api_key_for("gemini") == "g-key"
        assert config.api_key_for("ollama") is None

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("CAIRN_PROVIDER", "OpenAI")
        monkeypatch.setenv("CAIRN_MAX_TURNS", "12")
        monkeypatch.setenv("CAIRN_PERMISSION_MODE", "ALLOW_ALL")
        config = Config()

        assert config.provider == "openai"
        assert config.max_turns == 12
        assert config.permission_mode == PermissionMode.ALLOW_ALL

    @pytest.mark.parametrize(
        "overrides",
        [
            {"provider": "bedrock"},
            {"temperature": 3.0},
            {"max_turns": 0},
            {"permission_mode": "sometimes"},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            Config(**overrides)

    def test_permission_policy(self):
        config = Config(
            permission_mode="deny-all",
            permission_rules=[{"permission": "bash", "pattern": "git *", "action": "allow"}],
        )
        policy = config.permission_policy

        assert policy.default == PermissionMode.DENY_ALL
        assert policy.rules[0].permission == Permission.BASH
        assert policy.rules[0].action == Action.ALLOW


class TestSettingsFile:
    def test_roundtrip(self, tmp_path):
        path = tmp_path / "nested" / "settings.json"
        save_user_settings({"provider": "gemini"}, path)
        assert load_user_settings(path) == {"provider": "gemini"}

    def test_missing_or_invalid(self, tmp_path):
        assert load_user_settings(tmp_path / "missing.json") == {}

        broken = tmp_path / "broken.json"
        broken.write_text("{nope")
        assert load_user_settings(broken) == {}

        listed = tmp_path / "list.json"
        listed.write_text("[1, 2]")
        assert load_user_settings(listed) == {}

    def test_precedence(self, monkeypatch):
        settings = {"provider": "openai", "model": "gpt-4o", "max_turns": 7, "api_key": "ignored"}
        monkeypatch.setattr(config_module, "load_user_settings", lambda: settings)
        monkeypatch.setenv("CAIRN_MAX_TURNS", "99")

        config = get_config(model="gpt-4o-mini", provider=None)

        assert config.provider == "openai"
        assert config.model == "gpt-4o-mini"
        assert config.max_turns == 7
