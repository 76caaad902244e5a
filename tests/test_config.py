"""Tests for configuration management."""

import pytest
from pydantic import ValidationError


def create_test_settings(**kwargs):
    """Helper to create Settings instance without loading .env file."""
    from discubot.config import Settings

    # Disable .env file loading for tests
    return Settings(_env_file=None, **kwargs)


class TestSettingsInitialization:
    """Tests for Settings initialization from environment variables."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults match the documented processing behaviour."""
        for key in ("POSTGRES_DSN", "FLOWS_FILE", "RETRY_MAX_ATTEMPTS", "ENVIRONMENT"):
            monkeypatch.delenv(key, raising=False)

        settings = create_test_settings()
        assert settings.retry_max_attempts == 3
        assert settings.retry_initial_delay == 1.0
        assert settings.retry_backoff_multiplier == 2.0
        assert settings.analysis_max_tasks == 5
        assert settings.analysis_cache_ttl == 3600
        assert settings.postgres_dsn is None
        assert settings.reply_personality == "professional"
        assert settings.api_port == 8080

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables populate settings."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "anthropic-key-789")
        monkeypatch.setenv("POSTGRES_DSN", "postgresql://db/discubot")
        monkeypatch.setenv("FLOWS_FILE", "/etc/discubot/flows.json")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("API_PORT", "9000")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("CLAUDE_MODEL", "claude-opus-4-5-20251101")

        from discubot.config import get_settings

        get_settings.cache_clear()

        settings = create_test_settings()
        assert settings.anthropic_api_key.get_secret_value() == "anthropic-key-789"
        assert settings.postgres_dsn == "postgresql://db/discubot"
        assert settings.flows_file == "/etc/discubot/flows.json"
        assert settings.retry_max_attempts == 5
        assert settings.api_port == 9000
        assert settings.log_level == "DEBUG"
        assert settings.claude_model == "claude-opus-4-5-20251101"

    def test_empty_string_is_none(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty POSTGRES_DSN means in-memory storage."""
        monkeypatch.setenv("POSTGRES_DSN", "")
        assert create_test_settings().postgres_dsn is None

    def test_secret_not_leaked_in_repr(self) -> None:
        settings = create_test_settings(anthropic_api_key="sk-ant-secret")
        assert "sk-ant-secret" not in repr(settings)


class TestSettingsValidation:
    """Tests for field validators."""

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError, match="Unknown log level"):
            create_test_settings(log_level="LOUD")

    @pytest.mark.parametrize("field", ["retry_max_attempts", "analysis_max_tasks"])
    def test_counts_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            create_test_settings(**{field: 0})

    def test_multiplier_must_not_shrink(self) -> None:
        with pytest.raises(ValidationError, match="retry_backoff_multiplier"):
            create_test_settings(retry_backoff_multiplier=0.5)


class TestSettingsProperties:
    """Tests for derived properties."""

    @pytest.mark.parametrize(
        ("environment", "expected"),
        [("development", True), ("test", True), ("production", False), ("Staging", False)],
    )
    def test_is_development(self, environment: str, expected: bool) -> None:
        assert create_test_settings(environment=environment).is_development is expected

    def test_log_file_path(self) -> None:
        settings = create_test_settings(log_directory="/var/log", log_file_prefix="bot")
        assert settings.log_file_path == "/var/log/bot.log"

    def test_get_settings_is_cached(self) -> None:
        from discubot.config import get_settings

        get_settings.cache_clear()
        assert get_settings() is get_settings()
