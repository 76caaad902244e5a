"""Tests for structured logging setup."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest
import structlog

from discubot.config import Settings
from discubot.logging import (
    REDACTED,
    discussion_context,
    get_logger,
    redact_secrets,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_handlers():
    handlers = list(logging.root.handlers)
    level = logging.root.level
    yield
    for handler in logging.root.handlers:
        if handler not in handlers:
            handler.close()
    logging.root.handlers = handlers
    logging.root.setLevel(level)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_console_only_by_default(self) -> None:
        before = set(logging.root.handlers)
        with patch("discubot.logging.get_settings", return_value=_settings(log_level="DEBUG")):
            setup_logging()

        added = [h for h in logging.root.handlers if h not in before]
        assert [h.level for h in added] == [logging.DEBUG]
        assert not any(isinstance(h, RotatingFileHandler) for h in logging.root.handlers)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_file_handler_when_enabled(self, tmp_path) -> None:
        settings = _settings(
            log_to_file=True, log_directory=str(tmp_path / "logs"), log_file_prefix="unit"
        )
        with patch("discubot.logging.get_settings", return_value=settings):
            setup_logging()

        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(tmp_path / "logs" / "unit.log")

    def test_unwritable_directory_falls_back_to_console(self, capsys) -> None:
        settings = _settings(log_to_file=True)
        with (
            patch("discubot.logging.get_settings", return_value=settings),
            patch("discubot.logging.Path.mkdir", side_effect=OSError("read-only")),
        ):
            setup_logging()

        assert "Could not create log directory" in capsys.readouterr().err
        assert not any(isinstance(h, RotatingFileHandler) for h in logging.root.handlers)


def test_get_logger_returns_bound_logger() -> None:
    log = get_logger("discubot.test")
    assert hasattr(log, "info")
    assert hasattr(log, "exception")


class TestRedactSecrets:
    """Tests for the credential-masking processor."""

    def test_masks_top_level_and_nested_tokens(self) -> None:
        event = {
            "event": "config_tested",
            "api_token": "xoxb-secret",
            "config": {"sourceType": "slack", "apiToken": "xoxb-secret", "notionToken": "s"},
        }
        result = redact_secrets(None, "info", event)

        assert result["api_token"] == REDACTED
        assert result["config"] == {
            "sourceType": "slack",
            "apiToken": REDACTED,
            "notionToken": REDACTED,
        }
        assert result["event"] == "config_tested"

    def test_empty_token_left_alone(self) -> None:
        assert redact_secrets(None, "info", {"token": ""}) == {"token": ""}


class TestDiscussionContext:
    """Tests for discussion_context()."""

    def test_binds_and_restores(self) -> None:
        with discussion_context("disc-1", source_type="slack", attempt=2):
            assert structlog.contextvars.get_contextvars() == {
                "discussion_id": "disc-1",
                "source_type": "slack",
                "attempt": 2,
            }
            with discussion_context("disc-2"):
                assert structlog.contextvars.get_contextvars()["discussion_id"] == "disc-2"
            assert structlog.contextvars.get_contextvars()["discussion_id"] == "disc-1"
        assert "discussion_id" not in structlog.contextvars.get_contextvars()

    def test_optional_fields_omitted(self) -> None:
        with discussion_context("disc-1"):
            assert structlog.contextvars.get_contextvars() == {"discussion_id": "disc-1"}
