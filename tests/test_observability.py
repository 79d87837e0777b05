"""
Tests for structured logging, metrics and settings.

Tests cover:
- JSON log records carry ts, level and the active conversation_id
- setup_logging honours LOG_LEVEL and quiets httpx
- Transport calls and poll ticks are counted in Prometheus metrics
- Settings validation
"""

import json
import logging

import pytest
from prometheus_client import REGISTRY
from pydantic import ValidationError

from chatsync.config import Settings, get_settings
from chatsync.errors import PermissionDeniedError
from chatsync.logging_utils import CustomJsonFormatter, conversation_context, get_conversation_id, setup_logging
from chatsync.metrics import get_metrics


def render(formatter: logging.Formatter, message: str) -> dict:
    record = logging.LogRecord("chatsync.test", logging.INFO, __file__, 1, message, None, None)
    return json.loads(formatter.format(record))


class TestLogging:
    """Test the JSON formatter and conversation context."""

    def test_record_has_timestamp_and_level(self):
        payload = render(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'), "hello")

        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["ts"].endswith("Z")
        assert "conversation_id" not in payload

    def test_conversation_id_is_attached_inside_context(self):
        formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')

        with conversation_context("g1/r1"):
            assert get_conversation_id() == "g1/r1"
            payload = render(formatter, "inside")

        assert payload["conversation_id"] == "g1/r1"
        assert get_conversation_id() is None


@pytest.fixture
def restore_logging():
    """Undo setup_logging's changes to the root and httpx loggers."""
    root = logging.getLogger()
    httpx_logger = logging.getLogger("httpx")
    handlers, root_level, httpx_level = list(root.handlers), root.level, httpx_logger.level
    yield
    root.handlers = handlers
    root.setLevel(root_level)
    httpx_logger.setLevel(httpx_level)
    get_settings.cache_clear()


class TestSetupLogging:
    """Test root logger configuration for embedding applications."""

    def test_emits_json_with_conversation_id(self, restore_logging, capsys):
        setup_logging(Settings(_env_file=None, LOG_LEVEL="info").LOG_LEVEL)

        with conversation_context("g1"):
            logging.getLogger("chatsync.sync").info("Initial load: 2 messages")

        payload = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert payload["message"] == "Initial load: 2 messages"
        assert payload["conversation_id"] == "g1"
        assert payload["name"] == "chatsync.sync"
        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_level_defaults_to_settings(self, restore_logging, monkeypatch):
        monkeypatch.setenv("CHATSYNC_LOG_LEVEL", "DEBUG")
        get_settings.cache_clear()
        logging.getLogger("httpx").setLevel(logging.NOTSET)

        setup_logging()

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.NOTSET


class TestMetrics:
    """Test Prometheus instrumentation."""

    @pytest.mark.asyncio
    async def test_transport_requests_are_counted(self, transport, backend, conversation):
        labels = {"operation": "fetch_messages", "outcome": "permission"}
        before = REGISTRY.get_sample_value("chatsync_transport_requests_total", labels) or 0.0
        backend.fail["list"] = 403

        with pytest.raises(PermissionDeniedError):
            await transport.fetch_messages(conversation)

        after = REGISTRY.get_sample_value("chatsync_transport_requests_total", labels)
        assert after == before + 1

    def test_exposition_format(self):
        assert b"chatsync_poll_ticks_total" in get_metrics()


class TestSettings:
    """Test configuration validation."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.POLLING_INTERVAL_MS == 5000
        assert settings.MAX_POLLING_DELAY_MS == 30000
        assert settings.MAX_RETRY_ATTEMPTS == 3
        assert settings.PROFILE_CACHE_MAX_SIZE == 200
        assert settings.PROFILE_CACHE_TTL_SECONDS == 1800
        assert settings.REALTIME_MODE == "polling"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CHATSYNC_POLLING_INTERVAL_MS", "2000")

        assert Settings(_env_file=None).POLLING_INTERVAL_MS == 2000

    def test_cap_below_interval_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, POLLING_INTERVAL_MS=40000, MAX_POLLING_DELAY_MS=30000)

    def test_unknown_realtime_mode_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, REALTIME_MODE="websocket")
