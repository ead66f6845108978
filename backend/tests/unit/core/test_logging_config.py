"""
Tests for logging configuration.

WHY: Operators rely on JSON logs in production and on records from
billing_sync reaching the root handler (pytest's caplog depends on the
same propagation).
"""

import json
import logging

import pytest

from billing_sync.core.config import Settings
from billing_sync.core.logging_config import build_logging_config, configure_logging


@pytest.fixture
def restore_logging():
    """Put root handlers back after a test reconfigures logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestBuildLoggingConfig:
    """Tests for the generated dictConfig."""

    def test_console_format_by_default(self):
        config = build_logging_config()
        assert config["handlers"]["console"]["formatter"] == "console"
        assert config["loggers"]["billing_sync"] == {"level": "INFO"}

    def test_json_format(self):
        config = build_logging_config("debug", "json")
        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["billing_sync"]["level"] == "DEBUG"

    def test_unknown_format_falls_back_to_console(self):
        assert build_logging_config("INFO", "xml")["handlers"]["console"]["formatter"] == "console"

    def test_stripe_sdk_quieted(self):
        """Stripe's debug logs include request bodies."""
        assert build_logging_config("DEBUG")["loggers"]["stripe"]["level"] == "WARNING"

    def test_app_logger_propagates(self):
        assert "propagate" not in build_logging_config()["loggers"]["billing_sync"]


class TestConfigureLogging:
    """Tests for applying the configuration."""

    def test_applies_level(self, test_settings: Settings, restore_logging):
        configure_logging(test_settings.model_copy(update={"LOG_LEVEL": "DEBUG"}))
        assert logging.getLogger("billing_sync").level == logging.DEBUG

    def test_json_formatter_emits_json(self, test_settings: Settings, restore_logging):
        """
        Records rendered by the JSON formatter parse as JSON and carry extras.
        """
        configure_logging(test_settings.model_copy(update={"LOG_FORMAT": "json"}))
        handler = logging.getLogger().handlers[0]

        record = logging.LogRecord(
            "billing_sync.test", logging.INFO, __file__, 1, "Webhook received", None, None
        )
        record.event_id = "evt_1"
        handler.filter(record)
        payload = json.loads(handler.format(record))

        assert payload["message"] == "Webhook received"
        assert payload["event_id"] == "evt_1"
        assert payload["request_id"] == "-"
