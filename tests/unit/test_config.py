"""Unit tests for TakeoffCalc configuration management.

Tests AppConfig loading from environment variables, validation, and defaults.
"""

from __future__ import annotations

import logging

import pytest
import structlog

from takeoffcalc.config import AppConfig, ExtractionConfig, get_config, reset_config
from takeoffcalc.core.logging import configure_logging

ENV_VARS = (
    "DATABASE_URL",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_SCALE_MODEL",
    "EXTRACTION_CONCURRENCY",
    "OPENAI_TIMEOUT_MS",
    "OPENAI_MAX_RETRIES",
    "OPENAI_RETRY_DELAY_MS",
    "PDF_RENDER_DPI",
    "PDF_CONVERSION_TIMEOUT_MS",
    "VALIDATION_STRICT_MODE",
    "WEBHOOK_SECRET",
    "LOG_LEVEL",
    "LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


class TestAppConfig:
    """Test AppConfig creation and validation."""

    def test_defaults(self):
        """Test defaults when nothing is set."""
        config = AppConfig.from_env()

        assert config.db.url.startswith("sqlite+aiosqlite://")
        assert config.extraction.api_key is None
        assert config.extraction.concurrency == 5
        assert config.extraction.call_timeout_seconds == 180.0
        assert config.extraction.render_dpi == 220
        assert config.validation.strict_mode is False
        assert config.pricing.currency == "USD"

    def test_millisecond_variables_become_seconds(self, monkeypatch):
        """Test *_MS variables are converted."""
        monkeypatch.setenv("OPENAI_TIMEOUT_MS", "2500")
        monkeypatch.setenv("OPENAI_RETRY_DELAY_MS", "250")
        monkeypatch.setenv("PDF_CONVERSION_TIMEOUT_MS", "60000")

        extraction = AppConfig.from_env().extraction

        assert extraction.call_timeout_seconds == 2.5
        assert extraction.retry_delay_seconds == 0.25
        assert extraction.render_timeout_seconds == 60.0

    def test_provider_settings(self, monkeypatch):
        """Test API key, retries and strict mode."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("OPENAI_MAX_RETRIES", "0")
        monkeypatch.setenv("VALIDATION_STRICT_MODE", "TRUE")

        config = AppConfig.from_env()

        assert config.extraction.api_key == "sk-test"
        assert config.extraction.max_retries == 1
        assert config.validation.strict_mode is True

    @pytest.mark.parametrize(
        "name,value",
        [
            ("EXTRACTION_CONCURRENCY", "0"),
            ("EXTRACTION_CONCURRENCY", "many"),
            ("PDF_RENDER_DPI", "-1"),
            ("OPENAI_TIMEOUT_MS", "1.5s"),
        ],
    )
    def test_invalid_values_raise(self, monkeypatch, name, value):
        """Test bad numeric values are rejected."""
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError) as exc_info:
            AppConfig.from_env()

        assert name in str(exc_info.value)


class TestStageModels:
    """Test per-stage model overrides."""

    def test_stage_override(self, monkeypatch):
        monkeypatch.setenv("OPENAI_MODEL", "base-model")
        monkeypatch.setenv("OPENAI_SCALE_MODEL", "scale-model")

        extraction = AppConfig.from_env().extraction

        assert extraction.model_for("scale") == "scale-model"
        assert extraction.model_for("spaces") == "base-model"

    def test_direct_construction(self):
        extraction = ExtractionConfig(model="m", stage_models={"wall_runs": "w"})

        assert extraction.model_for("wall_runs") == "w"
        assert extraction.model_for("classification") == "m"


def test_get_config_is_cached(monkeypatch):
    """Test the singleton survives env changes until reset."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///first.db")
    first = get_config()
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///second.db")

    assert get_config() is first

    reset_config()
    assert get_config().db.url.endswith("second.db")


class TestConfigureLogging:
    """Test logging follows the configured level and format."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def _renderer(self):
        formatter = logging.getLogger().handlers[0].formatter
        return formatter.processors[-1]

    def test_configured_level_and_text_format(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("LOG_FORMAT", "text")
        reset_config()

        configure_logging()

        assert logging.getLogger().level == logging.WARNING
        assert isinstance(self._renderer(), structlog.dev.ConsoleRenderer)

    def test_json_by_default(self):
        configure_logging()

        assert logging.getLogger().level == logging.INFO
        assert isinstance(self._renderer(), structlog.processors.JSONRenderer)

    def test_explicit_level_wins(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        reset_config()

        configure_logging("debug")

        assert logging.getLogger().level == logging.DEBUG
