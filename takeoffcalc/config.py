"""TakeoffCalc configuration management.

Loads configuration from environment variables with sensible defaults.
Durations given in milliseconds (the *_MS variables) are converted to seconds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

# Stage names that accept a per-stage model override (OPENAI_<STAGE>_MODEL)
EXTRACTION_STAGES = (
    "classification",
    "scale",
    "spaces",
    "finishes",
    "room_schedules",
    "room_mapping",
    "partition_types",
    "wall_runs",
    "ceiling_heights",
    "feature_analysis",
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


@dataclass
class DBConfig:
    """Database connection configuration."""

    url: str = "sqlite+aiosqlite:///./takeoffcalc.db"
    pool_size: int = 10
    pool_max_overflow: int = 20
    pool_timeout: int = 30
    echo: bool = False  # SQL logging


@dataclass
class ExtractionConfig:
    """Extraction provider, rasterizer and worker pool settings."""

    api_key: str | None = None
    model: str = "gpt-4o-mini"
    stage_models: dict[str, str] = field(default_factory=dict)
    temperature: float = 0.1
    concurrency: int = 5
    call_timeout_seconds: float = 180.0
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    render_dpi: int = 220
    render_max_pages: int = 100
    render_timeout_seconds: float = 3600.0
    text_limit: int = 6000

    def model_for(self, stage: str) -> str:
        """Model configured for a stage, falling back to the default model."""
        return self.stage_models.get(stage) or self.model


@dataclass
class ValidationConfig:
    """Feature validation settings."""

    strict_mode: bool = False


@dataclass
class PricingConfig:
    """Bill of materials pricing defaults."""

    currency: str = "USD"


@dataclass
class WebhookConfig:
    """Outbound job webhook settings."""

    secret: str | None = None
    timeout_seconds: float = 5.0


@dataclass
class AppConfig:
    """Root application configuration."""

    db: DBConfig = field(default_factory=DBConfig)
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables.

        Optional (with defaults):
        - DATABASE_URL: async SQLAlchemy URL (default: local SQLite file)
        - OPENAI_API_KEY: extraction provider key (no provider when unset)
        - EXTRACTION_CONCURRENCY: per-stage worker count (default: 5)
        - OPENAI_TIMEOUT_MS / OPENAI_MAX_RETRIES / OPENAI_RETRY_DELAY_MS
        - PDF_RENDER_DPI / PDF_RENDER_MAX_PAGES / PDF_CONVERSION_TIMEOUT_MS

        Raises:
            ValueError: If a numeric variable cannot be parsed or is out of range
        """
        stage_models = {}
        for stage in EXTRACTION_STAGES:
            override = os.getenv(f"OPENAI_{stage.upper()}_MODEL")
            if override:
                stage_models[stage] = override

        concurrency = _env_int("EXTRACTION_CONCURRENCY", 5)
        if concurrency < 1:
            raise ValueError("EXTRACTION_CONCURRENCY must be at least 1")

        render_dpi = _env_int("PDF_RENDER_DPI", 220)
        if render_dpi <= 0:
            raise ValueError("PDF_RENDER_DPI must be positive")

        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            db=DBConfig(
                url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./takeoffcalc.db"),
                pool_size=_env_int("DB_POOL_SIZE", 10),
                pool_max_overflow=_env_int("DB_POOL_MAX_OVERFLOW", 20),
                pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
                echo=_env_bool("DB_ECHO"),
            ),
            extraction=ExtractionConfig(
                api_key=os.getenv("OPENAI_API_KEY") or None,
                model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
                stage_models=stage_models,
                temperature=_env_float("OPENAI_TEMPERATURE", 0.1),
                concurrency=concurrency,
                call_timeout_seconds=_env_int("OPENAI_TIMEOUT_MS", 180000) / 1000,
                max_retries=max(1, _env_int("OPENAI_MAX_RETRIES", 3)),
                retry_delay_seconds=_env_int("OPENAI_RETRY_DELAY_MS", 1000) / 1000,
                render_dpi=render_dpi,
                render_max_pages=_env_int("PDF_RENDER_MAX_PAGES", 100),
                render_timeout_seconds=_env_int("PDF_CONVERSION_TIMEOUT_MS", 3600000) / 1000,
                text_limit=_env_int("EXTRACTION_TEXT_LIMIT", 6000),
            ),
            validation=ValidationConfig(
                strict_mode=_env_bool("VALIDATION_STRICT_MODE"),
            ),
            pricing=PricingConfig(
                currency=os.getenv("PRICING_CURRENCY", "USD"),
            ),
            webhooks=WebhookConfig(
                secret=os.getenv("WEBHOOK_SECRET") or None,
                timeout_seconds=_env_int("WEBHOOK_TIMEOUT_MS", 5000) / 1000,
            ),
        )


# Global config instance (lazy-loaded)
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create singleton config instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached config (used by tests that patch the environment)."""
    global _config
    _config = None
