import logging
import sys
from pathlib import Path
from typing import Any

import structlog

from takeoffcalc.config import get_config


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging for the application.

    Level and renderer come from AppConfig (LOG_LEVEL, LOG_FORMAT); an
    explicit level overrides the configured one.
    """
    config = get_config()

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if config.log_format.lower() == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (logging.getLogger(__name__)) through the same renderer
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file = Path("logs/takeoffcalc.log")
    if log_file.parent.exists():
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        handlers=handlers,
        level=(level or config.log_level).upper(),
        force=True,
    )


def bind_job_context(job_id: str) -> None:
    """Attach the job id to every log record emitted in the current context."""
    structlog.contextvars.bind_contextvars(job_id=job_id)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars("job_id")
