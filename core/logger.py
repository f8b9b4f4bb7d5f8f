"""Structured logging — JSON outside dev, coloured console in dev."""

from __future__ import annotations

import logging
import sys

import structlog

from config.settings import Settings, settings as default_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog processors and stdlib integration."""
    cfg = settings or default_settings
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if cfg.APP_ENV == "dev":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(cfg.LOG_LEVEL.upper())


def bind_claim_context(**values: object) -> None:
    """Bind correlation values (template_id, tx_hash, ...) to every log line
    emitted by the current task."""
    structlog.contextvars.bind_contextvars(**values)


def clear_claim_context() -> None:
    structlog.contextvars.clear_contextvars()
