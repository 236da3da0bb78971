"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging.config
from typing import Any, Optional

import structlog

_CONFIGURED = False

_RANK_CONTEXT_KEYS = ("request_id", "segment_key")


def get_correlation_id() -> Optional[str]:
    """Get current correlation_id from contextvars."""
    try:
        ctx = structlog.contextvars.get_contextvars()
        return ctx.get("correlation_id")
    except (TypeError, AttributeError):
        return None


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set correlation_id for current context using structlog contextvars."""
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    """Clear correlation_id from context."""
    structlog.contextvars.unbind_contextvars("correlation_id")


def bind_rank_context(request_id: str, segment_key: str | None = None) -> None:
    """Bind per-request rank fields so every log line in the call carries them."""
    fields: dict[str, Any] = {"request_id": request_id}
    if segment_key is not None:
        fields["segment_key"] = segment_key
    structlog.contextvars.bind_contextvars(**fields)


def clear_rank_context() -> None:
    """Drop per-request rank fields from context."""
    structlog.contextvars.unbind_contextvars(*_RANK_CONTEXT_KEYS)


def _shared_processors() -> list[Any]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.dict_tracebacks,
    ]


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog output. Idempotent - safe to call multiple times.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines; False switches to the console renderer
    """
    global _CONFIGURED

    if _CONFIGURED:
        return

    level_num = getattr(logging, log_level.upper())
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processor": renderer,
                    "foreign_pre_chain": _shared_processors(),
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {
                "level": log_level,
                "handlers": ["console"],
            },
            "loggers": {
                "estimation_service": {
                    "level": log_level,
                    "propagate": False,
                    "handlers": ["console"],
                },
            },
        }
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    _CONFIGURED = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]
