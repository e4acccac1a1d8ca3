"""Logging configuration for Viking RAG."""

import logging
import sys

import structlog

from viking_rag.config import Config, get_config

_NOISY_LOGGERS = ("httpx", "httpcore", "huggingface_hub", "sentence_transformers")


def configure_logging(config: Config | None = None, level: str | None = None) -> None:
    """Configure structured logging for Viking RAG."""
    config = config or get_config()

    # Explicit level wins over config (CLI --verbose)
    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Per-request chatter from the HTTP and model-hub libraries
    quiet_level = max(log_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
