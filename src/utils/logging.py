"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys

import structlog

_NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "aiohttp.access", "anthropic")


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structlog. JSON_LOGS=1 switches to JSON lines; console renderer otherwise."""
    use_json = os.environ.get("JSON_LOGS", "").strip().lower() in ("1", "true", "yes")

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Stdlib loggers of third-party libraries
    logging.basicConfig(level=level, stream=sys.stderr, format="%(name)s %(levelname)s %(message)s")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
