"""
Structured logging setup for the NeuralOS session engine.

Every module obtains its logger through ``get_logger(__name__)`` and logs
key/value events. ``configure_logging`` is called once by the entry point;
library use without it falls back to structlog's defaults.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import structlog


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Configure structlog + stdlib logging.

    Level and renderer default to ``LOG_LEVEL`` / ``LOG_FORMAT=json`` env vars.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = (os.getenv("LOG_FORMAT") or "").lower() == "json"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
