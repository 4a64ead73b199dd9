"""
structlog setup shared by the supervisor.

- configure_logging(): processors, level filtering, console/JSON rendering; binds run_id
- get_logger(): named FilteringBoundLogger, configures from settings on first use
"""

from __future__ import annotations

import logging
import sys
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars
from structlog.typing import FilteringBoundLogger, Processor

from procvisor.config import get_settings


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> str:
    """Configure structlog once for the host program and return the bound run id."""
    if level is None or json_logs is None:
        settings = get_settings().logging
        level = level if level is not None else settings.level
        json_logs = json_logs if json_logs is not None else settings.json_logs

    level_no = logging.getLevelName(level.upper())
    if not isinstance(level_no, int):
        raise ValueError(f"Unknown log level: {level!r}")

    renderer: Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    run_id = uuid4().hex[:12]
    bind_contextvars(run_id=run_id)
    return run_id


def get_logger(name: str) -> FilteringBoundLogger:
    if not structlog.is_configured():
        configure_logging()
    logger: FilteringBoundLogger = structlog.get_logger().bind(logger=name)
    return logger


__all__ = ["configure_logging", "get_logger"]
