"""structlog setup shared by the CLI and the HTTP adapter."""

import logging
import os
import sys

import structlog


def _stderr_logger(*args) -> structlog.PrintLogger:
    # Resolve sys.stderr per logger so redirected streams are honoured
    return structlog.PrintLogger(sys.stderr)


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog processors and the minimum level.

    Log lines go to stderr so command output on stdout stays machine-readable.

    Args:
        level: Level name (debug, info, warning, error). Defaults to SS_LOG_LEVEL or info.
        json_output: Render JSON lines instead of console output. Defaults to SS_LOG_JSON.
    """
    level_name = (level or os.environ.get("SS_LOG_LEVEL", "info")).upper()
    if json_output is None:
        json_output = os.environ.get("SS_LOG_JSON", "").lower() in ("1", "true", "yes")

    if json_output:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )
