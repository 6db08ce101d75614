"""Structured logging configuration using structlog."""

import logging

import structlog
from rich.logging import RichHandler

from ..constants import CONSTANTS


def setup_logging(verbose: bool = False, json_logs: bool | None = None) -> None:
    """Configure structured logging with Rich formatting.

    Args:
        verbose: Enable debug logging if True
        json_logs: Force JSON rendering; defaults to JSON unless verbose
    """
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(CONSTANTS.LOG_LEVEL.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )

    use_json = (not verbose) if json_logs is None else json_logs

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
