from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

_LOGGING_CONFIGURED = False
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(
    filename: str | Path | None = None,
    level: str = "info",
    *,
    force: bool = False,
) -> structlog.BoundLogger:
    """Set up structured logging for the repo_snapshot package.

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.
        level: Minimum level name ("debug", "info", "warning", "error").
        force: Reconfigure even if logging was already set up (e.g. when the CLI
            receives ``--log-file`` after the module-level default was installed).

    Returns:
        A structlog logger instance configured for the repo_snapshot package.
    """
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if not _LOGGING_CONFIGURED or force:
        handlers: list[logging.Handler] = []
        if filename:
            handlers.append(logging.FileHandler(str(filename), encoding="utf-8"))
        else:
            handlers.append(logging.StreamHandler(sys.stderr))

        min_level = _LEVELS.get(level.lower(), logging.INFO)
        logging.basicConfig(
            level=min_level,
            handlers=handlers,
            format="%(message)s",
            force=force,
        )
        structlog.configure(
            processors=[
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(min_level),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=not force,
        )
        _LOGGING_CONFIGURED = True

    return structlog.get_logger("repo_snapshot")


logger = setup_logging()
