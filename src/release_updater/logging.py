"""Structured logging for the release updater.

Every module logs through ``get_logger("release_updater.<module>")`` with a
snake_case event name and keyword context.  Output is one line per event on
stderr: JSON in production, coloured key/value pairs in development.  Lines
emitted during an update run also carry that run's ``run_id`` and ``root``.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from release_updater.config import get_settings

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging() -> None:
    """Configure structlog and stdlib logging from settings.

    Stdout is left to command output (``check`` prints JSON there).
    """
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        if settings.is_development
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def run_context(run_id: str, root: Path) -> Iterator[None]:
    """Bind *run_id* and *root* to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(run_id=run_id, root=str(root)):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
