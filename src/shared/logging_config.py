"""
Structured logging configuration.

Call configure_logging() once at app startup. Reconciliation warnings and
save failures go through the standard logging channel only.
"""
import logging
import os
import sys

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


def resolve_level(name: str | None = None) -> int:
    """Map a level name (or CATERING_LOG_LEVEL) to a logging constant."""
    name = (name or os.environ.get("CATERING_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def configure_logging(level: int | None = None) -> None:
    """Configure root logger with structured format."""
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=resolve_level() if level is None else level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
