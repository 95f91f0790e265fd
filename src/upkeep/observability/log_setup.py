"""structlog configuration.

Structured events go to the log file as JSON lines; the terminal is reserved
for the human-readable check/upgrade report.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

import structlog

_log_file: Optional[TextIO] = None


def configure_logging(level: str = "INFO", file_path: Optional[Path] = None) -> None:
    """Route structlog output to ``file_path`` (stderr when None)."""
    global _log_file

    if _log_file is not None:
        _log_file.close()
        _log_file = None

    if file_path is not None:
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            _log_file = open(file_path, "a", encoding="utf-8")
        except OSError:
            _log_file = None

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=_log_file or sys.stderr),
        cache_logger_on_first_use=False,
    )
