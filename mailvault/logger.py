#!/usr/bin/env python3
"""
logger.py: centralized logging for mailvault

One "mailvault" logger with a rotating file handler and a stdout console handler.
Adds the STATUS level used by the periodic job status lines, routes the
APScheduler and aiohttp loggers into the same handlers and offers job_logger()
to tag records with the backup job they belong to.
"""

import logging
import sys
from logging.handlers import TimedRotatingFileHandler, RotatingFileHandler
from typing import Optional

from mailvault.config import Settings

_LOGGER: Optional[logging.Logger] = None
STATUS_LEVEL = 25

# Libraries whose own loggers end up in our handlers, and at which level
LIBRARY_LOGGERS = {
    "apscheduler": logging.WARNING,
    "aiohttp": logging.WARNING,
}

FILE_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class JobLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the short id of a backup job."""

    def process(self, msg, kwargs):
        return f"[{self.extra['job_id'][:8]}] {msg}", kwargs


def setup_logger(settings: Settings) -> logging.Logger:
    """Initialize global logger once."""
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    logging.addLevelName(STATUS_LEVEL, "STATUS")

    def status(self, message, *args, **kwargs):
        if self.isEnabledFor(STATUS_LEVEL):
            self._log(STATUS_LEVEL, message, args, **kwargs)

    logging.Logger.status = status  # type: ignore[attr-defined]

    log = logging.getLogger("mailvault")
    log.setLevel(settings.log_level)
    log.propagate = False

    for h in log.handlers[:]:
        log.removeHandler(h)

    settings.log_path.parent.mkdir(parents=True, exist_ok=True)

    if settings.rotate_by_time:
        file_handler = TimedRotatingFileHandler(
            settings.log_path, when="midnight", interval=1, backupCount=settings.max_log_files, encoding="utf-8"
        )
    else:
        file_handler = RotatingFileHandler(
            settings.log_path, maxBytes=settings.max_log_size, backupCount=settings.max_log_files, encoding="utf-8"
        )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    for handler in (file_handler, console_handler):
        log.addHandler(handler)
    _route_library_loggers(file_handler, console_handler)

    _LOGGER = log
    return log


def _route_library_loggers(*handlers: logging.Handler) -> None:
    for name, level in LIBRARY_LOGGERS.items():
        lib = logging.getLogger(name)
        lib.setLevel(level)
        lib.propagate = False
        for h in lib.handlers[:]:
            lib.removeHandler(h)
        for h in handlers:
            lib.addHandler(h)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Retrieve a logger. If setup_logger() hasn't been called yet,
    return a temporary stderr-based logger.
    """
    if _LOGGER is not None:
        return _LOGGER.getChild(_short_name(name)) if name else _LOGGER

    temp = logging.getLogger("mailvault.temp")
    if not temp.handlers:
        h = logging.StreamHandler(sys.stderr)
        h.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        temp.addHandler(h)
        temp.setLevel(logging.INFO)
    return temp.getChild(_short_name(name)) if name else temp


def job_logger(logger: logging.Logger, job_id: str) -> JobLogAdapter:
    return JobLogAdapter(logger, {"job_id": job_id})


def _short_name(name: str) -> str:
    # "mailvault.jobs" -> "jobs" so children read mailvault.jobs, not mailvault.mailvault.jobs
    prefix = "mailvault."
    return name[len(prefix):] if name.startswith(prefix) else name
