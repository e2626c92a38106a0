"""Logging setup for the CLI and the API server.

Records emitted while a calendar is being synced carry that calendar's id
(``record.calendar``), so interleaved runs can be told apart in the log file.
"""
from __future__ import annotations

import logging
import logging.handlers
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

from rich.logging import RichHandler

from calbridge.core.config import AppConfig

NO_CALENDAR = "-"

_current_calendar: ContextVar[str] = ContextVar("calbridge_calendar", default=NO_CALENDAR)

FILE_FORMAT = "%(asctime)s | %(levelname)s | %(calendar)s | %(name)s | %(message)s"


@contextmanager
def calendar_log_context(calendar_id: str) -> Iterator[None]:
    """Tag every record logged inside the block (this task and its threads)."""
    token = _current_calendar.set(calendar_id)
    try:
        yield
    finally:
        _current_calendar.reset(token)


class CalendarContextFilter(logging.Filter):
    """Stamps ``record.calendar`` from the active sync, or ``-`` outside one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "calendar"):
            record.calendar = _current_calendar.get()
        return True


def _console_handler(levelno: int) -> logging.Handler:
    handler = RichHandler(rich_tracebacks=True, show_time=False)
    handler.setLevel(levelno)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _file_handler(log_path: Path, config: AppConfig) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(config: AppConfig, *, level_name: str | None = None) -> Path:
    """Install the console and rotating file handlers on the root logger.

    Returns the log file path.
    """
    levelname = (level_name or config.general.log_level).upper()
    levelno = logging.getLevelName(levelname)
    if not isinstance(levelno, int):
        raise ValueError(f"Unsupported log level: {levelname}")

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(levelno)

    log_path = config.general.data_dir / "logs" / config.general.log_file_name
    context_filter = CalendarContextFilter()
    for handler in (_console_handler(levelno), _file_handler(log_path, config)):
        handler.addFilter(context_filter)
        root.addHandler(handler)

    logging.captureWarnings(True)

    # caldav and apscheduler are chatty at INFO
    logging.getLogger("caldav").setLevel(max(levelno, logging.WARNING))
    logging.getLogger("apscheduler").setLevel(max(levelno, logging.WARNING))

    # uvicorn installs its own handlers; route it through ours instead
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(logger_name).handlers.clear()
        logging.getLogger(logger_name).propagate = True

    return log_path
