"""
Application logging.

Lines look like `<timestamp> [<requestId>] [<LEVEL>] <message>` and go to:
- stdout, colorized
- <directory>/stdout-YYYY-MM-DD.log  (below WARNING)
- <directory>/stderr-YYYY-MM-DD.log  (WARNING and above)

Files get the same line with ANSI codes stripped and roll over when the date
changes. The configured logger is handed around explicitly (app.state, the
DB manager, the request context); bind a request id with `bind_logger`.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from datetime import date
from pathlib import Path
from typing import Any, Callable

LOGGER_NAME = "restapi"
SYSTEM_ID = "SYS"

# Request/response lines sit between INFO and WARNING.
REQUEST = 21
RESPONSE = 22
logging.addLevelName(REQUEST, "REQ")
logging.addLevelName(RESPONSE, "RES")

_LEVEL_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    REQUEST: "REQ",
    RESPONSE: "RES",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}

_RESET = "\x1b[0m"
_BRIGHT = "\x1b[1m"
_RED = "\x1b[31m"
_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[35m",
    logging.INFO: "\x1b[34m",
    REQUEST: "\x1b[32m",
    RESPONSE: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: _RED,
    logging.CRITICAL: _RED,
}

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


class LineFormatter(logging.Formatter):
    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = None

    def __init__(self, *, color: bool) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        request_id = getattr(record, "request_id", None) or SYSTEM_ID
        label = _LEVEL_LABELS.get(record.levelno, record.levelname)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        timestamp = self.formatTime(record)

        if self.color:
            level_color = _LEVEL_COLORS.get(record.levelno, "\x1b[37m")
            return f"{timestamp} {_BRIGHT}{_RED}[{request_id}]{_RESET} {level_color}[{label}]{_RESET} {message}"
        return strip_ansi(f"{timestamp} [{request_id}] [{label}] {message}")


class DailyFileHandler(logging.FileHandler):
    """
    Append to `<prefix>-<YYYY-MM-DD>.log`, switching files when the day changes.
    """

    def __init__(self, directory: str | os.PathLike[str], prefix: str, *, today: Callable[[], date] = date.today) -> None:
        self.directory = Path(directory)
        self.prefix = prefix
        self._today = today
        self._current_day = today()
        self.directory.mkdir(parents=True, exist_ok=True)
        super().__init__(self.path_for(self._current_day), mode="a", encoding="utf-8")
        self.setFormatter(LineFormatter(color=False))

    def path_for(self, day: date) -> Path:
        return self.directory / f"{self.prefix}-{day.isoformat()}.log"

    def emit(self, record: logging.LogRecord) -> None:
        day = self._today()
        if day != self._current_day:
            # Handler.handle() already holds the lock here.
            self._current_day = day
            if self.stream is not None:
                self.stream.close()
                self.stream = None
            self.baseFilename = os.path.abspath(self.path_for(day))
        super().emit(record)


class _BelowLevelFilter(logging.Filter):
    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


class RequestLogger(logging.LoggerAdapter):
    """
    Logger bound to one request id.
    """

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("request_id", self.extra["request_id"])
        kwargs["extra"] = extra
        return msg, kwargs

    @property
    def request_id(self) -> str:
        return str(self.extra["request_id"])

    def request(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(REQUEST, msg, *args, **kwargs)

    def response(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(RESPONSE, msg, *args, **kwargs)


def bind_logger(logger: logging.Logger | RequestLogger, request_id: str | None = None) -> RequestLogger:
    if isinstance(logger, RequestLogger):
        logger = logger.logger
    return RequestLogger(logger, {"request_id": request_id or SYSTEM_ID})


def level_value(name: str | None) -> int:
    value = logging.getLevelName((name or "INFO").strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(
    directory: str | os.PathLike[str],
    level: str = "INFO",
    *,
    name: str = LOGGER_NAME,
    console: bool = True,
) -> logging.Logger:
    """
    Configure (or reconfigure) the application logger and return it.
    """
    logger = logging.getLogger(name)
    shutdown_logging(logger)
    logger.setLevel(level_value(level))
    logger.propagate = False

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(LineFormatter(color=True))
        logger.addHandler(console_handler)

    stdout_handler = DailyFileHandler(directory, "stdout")
    stdout_handler.addFilter(_BelowLevelFilter(logging.WARNING))
    logger.addHandler(stdout_handler)

    stderr_handler = DailyFileHandler(directory, "stderr")
    stderr_handler.setLevel(logging.WARNING)
    logger.addHandler(stderr_handler)

    return logger


def shutdown_logging(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
