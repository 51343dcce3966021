from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_HANDLER_MARK = "_research_scheduler"


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARK, True)
    return handler


def setup_logging(
    level: str,
    log_file: str,
    *,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    access_log: bool = False,
) -> None:
    """Route app, scheduler and uvicorn logs to stdout and an optional rotating file.

    Safe to call more than once: handlers installed by an earlier call are replaced.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    stream_handler = _mark(logging.StreamHandler(sys.stdout))
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _mark(
            RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # uvicorn runs with log_config=None; its loggers go through ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.propagate = True
    logging.getLogger("uvicorn.access").setLevel(logging.INFO if access_log else logging.WARNING)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
