"""Logging setup for looprunner runs.

Console output stays terse; the rotating file log records every module with
the thread that emitted it, so interleaved worker output can be untangled.
The file lives under the run's state directory unless configured otherwise.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

__all__ = ["setup_logger", "get_logger", "resolve_log_path"]

LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "looprunner.log"
# Used when no state directory is known
DEFAULT_LOG_FILE = Path("~/.looprunner").expanduser() / LOG_DIR_NAME / LOG_FILE_NAME
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3
QUIET_LIBRARIES = ("litellm", "httpx", "LiteLLM")

LogTarget = Union[str, Path, bool, None]


def setup_logger(
    name: str = "looprunner",
    verbose: bool = False,
    log_file: LogTarget = None,
    state_dir: Union[str, Path, None] = None,
) -> logging.Logger:
    """Configure and return the package logger.

    Args:
        name: Logger name; ``"looprunner"`` configures every module logger.
        verbose: ``True`` shows INFO on the console and DEBUG in the file.
        log_file: File logging target.
            - ``None`` or ``True``: ``<state_dir>/logs/looprunner.log``
            - ``False``: disable file logging
            - ``str``/``Path``: use a custom log file path
        state_dir: State directory of the run; the default log goes beneath it.
    """
    logger = logging.getLogger(name)
    console_level = logging.INFO if verbose else logging.WARNING
    file_level = logging.DEBUG if verbose else logging.INFO

    # Reconfigure safely if setup_logger is called more than once.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    log_path = resolve_log_path(log_file, state_dir)
    if log_path is None:
        logger.setLevel(console_level)
    else:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)
        logger.setLevel(file_level)

    for library in QUIET_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name without changing its configuration."""
    return logging.getLogger(name)


def resolve_log_path(log_file: LogTarget, state_dir: Union[str, Path, None] = None) -> Path | None:
    """Translate ``log_file`` input to a concrete path, or None to disable file logging."""
    if log_file is False:
        return None
    if log_file is None or log_file is True:
        if state_dir is None:
            return DEFAULT_LOG_FILE
        return Path(state_dir).expanduser() / LOG_DIR_NAME / LOG_FILE_NAME
    return Path(log_file).expanduser()
