"""
LOGGING_CONFIG
==============

Logging setup for cycleCore.

Everything logs through children of the ``cycle_core`` logger
(cycle_core.loop, cycle_core.scheduler.eternal, ...), so configuring that
one parent is enough. Output goes to the console and to a rotating file
under the data directory unless the file is disabled with ``"none"``.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "cycle_core"
LOG_FILENAME = "cyclecore.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Chatty third-party loggers held at WARNING unless we run at DEBUG
NOISY_LOGGERS = ("urllib3", "httpx", "uvicorn.access")

_logging_configured = False


def resolve_log_path(log_file: Optional[str], logs_dir: Optional[str] = None) -> Optional[Path]:
    """
    Where the log file goes, or None when file logging is off.

    ``log_file`` wins when given; ``"none"`` (any case) disables the file.
    Otherwise the file is ``{logs_dir}/cyclecore.log``, falling back to the
    data directory's LOGS folder.
    """
    if log_file is not None:
        if log_file.lower() == "none":
            return None
        return Path(log_file)

    if logs_dir is not None:
        return Path(logs_dir) / LOG_FILENAME

    from cycle_core.config.loader import _get_data_dir
    return _get_data_dir() / "LOGS" / LOG_FILENAME


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, logs_dir: Optional[str] = None) -> None:
    """
    Configure the ``cycle_core`` logger once per process.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL). Unknown
            names fall back to INFO.
        log_file: Explicit log file path, or ``"none"`` to log to the
            console only.
        logs_dir: Directory for the default log file.
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric_level)
    root.propagate = False

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    path = resolve_log_path(log_file, logs_dir)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    root.debug("Logging configured (level=%s, file=%s)", level.upper(), path or "disabled")


def reset_logging() -> None:
    """Close and detach cycleCore handlers so setup_logging() can run again."""
    global _logging_configured
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.propagate = True
    _logging_configured = False
