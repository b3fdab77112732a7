"""
Logging setup for the schema sync engine.

Modules call ``create_logger(__name__)``. Console output goes through
colorlog; a plain-text file handler is added when SYNC_LOG_DIR (or an
explicit log file) is given. Runner failures are reported through
``log_exception``, which adds hints for the error's kind.
"""

import logging
import os
import sys
from typing import Dict, List, Optional, Tuple, Type, Union

import colorlog

from schema_sync.exceptions import (
    ArchiveError,
    CompatibilityRejectedError,
    ConfigurationError,
    ImportModeRequiredError,
    MigrationCancelledError,
    PartialCaptureError,
    SourceUnreachableError,
    SubjectNotFoundError,
    TransientNetworkError,
)

CONSOLE_FORMAT = "%(log_color)s%(levelname)-8s%(reset)s %(blue)s%(name)s%(reset)s | %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LEVEL_COLORS: Dict[str, str] = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# First matching entry wins, so subclasses come before their bases
HINTS: List[Tuple[Type[Exception], Tuple[str, ...]]] = [
    (ConfigurationError, (
        "Check the REGISTRY_* and SYNC_* settings (environment or .env)",
    )),
    (SourceUnreachableError, (
        "Check the source registry URL and credentials",
        "Transient failures were already retried; try again once it is reachable",
    )),
    (SubjectNotFoundError, (
        "Check the subject patterns against the source's subject list",
    )),
    (PartialCaptureError, (
        "Re-run without strict capture to export what could be read",
    )),
    (ArchiveError, (
        "Check the archive was written by schema_sync and is not truncated",
    )),
    (ImportModeRequiredError, (
        "Put the destination context in IMPORT mode or enable SYNC_MANAGE_IMPORT_MODE",
    )),
    (CompatibilityRejectedError, (
        "Compare the destination's compatibility mode with the source's",
    )),
    (TransientNetworkError, (
        "Check that both registries are reachable",
    )),
    (MigrationCancelledError, (
        "Re-run the same plan; applied operations are skipped",
    )),
]

DEFAULT_HINTS = (
    "Check that both registries are reachable",
    "Re-run the same plan; applied operations are skipped",
    "Inspect the failed operations listed in the migration report",
)


def _console_handler(level: Union[int, str]) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(CONSOLE_FORMAT, log_colors=LEVEL_COLORS))
    return handler


def _file_handler(
    level: Union[int, str],
    name: str,
    log_dir: Optional[str],
    log_file: Optional[str],
) -> logging.Handler:
    path = log_file or f"{name}.log"
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.join(log_dir, path)

    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def create_logger(
    name: Optional[str] = None,
    log_level: Union[int, str, None] = None,
    log_dir: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Return a logger writing to the console and, optionally, a file.

    Calling it again for the same name replaces the logger's handlers.

    :param name: Logger name (typically __name__)
    :param log_level: Level (default: SYNC_LOG_LEVEL or INFO)
    :param log_dir: Directory for the log file (default: SYNC_LOG_DIR, if set)
    :param log_file: Log file name; defaults to ``<name>.log``
    """
    name = name or "schema_sync"
    level = log_level if log_level is not None else os.getenv("SYNC_LOG_LEVEL", "INFO").upper()
    log_dir = log_dir if log_dir is not None else os.getenv("SYNC_LOG_DIR") or None

    logger = colorlog.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(_console_handler(level))
    if log_dir or log_file:
        logger.addHandler(_file_handler(level, name, log_dir, log_file))

    return logger


def troubleshooting_hints(error: Exception) -> Tuple[str, ...]:
    """Hints for an error, by the first matching exception type."""
    for error_type, hints in HINTS:
        if isinstance(error, error_type):
            return hints
    return DEFAULT_HINTS


def log_exception(logger: logging.Logger, e: Exception, context: Optional[str] = None) -> None:
    """Log a failed run with its type, details and troubleshooting hints."""
    where = f" during {context}" if context else ""
    logger.critical(f"{type(e).__name__}{where}: {e}")

    hints = troubleshooting_hints(e)
    logger.critical("Troubleshooting:")
    for number, hint in enumerate(hints, 1):
        logger.critical(f"  {number}. {hint}")
