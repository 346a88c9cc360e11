"""Application logging setup shared by the CLI and the background worker."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from .config import BackupJobConfig

APP_NAME = "local-mount-backup"
FILE_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"

# Marks handlers installed here so repeated setup calls replace them
_HANDLER_TAG = "_mount_backup_handler"


def setup_logging(
    config: BackupJobConfig,
    console_level: Optional[int] = logging.INFO,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        config: Job configuration providing log_file and log_level
        console_level: Level for a stdout console handler, None for no console
        log_to_file: Whether to write the application log file

    Returns:
        The application logger
    """
    root = logging.getLogger()
    root.setLevel(config.log_level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    file_error = None
    if log_to_file:
        log_file = Path(config.app_log_file)
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            file_error = e
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            _install(root, file_handler)

    if console_level is not None:
        stream = sys.stdout if console_level < logging.WARNING else sys.stderr
        console_handler = logging.StreamHandler(stream)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        _install(root, console_handler)

    logger = logging.getLogger(APP_NAME)
    if file_error is not None:
        logger.warning(f"Cannot write log file {config.app_log_file}: {file_error}")
    return logger


def _install(root: logging.Logger, handler: logging.Handler) -> None:
    setattr(handler, _HANDLER_TAG, True)
    root.addHandler(handler)
