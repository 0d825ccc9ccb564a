"""
Logging configuration for agent-sync.

The monitored agent owns the terminal, so records go primarily to a rotating
file under <home>/logs/ and stderr only carries warnings and above by default.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agent_sync.storage.models import SyncSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: SyncSettings) -> Path:
    """
    Configure package logging with on-disk rotation.

    Returns:
        Path to the primary log file.
    """
    config = settings.logging
    log_dir = settings.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "agent-sync.log"

    fmt = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=config.max_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(fmt)

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(_level(config.stderr_level, logging.WARNING))
    stderr_handler.setFormatter(fmt)

    logger = logging.getLogger("agent_sync")
    logger.setLevel(_level(config.level, logging.INFO))
    # Replace existing handlers so repeated calls don't duplicate output.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(file_handler)
    logger.addHandler(stderr_handler)
    logger.propagate = False

    return log_path


def _level(name: str, default: int) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default
