from __future__ import annotations

import logging
import os
from pathlib import Path

from agent_sync.ingest.base import AgentAdapter

logger = logging.getLogger(__name__)


def discover_session_files(adapter: AgentAdapter) -> list[Path]:
    """List every session log the adapter recognizes, oldest first.

    The adapter's sessions directory is walked recursively; its
    `matches_session_pattern` decides which files are session logs.
    """
    sessions_dir = adapter.get_sessions_dir()
    if not sessions_dir.exists():
        return []

    found: list[tuple[float, Path]] = []
    for root, _dirs, names in os.walk(sessions_dir, onerror=_log_walk_error):
        for name in names:
            path = Path(root) / name
            if not adapter.matches_session_pattern(path):
                continue
            try:
                found.append((path.stat().st_mtime, path))
            except OSError as exc:
                logger.debug("Skipping %s: %s", path, exc)

    return [path for _, path in sorted(found)]


def _log_walk_error(error: OSError) -> None:
    logger.debug("Cannot list %s: %s", error.filename, error)
