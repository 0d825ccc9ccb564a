from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from agent_sync.storage.models import FileInfo, FileSnapshot

logger = logging.getLogger(__name__)


class FileSnapshotter:
    """Recursive directory listings and their differences. Holds no state."""

    def snapshot(self, directory: Path) -> FileSnapshot:
        if not directory.exists():
            return FileSnapshot()

        files: list[FileInfo] = []
        for root, _dirs, names in os.walk(directory, onerror=self._log_walk_error):
            for name in names:
                info = self.describe(Path(root) / name)
                if info is not None:
                    files.append(info)
        return FileSnapshot(files=tuple(files))

    @staticmethod
    def describe(path: Path) -> FileInfo | None:
        try:
            stat = path.stat()
        except OSError as exc:
            logger.debug("Skipping %s: %s", path, exc)
            return None
        # st_ctime changes on every write, so it cannot stand in for creation time.
        birthtime = getattr(stat, "st_birthtime", None)
        created_at = None
        if birthtime is not None:
            created_at = datetime.fromtimestamp(birthtime, tz=UTC)
        return FileInfo(
            path=path,
            size=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            created_at=created_at,
        )

    @staticmethod
    def diff(before: FileSnapshot, after: FileSnapshot) -> list[FileInfo]:
        """Files present in `after` whose path is absent from `before`."""
        known = before.paths
        return [info for info in after.files if info.path not in known]

    @staticmethod
    def _log_walk_error(error: OSError) -> None:
        logger.debug("Skipping unreadable directory: %s", error)
