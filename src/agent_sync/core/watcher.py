"""File watcher for a correlated agent log using watchfiles."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)


class LogFileWatcher:
    """Calls `on_change` whenever the watched file is added or modified.

    `on_change` must be cheap; it runs inside the watch loop.
    """

    def __init__(self, path: Path, on_change: Callable[[], None]):
        self.path = path.resolve()
        self.on_change = on_change
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Watcher for %s already running", self.path)
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.debug("Watching %s", self.path)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.debug("Stopped watching %s", self.path)

    def _matches(self, change: Change, path: str) -> bool:
        return change != Change.deleted and Path(path).resolve() == self.path

    async def _watch_loop(self) -> None:
        directory = self.path.parent
        if not directory.exists():
            logger.warning("Cannot watch %s: directory does not exist", self.path)
            return
        try:
            async for _changes in awatch(
                directory,
                watch_filter=self._matches,
                stop_event=self._stop_event,
                recursive=False,
            ):
                self.on_change()
        except OSError as exc:
            logger.warning("Watcher for %s stopped: %s", self.path, exc)
