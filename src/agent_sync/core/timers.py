from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[Any]]


class PendingTimer:
    """Single-slot debounce: scheduling again replaces a callback that has not fired.

    Once a callback starts it runs to completion; `cancel` only drops the
    waiting slot and `aclose` waits for anything already running.
    """

    def __init__(self, delay: float):
        self.delay = delay
        self._pending: asyncio.Task[None] | None = None
        self._running: set[asyncio.Task[Any]] = set()

    @property
    def is_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def schedule(self, callback: AsyncCallback) -> None:
        self.cancel()
        self._pending = asyncio.create_task(self._fire(callback))

    def cancel(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    async def _fire(self, callback: AsyncCallback) -> None:
        await asyncio.sleep(self.delay)
        self._pending = None
        task = asyncio.create_task(self._run(callback))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    @staticmethod
    async def _run(callback: AsyncCallback) -> None:
        try:
            await callback()
        except Exception:
            logger.exception("Debounced callback failed")


class PeriodicTimer:
    """Runs `callback` every `interval` seconds until stopped.

    `stop` lets an in-flight tick finish. A tick may stop its own timer.
    """

    def __init__(self, interval: float, callback: AsyncCallback, name: str = "periodic"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await task
        self._task = None

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                return
            except TimeoutError:
                pass
            try:
                await self.callback()
            except Exception:
                logger.exception("%s tick failed", self.name)
