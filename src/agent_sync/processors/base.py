from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_sync import __version__
from agent_sync.ingest.base import ParsedSession
from agent_sync.storage.models import SyncSettings

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync in progress"


class ProcessingContext(BaseModel):
    """Everything a processor needs to reach the API for one sync pass."""

    api_base_url: str
    cookies: dict[str, str] = Field(default_factory=dict)
    api_key: str | None = None
    client_type: str = "agent-sync"
    version: str = __version__
    dry_run: bool = False
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delays: tuple[float, ...] = (1.0, 2.0, 5.0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        cookies: dict[str, str] | None = None,
        api_base_url: str | None = None,
    ) -> ProcessingContext:
        transport = settings.transport
        base_url = api_base_url or transport.base_url
        if not base_url:
            raise ValueError("Session sync requires `transport.base_url` to be set.")
        return cls(
            api_base_url=base_url,
            cookies=cookies or {},
            api_key=os.environ.get(transport.api_key_env) or None,
            client_type=transport.client_type,
            dry_run=settings.sync.dry_run,
            timeout_seconds=transport.timeout_seconds,
            retry_attempts=transport.retry_attempts,
            retry_delays=tuple(transport.retry_delays),
        )


@dataclass
class ProcessingResult:
    success: bool
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class SessionProcessor(ABC):
    """Turns a parsed agent log into one output stream with its own cursor.

    A second concurrent call on the same instance, or for the same stream and
    session through another instance sharing `in_flight`, gets a successful
    no-op. Processors over one `SessionStore` share its `in_flight` set.
    """

    name: str = "processor"
    priority: int = 100

    def __init__(self, in_flight: set[tuple[str, str]] | None = None) -> None:
        self._running = False
        self._in_flight = in_flight if in_flight is not None else set()

    @property
    def is_running(self) -> bool:
        return self._running

    def should_process(self, parsed: ParsedSession) -> bool:
        return True

    async def process(self, parsed: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        key = (self.name, parsed.session_id)
        if self._running or key in self._in_flight:
            logger.debug("%s: skipping %s, %s", self.name, parsed.session_id, SYNC_IN_PROGRESS)
            return ProcessingResult(success=True, message=SYNC_IN_PROGRESS)

        self._running = True
        self._in_flight.add(key)
        try:
            return await self._process(parsed, context)
        except Exception as exc:
            logger.exception("%s failed for session %s", self.name, parsed.session_id)
            return ProcessingResult(success=False, message=f"{type(exc).__name__}: {exc}")
        finally:
            self._running = False
            self._in_flight.discard(key)

    @abstractmethod
    async def _process(
        self, parsed: ParsedSession, context: ProcessingContext
    ) -> ProcessingResult:
        """Do the work for one parsed session."""
