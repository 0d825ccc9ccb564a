"""Match a locally created session to the log file its agent process wrote.

Correlation compares directory snapshots taken before and after the agent is
spawned. New files are filtered by the adapter's session pattern and, when
several remain, narrowed by the adapter's candidate selection. Files can take
a while to appear, so unmatched attempts are retried on a bounded schedule.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from agent_sync.ingest.base import AgentAdapter
from agent_sync.storage.models import CorrelationResult, CorrelationStatus, FileInfo, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CORRELATION_DELAYS: tuple[float, ...] = (0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 32.0)

RetrySnapshot = Callable[[], Awaitable[Sequence[FileInfo]]]


@dataclass(frozen=True)
class RetryPolicy:
    """One retry per delay; `delays[i]` is slept before retry i+1."""

    delays: tuple[float, ...] = DEFAULT_CORRELATION_DELAYS

    @property
    def max_retries(self) -> int:
        return len(self.delays)


@dataclass
class CorrelationRequest:
    session_id: str
    agent_name: str
    working_directory: str
    new_files: Sequence[FileInfo] = field(default_factory=list)


class SessionCorrelator:
    def __init__(
        self,
        adapter: AgentAdapter,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.adapter = adapter
        if policy is None and adapter.correlation_retry_delays is not None:
            policy = RetryPolicy(tuple(adapter.correlation_retry_delays))
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def correlate(self, request: CorrelationRequest, retry_count: int = 0) -> CorrelationResult:
        if not request.new_files:
            return CorrelationResult(status=CorrelationStatus.PENDING, retry_count=retry_count)

        matches = [f for f in request.new_files if self.adapter.matches_session_pattern(f.path)]
        if not matches:
            logger.debug(
                "None of %d new files match the %s session pattern",
                len(request.new_files),
                request.agent_name,
            )
            return CorrelationResult(status=CorrelationStatus.FAILED, retry_count=retry_count)

        chosen = self.adapter.select_candidate(matches, request.working_directory)
        if chosen is None:
            return CorrelationResult(status=CorrelationStatus.FAILED, retry_count=retry_count)

        agent_session_id = self.adapter.extract_session_id(chosen.path)
        logger.info(
            "Correlated session %s with %s (%d candidate%s)",
            request.session_id,
            chosen.path,
            len(matches),
            "" if len(matches) == 1 else "s",
        )
        return CorrelationResult(
            status=CorrelationStatus.MATCHED,
            retry_count=retry_count,
            agent_session_id=agent_session_id,
            agent_session_file=str(chosen.path),
            detected_at=utcnow(),
        )

    async def correlate_with_retry(
        self, request: CorrelationRequest, retry_snapshot: RetrySnapshot
    ) -> CorrelationResult:
        """Correlate, retrying with fresh candidates until matched or out of retries.

        Never raises for "not found": the result is `failed` once retries run out.
        """
        result = self.correlate(request)
        if result.status == CorrelationStatus.MATCHED:
            return result

        for attempt, delay in enumerate(self.policy.delays):
            await self._sleep(delay)
            try:
                candidates = list(await retry_snapshot())
            except Exception as exc:
                logger.warning("Correlation retry %d snapshot failed: %s", attempt + 1, exc)
                candidates = []

            retry_request = CorrelationRequest(
                session_id=request.session_id,
                agent_name=request.agent_name,
                working_directory=request.working_directory,
                new_files=candidates,
            )
            result = self.correlate(retry_request, retry_count=attempt + 1)
            if result.status == CorrelationStatus.MATCHED:
                return result

        logger.warning(
            "Could not correlate session %s after %d retries",
            request.session_id,
            self.policy.max_retries,
        )
        return CorrelationResult(
            status=CorrelationStatus.FAILED, retry_count=self.policy.max_retries
        )
