"""Timer-driven sync of every known agent log through the registered processors.

Each pass discovers the adapter's log files, maps them to local sessions,
parses each file once and runs the processors in ascending priority. One
processor or file failing never stops the rest of the pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_sync.core.correlator import CorrelationRequest, SessionCorrelator
from agent_sync.core.snapshot import FileSnapshotter
from agent_sync.core.timers import PeriodicTimer
from agent_sync.ingest.base import AdapterError, AgentAdapter, ParsedSession
from agent_sync.ingest.discovery import discover_session_files
from agent_sync.processors.base import ProcessingContext, ProcessingResult, SessionProcessor
from agent_sync.storage.models import (
    CorrelationStatus,
    FileInfo,
    Session,
    SessionStatus,
    SyncSettings,
)
from agent_sync.storage.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass
class CoordinatorRunResult:
    """Summary of one pass over all discovered logs."""

    files_seen: int = 0
    sessions_processed: int = 0
    sessions_correlated: int = 0
    results: dict[str, dict[str, ProcessingResult]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    was_already_running: bool = False


async def run_processors(
    processors: Sequence[SessionProcessor],
    parsed: ParsedSession,
    context: ProcessingContext,
) -> dict[str, ProcessingResult]:
    results: dict[str, ProcessingResult] = {}
    for processor in sorted(processors, key=lambda p: p.priority):
        if not processor.should_process(parsed):
            continue
        result = await processor.process(parsed, context)
        results[processor.name] = result
        if result.success:
            logger.debug("%s: %s (%s)", processor.name, result.message, parsed.session_id)
        else:
            logger.warning(
                "%s failed for session %s: %s", processor.name, parsed.session_id, result.message
            )
    return results


class SessionSyncer:
    """Runs the processors for a single session, e.g. as the final sync on exit."""

    def __init__(
        self,
        adapter: AgentAdapter,
        processors: Sequence[SessionProcessor],
        store: SessionStore,
        context: ProcessingContext,
    ) -> None:
        self.adapter = adapter
        self.processors = list(processors)
        self.store = store
        self.context = context

    async def sync(self, session: Session | str) -> dict[str, ProcessingResult]:
        session_id = session if isinstance(session, str) else session.session_id
        record = self.store.load(session_id)
        if record is None:
            logger.warning("Cannot sync unknown session %s", session_id)
            return {}
        if (
            record.correlation.status != CorrelationStatus.MATCHED
            or record.correlation.agent_session_file is None
        ):
            logger.info("Session %s is not correlated; skipping sync", session_id)
            return {}

        path = Path(record.correlation.agent_session_file)
        try:
            parsed = self.adapter.parse_session_file(path, session_id)
        except (AdapterError, OSError, ValueError) as exc:
            logger.warning("Failed to parse %s: %s", path, exc)
            return {}
        return await run_processors(self.processors, parsed, self.context)


class SyncCoordinator:
    def __init__(
        self,
        adapter: AgentAdapter,
        processors: Sequence[SessionProcessor],
        context: ProcessingContext,
        *,
        store: SessionStore,
        settings: SyncSettings | None = None,
        snapshotter: FileSnapshotter | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.processors = sorted(processors, key=lambda p: p.priority)
        self.context = context
        self.store = store
        self.settings = settings or SyncSettings()
        self.snapshotter = snapshotter or FileSnapshotter()
        # Late correlation is a single attempt; the next pass is the retry.
        self.correlator = SessionCorrelator(adapter, sleep=sleep)
        self.enabled = self.settings.sync.enabled
        self._syncing = False
        self._timer: PeriodicTimer | None = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def start(self) -> None:
        if not self.enabled:
            logger.info("Session sync disabled")
            return
        if self._timer is not None:
            return
        self._timer = PeriodicTimer(
            self.settings.sync.interval_seconds, self._tick, name="session-sync"
        )
        self._timer.start()
        logger.info(
            "Session sync every %.0fs%s",
            self.settings.sync.interval_seconds,
            " (dry run)" if self.context.dry_run else "",
        )

    async def stop(self) -> CoordinatorRunResult | None:
        """Stop the timer and run one final pass."""
        if not self.enabled:
            return None
        if self._timer is not None:
            await self._timer.stop()
            self._timer = None
        return await self.sync_all()

    async def _tick(self) -> None:
        await self.sync_all()

    async def sync_all(self) -> CoordinatorRunResult:
        if self._syncing:
            logger.debug("Session sync already running; skipping")
            return CoordinatorRunResult(was_already_running=True)

        self._syncing = True
        try:
            return await self._sync_all()
        finally:
            self._syncing = False

    async def _sync_all(self) -> CoordinatorRunResult:
        run = CoordinatorRunResult()
        files = discover_session_files(self.adapter)
        run.files_seen = len(files)

        sessions = self.store.list_sessions()
        run.sessions_correlated = self._correlate_stragglers(sessions, files)

        by_file: dict[Path, Session] = {}
        for session in self.store.list_sessions():
            log_file = session.correlation.agent_session_file
            if session.correlation.status == CorrelationStatus.MATCHED and log_file:
                by_file[Path(log_file)] = session

        for path in files:
            session = by_file.get(path)
            if session is None:
                continue
            try:
                parsed = self.adapter.parse_session_file(path, session.session_id)
            except (AdapterError, OSError, ValueError) as exc:
                message = f"Failed to parse {path}: {exc}"
                logger.warning(message)
                run.errors.append(message)
                continue

            run.results[session.session_id] = await run_processors(
                self.processors, parsed, self.context
            )
            run.sessions_processed += 1

        if run.sessions_processed:
            logger.info(
                "Session sync: %d of %d logs processed", run.sessions_processed, run.files_seen
            )
        return run

    def _correlate_stragglers(self, sessions: list[Session], files: list[Path]) -> int:
        """Match active sessions whose spawn-time correlation did not find a log."""
        claimed = {
            Path(s.correlation.agent_session_file)
            for s in sessions
            if s.correlation.agent_session_file
        }
        correlated = 0
        for session in sessions:
            if session.status != SessionStatus.ACTIVE:
                continue
            if session.correlation.status == CorrelationStatus.MATCHED:
                continue

            # Logs already on disk when the session began belong to someone else.
            baseline = self.store.load_baseline(session.session_id)
            if baseline is None:
                logger.debug("No baseline for session %s; not late-correlating", session.session_id)
                continue

            candidates: list[FileInfo] = []
            for path in files:
                if path in claimed or path in baseline:
                    continue
                info = self.snapshotter.describe(path)
                if info is None:
                    continue
                if info.created_at is None or info.created_at >= session.start_time:
                    candidates.append(info)

            result = self.correlator.correlate(
                CorrelationRequest(
                    session_id=session.session_id,
                    agent_name=session.agent_name,
                    working_directory=session.working_directory,
                    new_files=candidates,
                ),
                retry_count=session.correlation.retry_count,
            )
            if result.status != CorrelationStatus.MATCHED:
                continue

            self.store.update_correlation(session.session_id, result)
            claimed.add(Path(result.agent_session_file or ""))
            correlated += 1
            logger.info("Late-correlated session %s", session.session_id)
        return correlated
