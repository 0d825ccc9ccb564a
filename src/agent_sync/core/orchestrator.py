"""Lifecycle of one monitored agent session.

    before_spawn -> after_spawn (correlate) -> monitoring -> end_session
                                                  |
                                    transition -> successor orchestrator

Nothing here may break the monitored process: every public coroutine
catches its own failures, logs them and records them on the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from agent_sync.core.correlator import CorrelationRequest, RetryPolicy, SessionCorrelator
from agent_sync.core.git import detect_git_branch
from agent_sync.core.snapshot import FileSnapshotter
from agent_sync.core.timers import PendingTimer, PeriodicTimer
from agent_sync.core.watcher import LogFileWatcher
from agent_sync.ingest.base import AgentAdapter, LifecycleAdapter
from agent_sync.storage.append_log import MetricsLog
from agent_sync.storage.base import InvalidStatusTransitionError, SessionNotFoundError
from agent_sync.storage.models import (
    CorrelationResult,
    CorrelationStatus,
    FileInfo,
    FileSnapshot,
    Session,
    SessionStatus,
    SyncSettings,
    new_session_id,
)
from agent_sync.storage.session_store import SessionStore
from agent_sync.storage.sync_state import MetricsSyncStateManager

logger = logging.getLogger(__name__)

FinalSync = Callable[[Session], Awaitable[Any]]
WatcherFactory = Callable[[Path, Callable[[], None]], LogFileWatcher]


@dataclass
class SessionTransitionEvent:
    """The agent started a new logical session inside the same process."""

    old_session_id: str
    new_session_id: str
    new_session_file: str | None
    transition_timestamp: datetime
    orchestrator: SessionOrchestrator


class SessionLifecycleHooks(Protocol):
    """Host callbacks, passed once at construction."""

    async def on_session_start(self, session: Session) -> None: ...

    async def on_session_end(self, session: Session, exit_code: int) -> None: ...

    async def on_session_transition(self, event: SessionTransitionEvent) -> None: ...


class NullLifecycleHooks:
    async def on_session_start(self, session: Session) -> None:
        return None

    async def on_session_end(self, session: Session, exit_code: int) -> None:
        return None

    async def on_session_transition(self, event: SessionTransitionEvent) -> None:
        return None


class SessionOrchestrator:
    def __init__(
        self,
        adapter: AgentAdapter,
        *,
        store: SessionStore,
        working_directory: Path | str,
        agent_name: str | None = None,
        provider: str = "unknown",
        project: str | None = None,
        session_id: str | None = None,
        lifecycle_adapter: LifecycleAdapter | None = None,
        hooks: SessionLifecycleHooks | None = None,
        final_sync: FinalSync | None = None,
        settings: SyncSettings | None = None,
        snapshotter: FileSnapshotter | None = None,
        watcher_factory: WatcherFactory = LogFileWatcher,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.working_directory = Path(working_directory)
        self.agent_name = agent_name or adapter.agent_name
        self.provider = provider
        self.project = project
        self.session_id = session_id or new_session_id()
        self.lifecycle_adapter = lifecycle_adapter
        self.hooks: SessionLifecycleHooks = hooks or NullLifecycleHooks()
        self.final_sync = final_sync
        self.settings = settings or SyncSettings()
        self.snapshotter = snapshotter or FileSnapshotter()
        self._watcher_factory = watcher_factory
        self._sleep = sleep

        delays = adapter.correlation_retry_delays
        if delays is None:
            delays = self.settings.correlation.retry_delays
        self.correlator = SessionCorrelator(adapter, RetryPolicy(tuple(delays)), sleep=sleep)

        debounce = adapter.debounce_seconds
        if debounce is None:
            debounce = self.settings.monitoring.debounce_seconds
        self._debounce = PendingTimer(debounce)

        self.monitoring_enabled = True
        self.initialization_error: str | None = None
        self.post_spawn_error: str | None = None

        self._baseline: FileSnapshot | None = None
        self._watcher: LogFileWatcher | None = None
        self._discovery: PeriodicTimer | None = None
        self._collecting = False
        self._stopping = False
        self._exited = False
        self._transitioning = False

    # Spawn

    async def before_spawn(self, baseline: FileSnapshot | None = None) -> Session | None:
        """Take the baseline snapshot and persist the new session.

        A transition passes its predecessor's baseline so logs that existed
        before the host process started are never treated as new.
        """
        if not self.monitoring_enabled:
            return None
        try:
            if baseline is None:
                baseline = self.snapshotter.snapshot(self.adapter.get_sessions_dir())
            self._baseline = baseline
            session = Session(
                session_id=self.session_id,
                agent_name=self.agent_name,
                provider=self.provider,
                project=self.project,
                working_directory=str(self.working_directory),
                git_branch=detect_git_branch(self.working_directory),
            )
            self.store.save(session)
            self.store.save_baseline(self.session_id, baseline.paths)
        except Exception as exc:
            self.initialization_error = f"{type(exc).__name__}: {exc}"
            self.monitoring_enabled = False
            logger.warning(
                "Session monitoring disabled for %s: %s", self.session_id, self.initialization_error
            )
            self._record_diagnostic("before_spawn", exc)
            return None

        logger.info(
            "Created session %s for %s (%d files in baseline)",
            self.session_id,
            self.agent_name,
            len(self._baseline.files),
        )
        return session

    async def after_spawn(self) -> CorrelationResult | None:
        """Find the agent's log among files created since the baseline and start monitoring."""
        if not self.monitoring_enabled or self._baseline is None:
            return None

        baseline = self._baseline
        sessions_dir = self.adapter.get_sessions_dir()

        async def fresh_candidates() -> list[FileInfo]:
            return self.snapshotter.diff(baseline, self.snapshotter.snapshot(sessions_dir))

        try:
            await self._sleep(self.adapter.init_delay)
            request = CorrelationRequest(
                session_id=self.session_id,
                agent_name=self.agent_name,
                working_directory=str(self.working_directory),
                new_files=await fresh_candidates(),
            )
            result = await self.correlator.correlate_with_retry(request, fresh_candidates)
            self.store.update_correlation(self.session_id, result)

            if result.status == CorrelationStatus.MATCHED:
                await self._start_monitoring()
            else:
                logger.warning(
                    "Session %s not correlated after %d retries; periodic sync may pick it up",
                    self.session_id,
                    result.retry_count,
                )
            return result
        except Exception as exc:
            self.post_spawn_error = f"{type(exc).__name__}: {exc}"
            logger.warning("Post-spawn setup failed for %s: %s", self.session_id, exc)
            self._record_diagnostic("after_spawn", exc)
            return None

    # Monitoring

    async def _start_monitoring(self) -> None:
        session = self.store.require(self.session_id)
        log_file = session.correlation.agent_session_file
        if log_file is None:
            return

        MetricsSyncStateManager(self.store, self.session_id).initialize()
        self.store.start_activity(self.session_id)
        self.store.update_monitoring(self.session_id, is_active=True)

        await self.collect_deltas()

        self._watcher = self._watcher_factory(Path(log_file), self.notify_file_changed)
        await self._watcher.start()

        if self.lifecycle_adapter is not None:
            self._discovery = PeriodicTimer(
                self.settings.monitoring.discovery_interval_seconds,
                self.discover,
                name=f"discovery[{self.session_id}]",
            )
            self._discovery.start()

        logger.info("Monitoring %s for session %s", log_file, self.session_id)

    def notify_file_changed(self) -> None:
        """Debounced trigger: bursts of writes collapse into one collection pass."""
        if not self.monitoring_enabled or self._stopping:
            return
        self._debounce.schedule(self.collect_deltas)

    async def collect_deltas(self) -> int:
        """Append deltas for unseen log entries. Returns how many were appended.

        A call that arrives while another pass is running is dropped.
        """
        if self._collecting:
            logger.debug("Collection already running for %s", self.session_id)
            return 0

        self._collecting = True
        try:
            return self._collect()
        except Exception as exc:
            logger.warning("Delta collection failed for %s: %s", self.session_id, exc)
            return 0
        finally:
            self._collecting = False

    def _collect(self) -> int:
        session = self.store.load(self.session_id)
        if session is None or session.sync.metrics is None:
            return 0
        log_file = session.correlation.agent_session_file
        if log_file is None:
            return 0

        cursor = session.sync.metrics
        parsed = self.adapter.parse_incremental_metrics(
            Path(log_file),
            cursor.processed_record_ids,
            cursor.attached_user_prompt_texts,
        )
        if not parsed.deltas:
            return 0

        metrics_log = MetricsLog(self.store.metrics_path(self.session_id))
        already_logged = {record.record_id for record in metrics_log.read_all()}
        appended = []
        for delta in parsed.deltas:
            delta.session_id = self.session_id
            if not delta.git_branch:
                delta.git_branch = session.git_branch
            if delta.record_id in already_logged:
                continue
            metrics_log.append(delta)
            appended.append(delta)

        MetricsSyncStateManager(self.store, self.session_id).record_collection(
            [delta.record_id for delta in parsed.deltas],
            parsed.last_line,
            parsed.deltas[-1].timestamp,
            parsed.newly_attached_prompts,
        )
        self.store.update_monitoring(
            self.session_id, change_count=session.monitoring.change_count + 1
        )

        tokens = sum(delta.tokens.total for delta in appended)
        tools = sum(sum(delta.tools.values()) for delta in appended)
        files = sum(len(delta.file_operations) for delta in appended)
        logger.info(
            "Collected %d deltas for %s (%d tokens, %d tool calls, %d file changes)",
            len(appended),
            self.session_id,
            tokens,
            tools,
            files,
        )
        return len(appended)

    async def discover(self) -> SessionOrchestrator | None:
        """Periodic check for the agent ending its logical session while still running."""
        if not self.monitoring_enabled or self.lifecycle_adapter is None or self._transitioning:
            return None

        session = self.store.load(self.session_id)
        if session is None or session.correlation.agent_session_id is None:
            return None

        ended_at = self.lifecycle_adapter.detect_session_end(
            session.correlation.agent_session_id, session.start_time
        )
        if ended_at is None:
            return None

        logger.info("Agent session %s ended at %s", session.correlation.agent_session_id, ended_at)
        return await self.handle_transition(ended_at)

    # Shutdown

    async def prepare_for_exit(self) -> None:
        """Stop every trigger, then run one last collection pass."""
        if self._exited:
            return
        self._stopping = True

        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._discovery is not None:
            await self._discovery.stop()
            self._discovery = None
        await self._debounce.aclose()

        self._exited = True
        if not self.monitoring_enabled or self.store.load(self.session_id) is None:
            return

        await self.collect_deltas()
        try:
            self.store.accumulate_active_duration(self.session_id)
            self.store.update_monitoring(self.session_id, is_active=False)
        except OSError as exc:
            logger.warning("Could not finalize monitoring state for %s: %s", self.session_id, exc)

    async def mark_complete(self, exit_code: int) -> Session | None:
        status = SessionStatus.COMPLETED if exit_code == 0 else SessionStatus.FAILED
        try:
            session = self.store.update_status(self.session_id, status)
        except (SessionNotFoundError, InvalidStatusTransitionError, OSError) as exc:
            logger.warning("Could not mark session %s %s: %s", self.session_id, status, exc)
            return None
        logger.info("Session %s %s (exit code %d)", self.session_id, status.value, exit_code)
        return session

    async def end_session(self, exit_code: int) -> Session | None:
        """Flush, let the host sync while the session is still active, then finalize."""
        await self.prepare_for_exit()

        session = self.store.load(self.session_id)
        if session is not None:
            try:
                await self.hooks.on_session_end(session, exit_code)
            except Exception as exc:
                logger.warning("on_session_end hook failed for %s: %s", self.session_id, exc)
                self._record_diagnostic("on_session_end", exc)

            if self.final_sync is not None:
                try:
                    await self.final_sync(session)
                except Exception as exc:
                    logger.warning("Final sync failed for %s: %s", self.session_id, exc)
                    self._record_diagnostic("final_sync", exc)

        return await self.mark_complete(exit_code)

    async def destroy(self) -> None:
        """Stop all triggers without a final pass."""
        self._stopping = True
        self._exited = True
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._discovery is not None:
            await self._discovery.stop()
            self._discovery = None
        await self._debounce.aclose()

    # Transitions

    async def handle_transition(self, transition_at: datetime) -> SessionOrchestrator | None:
        """Finalize this session and hand over to a new one on the agent's next log."""
        if self._transitioning:
            return None
        session = self.store.load(self.session_id)
        if session is None or session.correlation.agent_session_file is None:
            return None
        self._transitioning = True
        previous_file = Path(session.correlation.agent_session_file)
        baseline = self._baseline or FileSnapshot()

        successor = self._spawn_successor()
        try:
            self.store.update(
                self.session_id,
                lambda record: setattr(record, "transitioned_to", successor.session_id),
            )
            await self.end_session(0)
            await successor._continue_from(
                self.session_id, previous_file, transition_at, baseline
            )
        except Exception as exc:
            logger.warning("Session transition from %s failed: %s", self.session_id, exc)
            self._record_diagnostic("transition", exc)
            return None

        new_session = self.store.load(successor.session_id)
        event = SessionTransitionEvent(
            old_session_id=self.session_id,
            new_session_id=successor.session_id,
            new_session_file=new_session.correlation.agent_session_file if new_session else None,
            transition_timestamp=transition_at,
            orchestrator=successor,
        )
        try:
            await self.hooks.on_session_transition(event)
        except Exception as exc:
            logger.warning("on_session_transition hook failed: %s", exc)
        return successor

    def _spawn_successor(self) -> SessionOrchestrator:
        return SessionOrchestrator(
            self.adapter,
            store=self.store,
            working_directory=self.working_directory,
            agent_name=self.agent_name,
            provider=self.provider,
            project=self.project,
            lifecycle_adapter=self.lifecycle_adapter,
            hooks=self.hooks,
            final_sync=self.final_sync,
            settings=self.settings,
            snapshotter=self.snapshotter,
            watcher_factory=self._watcher_factory,
            sleep=self._sleep,
        )

    async def _continue_from(
        self,
        previous_id: str,
        previous_file: Path,
        transition_at: datetime,
        baseline: FileSnapshot,
    ) -> None:
        session = await self.before_spawn(baseline)
        if session is None:
            return
        session = self.store.update(
            self.session_id,
            lambda record: setattr(record, "transitioned_from", previous_id),
        )
        try:
            await self.hooks.on_session_start(session)
        except Exception as exc:
            logger.warning("on_session_start hook failed for %s: %s", self.session_id, exc)
            self._record_diagnostic("on_session_start", exc)

        # Only logs that appeared after the host started and that no other
        # session owns can belong to the new session.
        known = set(baseline.paths)
        known.add(previous_file)
        known.update(
            Path(other.correlation.agent_session_file)
            for other in self.store.list_sessions()
            if other.correlation.agent_session_file
        )
        window = timedelta(milliseconds=self.settings.monitoring.transition_window_ms)
        cutoff = transition_at - window
        directory = previous_file.parent

        async def candidates() -> list[FileInfo]:
            snapshot = self.snapshotter.snapshot(directory)
            return [
                info
                for info in snapshot.files
                if info.path not in known
                and (info.created_at is None or info.created_at >= cutoff)
            ]

        request = CorrelationRequest(
            session_id=self.session_id,
            agent_name=self.agent_name,
            working_directory=str(self.working_directory),
            new_files=await candidates(),
        )
        result = await self.correlator.correlate_with_retry(request, candidates)
        self.store.update_correlation(self.session_id, result)
        if result.status == CorrelationStatus.MATCHED:
            await self._start_monitoring()
        else:
            logger.warning(
                "No new log found after transition from %s; session %s left uncorrelated",
                previous_id,
                self.session_id,
            )

    def _record_diagnostic(self, phase: str, error: BaseException) -> None:
        try:
            self.store.add_diagnostic(self.session_id, phase, error)
        except OSError as exc:
            logger.debug("Could not record %s diagnostic for %s: %s", phase, self.session_id, exc)
