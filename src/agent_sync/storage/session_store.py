from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agent_sync.storage.base import InvalidStatusTransitionError, SessionNotFoundError
from agent_sync.storage.jsonl import read_jsonl, write_jsonl_atomic, write_text_atomic
from agent_sync.storage.models import (
    CorrelationResult,
    Session,
    SessionDiagnostic,
    SessionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class SessionStore:
    """One JSON document per session under the sessions directory.

    Every mutation is a read-modify-write of the whole record followed by an
    atomic replace. A session is owned by a single process at a time.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = sessions_dir
        # (stream, session_id) pairs with a sync in flight in this process.
        self.in_flight: set[tuple[str, str]] = set()

    def session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def metrics_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}_metrics.jsonl"

    def conversation_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}_conversation.jsonl"

    def baseline_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}_baseline.jsonl"

    def save(self, session: Session) -> None:
        write_text_atomic(self.session_path(session.session_id), session.model_dump_json(indent=2))

    def load(self, session_id: str) -> Session | None:
        path = self.session_path(session_id)
        if not path.exists():
            return None
        try:
            return Session.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Failed to load session %s: %s", session_id, exc)
            return None

    def save_baseline(self, session_id: str, paths: Iterable[Path]) -> None:
        """Persist the agent log paths that already existed when the session began."""
        write_jsonl_atomic(
            self.baseline_path(session_id), ({"path": str(path)} for path in sorted(paths))
        )

    def load_baseline(self, session_id: str) -> frozenset[Path] | None:
        path = self.baseline_path(session_id)
        if not path.exists():
            return None
        return frozenset(
            Path(record["path"])
            for record in read_jsonl(path)
            if isinstance(record.get("path"), str)
        )

    def require(self, session_id: str) -> Session:
        session = self.load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def list_sessions(self) -> list[Session]:
        if not self.sessions_dir.exists():
            return []

        sessions: list[Session] = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            session = self.load(path.stem)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda session: session.start_time)

    def list_active(self) -> list[Session]:
        return [s for s in self.list_sessions() if s.status == SessionStatus.ACTIVE]

    def update(self, session_id: str, mutate: Callable[[Session], Any]) -> Session:
        """Apply `mutate` to the stored record and persist the result."""
        session = self.require(session_id)
        mutate(session)
        self.save(session)
        return session

    def update_status(self, session_id: str, status: SessionStatus) -> Session:
        session = self.require(session_id)
        if session.status == status:
            return session
        if session.is_terminal:
            raise InvalidStatusTransitionError(
                f"Session {session_id} is already {session.status.value}; "
                f"cannot move to {status.value}"
            )

        session.status = status
        if status != SessionStatus.ACTIVE:
            session.end_time = utcnow()
            session.monitoring.is_active = False
        self.save(session)
        return session

    def update_correlation(self, session_id: str, correlation: CorrelationResult) -> Session:
        def apply(session: Session) -> None:
            merged = session.correlation.model_dump()
            merged.update(correlation.model_dump(exclude_unset=True))
            session.correlation = CorrelationResult.model_validate(merged)

        return self.update(session_id, apply)

    def update_monitoring(self, session_id: str, **changes: Any) -> Session:
        def apply(session: Session) -> None:
            for key, value in changes.items():
                setattr(session.monitoring, key, value)
            session.monitoring.last_check_time = utcnow()

        return self.update(session_id, apply)

    def add_diagnostic(self, session_id: str, phase: str, error: BaseException) -> Session | None:
        """Attach an error to the session record. Missing sessions are ignored."""
        if self.load(session_id) is None:
            return None
        diagnostic = SessionDiagnostic(
            phase=phase,
            error_type=type(error).__name__,
            message=str(error),
        )
        return self.update(session_id, lambda session: session.diagnostics.append(diagnostic))

    def start_activity(self, session_id: str) -> Session:
        def apply(session: Session) -> None:
            if session.activity_started_at is None:
                session.activity_started_at = utcnow()

        return self.update(session_id, apply)

    def accumulate_active_duration(self, session_id: str) -> int:
        """Fold the open activity window into `active_duration_ms` and close it."""

        def apply(session: Session) -> None:
            if session.activity_started_at is None:
                return
            elapsed = utcnow() - session.activity_started_at
            session.active_duration_ms += max(0, int(elapsed.total_seconds() * 1000))
            session.activity_started_at = None

        return self.update(session_id, apply).active_duration_ms
