from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from agent_sync.storage.models import MetricsSyncState, Session, utcnow
from agent_sync.storage.session_store import SessionStore


def _metrics_state(session: Session) -> MetricsSyncState:
    if session.sync.metrics is None:
        session.sync.metrics = MetricsSyncState()
    return session.sync.metrics


class MetricsSyncStateManager:
    """Cursor bookkeeping for one session's metrics stream.

    `processed_record_ids` only ever grows.
    """

    def __init__(self, store: SessionStore, session_id: str):
        self.store = store
        self.session_id = session_id

    def load(self) -> MetricsSyncState | None:
        session = self.store.load(self.session_id)
        if session is None:
            return None
        return session.sync.metrics

    def initialize(self) -> MetricsSyncState:
        return _metrics_state(self.store.update(self.session_id, _metrics_state))

    def record_collection(
        self,
        record_ids: Iterable[str],
        last_line: int,
        last_timestamp: datetime | None = None,
        attached_prompts: Iterable[str] = (),
    ) -> MetricsSyncState:
        new_ids = list(record_ids)
        prompts = list(attached_prompts)

        def apply(session: Session) -> None:
            state = _metrics_state(session)
            known = set(state.processed_record_ids)
            added = [record_id for record_id in new_ids if record_id not in known]
            state.processed_record_ids.extend(added)
            state.total_deltas += len(added)
            state.last_processed_line = max(state.last_processed_line, last_line)
            if last_timestamp is not None:
                state.last_processed_timestamp = last_timestamp
            for prompt in prompts:
                if prompt not in state.attached_user_prompt_texts:
                    state.attached_user_prompt_texts.append(prompt)

        return _metrics_state(self.store.update(self.session_id, apply))

    def record_sync(
        self,
        synced_ids: Iterable[str],
        failed_count: int = 0,
        error: str | None = None,
    ) -> MetricsSyncState:
        synced = list(synced_ids)

        def apply(session: Session) -> None:
            state = _metrics_state(session)
            known = set(state.processed_record_ids)
            state.processed_record_ids.extend(r for r in synced if r not in known)
            state.total_synced += len(synced)
            state.total_failed += failed_count
            if synced:
                state.last_synced_record_id = synced[-1]
            state.last_sync_at = utcnow()
            state.last_sync_error = error

        return _metrics_state(self.store.update(self.session_id, apply))
