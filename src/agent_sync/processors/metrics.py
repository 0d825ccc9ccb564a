from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable
from pathlib import Path
from typing import Any

from agent_sync.ingest.base import ParsedSession
from agent_sync.processors.base import ProcessingContext, ProcessingResult, SessionProcessor
from agent_sync.storage.append_log import MetricsLog
from agent_sync.storage.models import MetricDelta, Session, utcnow
from agent_sync.storage.remote import RemoteTransport
from agent_sync.storage.session_store import SessionStore
from agent_sync.storage.sync_state import MetricsSyncStateManager

logger = logging.getLogger(__name__)

METRIC_NAME = "agent_session"
UNKNOWN_BRANCH = "unknown"

TransportFactory = Callable[[ProcessingContext], RemoteTransport]


def group_by_branch(
    deltas: list[MetricDelta], default_branch: str
) -> dict[str, list[MetricDelta]]:
    groups: dict[str, list[MetricDelta]] = defaultdict(list)
    for delta in deltas:
        groups[delta.git_branch or default_branch].append(delta)
    return dict(groups)


def build_session_metric(
    session: Session, branch: str, deltas: list[MetricDelta]
) -> dict[str, Any]:
    """Aggregate one branch's pending deltas into a single metric payload."""
    tools: Counter[str] = Counter()
    models: Counter[str] = Counter()
    successful = failed = 0
    created = modified = deleted = 0
    lines_added = lines_removed = 0
    input_tokens = output_tokens = cache_creation = cache_read = 0
    prompts = 0
    errors: list[str] = []

    for delta in deltas:
        input_tokens += delta.tokens.input
        output_tokens += delta.tokens.output
        cache_creation += delta.tokens.cache_creation
        cache_read += delta.tokens.cache_read
        tools.update(delta.tools)
        models.update(delta.models)
        prompts += len(delta.user_prompts)
        for status in delta.tool_status.values():
            successful += status.success
            failed += status.failure
        for operation in delta.file_operations:
            if operation.type == "created":
                created += 1
            elif operation.type == "modified":
                modified += 1
            else:
                deleted += 1
            lines_added += operation.lines_added
            lines_removed += operation.lines_removed
        if delta.api_error_message:
            errors.append(delta.api_error_message)

    ended_at = session.end_time or utcnow()
    duration_ms = max(0, int((ended_at - session.start_time).total_seconds() * 1000))

    return {
        "name": METRIC_NAME,
        "attributes": {
            "agent": session.agent_name,
            "provider": session.provider,
            "project": session.project,
            "repository": Path(session.working_directory).name,
            "session_id": session.session_id,
            "agent_session_id": session.correlation.agent_session_id,
            "branch": branch,
            "llm_model": models.most_common(1)[0][0] if models else None,
            "status": session.status.value,
            "total_user_prompts": prompts,
            "total_input_tokens": input_tokens,
            "total_output_tokens": output_tokens,
            "total_cache_creation_tokens": cache_creation,
            "total_cache_read_input_tokens": cache_read,
            "total_tokens": input_tokens + output_tokens + cache_creation + cache_read,
            "total_tool_calls": sum(tools.values()),
            "successful_tool_calls": successful,
            "failed_tool_calls": failed,
            "tool_names": dict(tools),
            "files_created": created,
            "files_modified": modified,
            "files_deleted": deleted,
            "total_lines_added": lines_added,
            "total_lines_removed": lines_removed,
            "session_duration_ms": duration_ms,
            "active_duration_ms": session.active_duration_ms,
            "had_errors": bool(errors),
            "errors": errors,
            "count": len(deltas),
        },
    }


class MetricsProcessor(SessionProcessor):
    """Sends pending deltas as one aggregated metric per git branch."""

    name = "metrics"
    priority = 1

    def __init__(
        self,
        store: SessionStore,
        transport_factory: TransportFactory = RemoteTransport.from_context,
    ) -> None:
        super().__init__(store.in_flight)
        self.store = store
        self.transport_factory = transport_factory

    async def _process(self, parsed: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        session = self.store.load(parsed.session_id)
        if session is None:
            return ProcessingResult(success=True, message="No local session; nothing to sync")

        metrics_log = MetricsLog(self.store.metrics_path(session.session_id))
        pending = metrics_log.pending()
        if not pending:
            return ProcessingResult(success=True, message="No pending metrics")

        groups = group_by_branch(pending, session.git_branch or UNKNOWN_BRANCH)
        synced_ids: list[str] = []
        failed_count = 0
        errors: list[str] = []

        async with self.transport_factory(context) as transport:
            for branch, deltas in groups.items():
                record_ids = [delta.record_id for delta in deltas]
                result = await transport.send_metric(build_session_metric(session, branch, deltas))
                if result.success:
                    synced_ids.extend(record_ids)
                    continue
                failed_count += len(record_ids)
                errors.append(f"{branch}: {result.message}")
                metrics_log.mark_failed(record_ids, result.message)
                logger.warning(
                    "Metrics for session %s branch %s not sent: %s",
                    session.session_id,
                    branch,
                    result.message,
                )

        metrics_log.mark_synced(synced_ids)
        MetricsSyncStateManager(self.store, session.session_id).record_sync(
            synced_ids, failed_count, "; ".join(errors) or None
        )

        metadata = {
            "branches": list(groups),
            "synced": len(synced_ids),
            "failed": failed_count,
        }
        if errors:
            return ProcessingResult(
                success=False,
                message=f"Synced {len(synced_ids)} deltas, {failed_count} failed",
                metadata=metadata,
            )
        return ProcessingResult(
            success=True,
            message=f"Synced {len(synced_ids)} deltas across {len(groups)} branch(es)",
            metadata=metadata,
        )
