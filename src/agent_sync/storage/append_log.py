from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import ValidationError

from agent_sync.storage.jsonl import append_jsonl, read_jsonl, write_jsonl_atomic
from agent_sync.storage.models import (
    ConversationPayloadRecord,
    MetricDelta,
    SyncStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", MetricDelta, ConversationPayloadRecord)


class AppendLog(Generic[RecordT]):
    """Per-session append-only record stream.

    Records are never removed or reordered. Status flips rewrite the whole
    file atomically so a crash leaves either the previous or the new content.
    """

    record_type: type[RecordT]

    def __init__(self, path: Path):
        self.path = path

    def append(self, record: RecordT) -> None:
        append_jsonl(self.path, record.model_dump_json())

    def extend(self, records: Iterable[RecordT]) -> int:
        count = 0
        for record in records:
            self.append(record)
            count += 1
        return count

    def read_all(self) -> list[RecordT]:
        records: list[RecordT] = []
        for raw in read_jsonl(self.path):
            try:
                records.append(self.record_type.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping invalid record in %s: %s", self.path, exc)
        return records

    def pending(self) -> list[RecordT]:
        return [r for r in self.read_all() if r.sync_status == SyncStatus.PENDING]

    def mark_synced(self, record_ids: Iterable[str]) -> int:
        """Flip the given records to synced. Returns how many changed."""
        targets = set(record_ids)
        if not targets:
            return 0

        now = utcnow()
        changed = 0

        def flip(record: RecordT) -> RecordT:
            nonlocal changed
            if record.record_id not in targets or record.sync_status == SyncStatus.SYNCED:
                return record
            changed += 1
            return record.model_copy(
                update={
                    "sync_status": SyncStatus.SYNCED,
                    "synced_at": now,
                    "sync_attempts": record.sync_attempts + 1,
                    "sync_error": None,
                }
            )

        self._rewrite(flip)
        return changed

    def mark_failed(self, record_ids: Iterable[str], error: str) -> int:
        """Count a failed attempt. Records stay pending so the next pass retries them."""
        targets = set(record_ids)
        if not targets:
            return 0

        changed = 0

        def bump(record: RecordT) -> RecordT:
            nonlocal changed
            if record.record_id not in targets or record.sync_status != SyncStatus.PENDING:
                return record
            changed += 1
            return record.model_copy(
                update={"sync_attempts": record.sync_attempts + 1, "sync_error": error}
            )

        self._rewrite(bump)
        return changed

    def _rewrite(self, transform) -> None:
        records = [transform(record) for record in self.read_all()]
        write_jsonl_atomic(self.path, (record.model_dump_json() for record in records))


class MetricsLog(AppendLog[MetricDelta]):
    record_type = MetricDelta


class ConversationLog(AppendLog[ConversationPayloadRecord]):
    record_type = ConversationPayloadRecord
