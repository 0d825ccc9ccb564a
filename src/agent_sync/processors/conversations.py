"""Conversation transcript sync.

The cursor is the id of the last message already queued for upload. Each
pass turns the messages after it into history entries grouped by turn,
queues them as one payload record in the session's conversation log, then
sends every pending record. Turns are numbered by `history_index`, which the
API upserts on, so resending a record is harmless.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any
from uuid import uuid4

from agent_sync.ingest.base import ParsedSession, RawMessage
from agent_sync.processors.base import ProcessingContext, ProcessingResult, SessionProcessor
from agent_sync.storage.append_log import ConversationLog
from agent_sync.storage.models import (
    ConversationPayloadRecord,
    ConversationsSyncState,
    Session,
    utcnow,
)
from agent_sync.storage.remote import RemoteTransport
from agent_sync.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ProcessingContext], RemoteTransport]

MAX_TOOL_INPUT_CHARS = 2000


def is_user_prompt(message: RawMessage) -> bool:
    """A message typed by the user, as opposed to tool output or injected context."""
    if message.role != "user" or message.is_tool_result or message.is_meta:
        return False
    text = message.content.strip()
    return bool(text) and not text.startswith("<")


def _date(message: RawMessage) -> str | None:
    return message.timestamp.isoformat() if message.timestamp else None


def _thought(call_message: RawMessage, call: Any, agent_name: str) -> dict[str, Any]:
    input_text = json.dumps(call.args, default=str)
    return {
        "id": call.id or str(uuid4()),
        "parent_id": call_message.uuid,
        "author_type": "Tool",
        "author_name": call.tool,
        "message": call.result or "",
        "input_text": input_text[:MAX_TOOL_INPUT_CHARS],
        "in_progress": False,
        "output_format": "text",
        "error": not call.success,
        "metadata": {"agent": agent_name, "timestamp": _date(call_message)},
    }


def _transform_turn(
    history_index: int,
    messages: Sequence[RawMessage],
    assistant_id: str | None,
    agent_name: str,
) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    if messages and is_user_prompt(messages[0]):
        prompt = messages[0]
        entries.append(
            {
                "role": "User",
                "message": prompt.content,
                "message_raw": prompt.content,
                "history_index": history_index,
                "date": _date(prompt),
                "file_names": [],
            }
        )

    replies = [m for m in messages if m.role == "assistant"]
    thoughts: list[dict[str, Any]] = []
    for message in messages:
        if message.is_meta and message.content.strip():
            thoughts.append(
                {
                    "id": message.uuid or str(uuid4()),
                    "author_type": "Agent",
                    "author_name": agent_name,
                    "message": message.content,
                    "in_progress": False,
                    "output_format": "text",
                    "metadata": {"timestamp": _date(message)},
                }
            )
        for call in message.tool_calls:
            thoughts.append(_thought(message, call, agent_name))

    if not replies and not thoughts:
        return entries

    texts = [m.content for m in replies if m.content.strip()]
    final = texts[-1] if texts else ""
    last = replies[-1] if replies else messages[-1]
    entry: dict[str, Any] = {
        "role": "Assistant",
        "message": final,
        "message_raw": final,
        "history_index": history_index,
        "date": _date(last),
        "thoughts": thoughts,
        "input_tokens": sum(m.usage.input for m in replies if m.usage),
        "output_tokens": sum(m.usage.output for m in replies if m.usage),
        "cache_read_input_tokens": sum(m.usage.cache_read for m in replies if m.usage),
        "file_names": [],
    }
    if assistant_id:
        entry["assistant_id"] = assistant_id
    entries.append(entry)
    return entries


def build_history(
    messages: Sequence[RawMessage],
    last_index: int,
    *,
    assistant_id: str | None = None,
    agent_name: str = "Claude Code",
) -> tuple[list[dict[str, Any]], int, bool]:
    """Turn messages into history entries.

    Messages before the first user prompt continue the turn numbered
    `last_index`. Returns (entries, index of the last turn, whether the first
    message continued an earlier turn).
    """
    turns: list[tuple[int, list[RawMessage]]] = []
    current_index = last_index
    current: list[RawMessage] = []
    for message in messages:
        if is_user_prompt(message):
            if current:
                turns.append((current_index, current))
            current_index += 1
            current = [message]
        else:
            current.append(message)
    if current:
        turns.append((current_index, current))

    history: list[dict[str, Any]] = []
    for index, turn in turns:
        history.extend(_transform_turn(index, turn, assistant_id, agent_name))

    continuation = bool(messages) and not is_user_prompt(messages[0])
    return history, current_index, continuation


class ConversationsProcessor(SessionProcessor):
    name = "conversations"
    priority = 2

    def __init__(
        self,
        store: SessionStore,
        *,
        assistant_id: str | None = None,
        folder: str | None = None,
        agent_display_name: str = "Claude Code",
        transport_factory: TransportFactory = RemoteTransport.from_context,
    ) -> None:
        super().__init__(store.in_flight)
        self.store = store
        self.assistant_id = assistant_id
        self.folder = folder
        self.agent_display_name = agent_display_name
        self.transport_factory = transport_factory

    def should_process(self, parsed: ParsedSession) -> bool:
        return bool(parsed.messages) or self.store.conversation_path(parsed.session_id).exists()

    async def _process(self, parsed: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        session = self.store.load(parsed.session_id)
        if session is None:
            return ProcessingResult(success=True, message="No local session; nothing to sync")

        conversation_log = ConversationLog(self.store.conversation_path(session.session_id))
        queued = self._queue_new_messages(session, parsed, conversation_log)

        pending = conversation_log.pending()
        if not pending:
            return ProcessingResult(success=True, message="No new messages")

        synced_ids: list[str] = []
        synced_messages = 0
        errors: list[str] = []

        async with self.transport_factory(context) as transport:
            for record in pending:
                result = await transport.upsert_conversation(
                    record.conversation_id,
                    record.history,
                    assistant_id=self.assistant_id,
                    folder=self.folder,
                )
                if result.success:
                    synced_ids.append(record.record_id)
                    synced_messages += len(record.message_ids)
                else:
                    errors.append(result.message)
                    conversation_log.mark_failed([record.record_id], result.message)

        conversation_log.mark_synced(synced_ids)
        self._record_sync(
            session.session_id,
            pending[0].conversation_id,
            synced_ids,
            synced_messages,
            errors,
        )

        metadata = {"queued": queued, "sent": len(synced_ids), "failed": len(errors)}
        if errors:
            logger.warning(
                "Conversation sync for session %s: %d of %d payloads failed: %s",
                session.session_id,
                len(errors),
                len(pending),
                errors[-1],
            )
            return ProcessingResult(
                success=False, message=f"{len(errors)} payload(s) failed", metadata=metadata
            )
        return ProcessingResult(
            success=True,
            message=f"Synced {synced_messages} message(s) in {len(synced_ids)} payload(s)",
            metadata=metadata,
        )

    def _queue_new_messages(
        self, session: Session, parsed: ParsedSession, conversation_log: ConversationLog
    ) -> int:
        """Queue messages after the cursor and advance it. Returns how many were queued."""
        state = session.sync.conversations or ConversationsSyncState()
        messages = [m for m in parsed.messages if m.uuid]

        start = 0
        last_index = state.last_synced_index
        if state.last_synced_message_id:
            position = next(
                (i for i, m in enumerate(messages) if m.uuid == state.last_synced_message_id),
                None,
            )
            if position is None:
                logger.warning(
                    "Conversation cursor %s not found in %s; reset detected, "
                    "re-syncing all %d messages",
                    state.last_synced_message_id,
                    parsed.path,
                    len(messages),
                )
                last_index = 0
            else:
                start = position + 1

        new_messages = messages[start:]
        if not new_messages:
            return 0

        history, last_index, continuation = build_history(
            new_messages,
            last_index,
            assistant_id=self.assistant_id,
            agent_name=self.agent_display_name,
        )
        if history:
            conversation_log.append(
                ConversationPayloadRecord(
                    conversation_id=state.conversation_id or session.session_id,
                    is_turn_continuation=continuation,
                    history_indices=sorted({entry["history_index"] for entry in history}),
                    message_ids=[m.uuid for m in new_messages if m.uuid],
                    history=history,
                )
            )

        def advance(record: Session) -> None:
            cursor = record.sync.conversations or ConversationsSyncState()
            cursor.last_synced_message_id = new_messages[-1].uuid
            cursor.last_synced_index = last_index
            record.sync.conversations = cursor

        self.store.update(session.session_id, advance)
        return len(new_messages)

    def _record_sync(
        self,
        session_id: str,
        conversation_id: str,
        synced_ids: list[str],
        synced_messages: int,
        errors: list[str],
    ) -> None:
        def apply(record: Session) -> None:
            cursor = record.sync.conversations or ConversationsSyncState()
            if synced_ids and cursor.conversation_id is None:
                cursor.conversation_id = conversation_id
            cursor.total_messages_synced += synced_messages
            cursor.total_sync_attempts += 1
            cursor.last_sync_at = utcnow()
            cursor.last_sync_error = errors[-1] if errors else None
            record.sync.conversations = cursor

        self.store.update(session_id, apply)
