from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_sync.ingest.base import (
    AdapterError,
    AgentAdapter,
    IncrementalParseResult,
    LifecycleAdapter,
    ParsedSession,
    RawMessage,
    RawToolCall,
)
from agent_sync.storage.models import FileOperation, MetricDelta, TokenUsage, ToolStatusCount

logger = logging.getLogger(__name__)

SUBAGENT_PREFIX = "agent-"
CLEAR_COMMAND = "/clear"
SYNTHETIC_MODEL = "<synthetic>"


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None

    try:
        if isinstance(value, (int, float)):
            timestamp = float(value)
            if timestamp > 1e12:
                timestamp = timestamp / 1000
            return datetime.fromtimestamp(timestamp, tz=UTC)
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)
    except (OSError, TypeError, ValueError):
        return None

    return None


def _read_entries(path: Path) -> list[tuple[int, dict[str, Any]]]:
    """Return (line_number, entry) pairs. A half-written last line is skipped."""
    entries: list[tuple[int, dict[str, Any]]] = []
    with path.open(encoding="utf-8") as file:
        for line_number, raw_line in enumerate(file, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping unparseable line %d in %s", line_number, path)
                continue
            if isinstance(entry, dict):
                entries.append((line_number, entry))
    return entries


def _content_items(entry: dict[str, Any]) -> list[dict[str, Any]]:
    message = entry.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [item for item in content if isinstance(item, dict)]
    return []


def _text_of(items: Iterable[dict[str, Any]]) -> str:
    parts = [str(item.get("text", "")) for item in items if item.get("type") == "text"]
    return "\n".join(part for part in parts if part).strip()


def _tool_result_text(item: dict[str, Any]) -> str:
    content = item.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _text_of(c for c in content if isinstance(c, dict))
    return ""


def _count_lines(text: Any) -> int:
    if not isinstance(text, str) or not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


class ClaudeCodeAdapter(AgentAdapter):
    """Claude Code writes one JSONL log per session under ~/.claude/projects/<project>/."""

    init_delay = 0.5

    def __init__(self, claude_dir: Path | None = None):
        self.claude_dir = claude_dir or Path.home() / ".claude"

    @property
    def agent_name(self) -> str:
        return "claude-code"

    def get_sessions_dir(self) -> Path:
        return self.claude_dir / "projects"

    def matches_session_pattern(self, path: Path) -> bool:
        path = Path(path)
        return (
            path.suffix == ".jsonl"
            and not path.name.startswith(SUBAGENT_PREFIX)
            and path.parent.parent.name == "projects"
        )

    def extract_session_id(self, path: Path) -> str:
        return Path(path).stem

    @staticmethod
    def _tool_results(entries: list[tuple[int, dict[str, Any]]]) -> dict[str, tuple[bool, str]]:
        results: dict[str, tuple[bool, str]] = {}
        for _, entry in entries:
            if entry.get("type") != "user":
                continue
            for item in _content_items(entry):
                if item.get("type") == "tool_result" and item.get("tool_use_id"):
                    results[item["tool_use_id"]] = (
                        not item.get("is_error", False),
                        _tool_result_text(item),
                    )
        return results

    @staticmethod
    def _user_prompt(entry: dict[str, Any]) -> str | None:
        if entry.get("type") != "user" or entry.get("isMeta"):
            return None
        items = _content_items(entry)
        if any(item.get("type") == "tool_result" for item in items):
            return None
        text = _text_of(items)
        # Slash commands and hook output are wrapped in tags.
        if not text or text.startswith("<"):
            return None
        return text

    def parse_incremental_metrics(
        self,
        path: Path,
        processed_ids: Iterable[str],
        attached_prompt_texts: Iterable[str],
    ) -> IncrementalParseResult:
        processed = set(processed_ids)
        attached = set(attached_prompt_texts)
        result = IncrementalParseResult()

        try:
            entries = _read_entries(path)
        except FileNotFoundError:
            return result

        tool_results = self._tool_results(entries)
        last_assistant_line = max(
            (line for line, entry in entries if entry.get("type") == "assistant"), default=0
        )
        pending_prompts: list[str] = []

        for line_number, entry in entries:
            prompt = self._user_prompt(entry)
            if prompt is not None:
                if prompt not in attached and prompt not in pending_prompts:
                    pending_prompts.append(prompt)
                continue

            record_id = entry.get("uuid")
            if entry.get("type") != "assistant" or not record_id:
                continue
            if record_id in processed:
                result.last_line = line_number
                continue

            tool_uses = [i for i in _content_items(entry) if i.get("type") == "tool_use"]
            awaiting_results = any(use.get("id") not in tool_results for use in tool_uses)
            if awaiting_results and line_number == last_assistant_line:
                # Tool results not flushed yet; the next pass picks this entry up.
                break

            result.deltas.append(
                self._build_delta(path, entry, tool_uses, tool_results, pending_prompts)
            )
            result.newly_attached_prompts.extend(pending_prompts)
            attached.update(pending_prompts)
            pending_prompts = []
            result.last_line = line_number

        return result

    def _build_delta(
        self,
        path: Path,
        entry: dict[str, Any],
        tool_uses: list[dict[str, Any]],
        tool_results: dict[str, tuple[bool, str]],
        prompts: list[str],
    ) -> MetricDelta:
        message = entry.get("message") or {}
        usage = message.get("usage") or {}
        tokens = TokenUsage(
            input=int(usage.get("input_tokens") or 0),
            output=int(usage.get("output_tokens") or 0),
            cache_creation=int(usage.get("cache_creation_input_tokens") or 0),
            cache_read=int(usage.get("cache_read_input_tokens") or 0),
        )

        tools: Counter[str] = Counter()
        tool_status: dict[str, ToolStatusCount] = {}
        file_operations: list[FileOperation] = []
        for use in tool_uses:
            name = str(use.get("name") or "unknown")
            tools[name] += 1
            outcome = tool_results.get(str(use.get("id")))
            if outcome is None:
                continue
            status = tool_status.setdefault(name, ToolStatusCount())
            if outcome[0]:
                status.success += 1
                operation = self._file_operation(name, use.get("input") or {})
                if operation is not None:
                    file_operations.append(operation)
            else:
                status.failure += 1

        model = message.get("model")
        api_error = _text_of(_content_items(entry)) if entry.get("isApiErrorMessage") else None

        return MetricDelta(
            record_id=str(entry["uuid"]),
            agent_session_id=str(entry.get("sessionId") or path.stem),
            timestamp=_parse_timestamp(entry.get("timestamp")) or datetime.now(UTC),
            git_branch=entry.get("gitBranch") or None,
            tokens=tokens,
            tools=dict(tools),
            tool_status=tool_status,
            file_operations=file_operations,
            models=[model] if model and model != SYNTHETIC_MODEL else [],
            user_prompts=list(prompts),
            api_error_message=api_error or None,
        )

    @staticmethod
    def _file_operation(tool: str, args: dict[str, Any]) -> FileOperation | None:
        file_path = args.get("file_path") or args.get("notebook_path")
        if tool == "Write":
            return FileOperation(
                type="created",
                path=file_path,
                tool=tool,
                lines_added=_count_lines(args.get("content")),
            )
        if tool == "Edit":
            return FileOperation(
                type="modified",
                path=file_path,
                tool=tool,
                lines_added=_count_lines(args.get("new_string")),
                lines_removed=_count_lines(args.get("old_string")),
            )
        if tool == "MultiEdit":
            edits = [e for e in args.get("edits") or [] if isinstance(e, dict)]
            return FileOperation(
                type="modified",
                path=file_path,
                tool=tool,
                lines_added=sum(_count_lines(e.get("new_string")) for e in edits),
                lines_removed=sum(_count_lines(e.get("old_string")) for e in edits),
            )
        if tool == "NotebookEdit":
            return FileOperation(type="modified", path=file_path, tool=tool)
        return None

    def parse_session_file(self, path: Path, session_id: str) -> ParsedSession:
        try:
            entries = _read_entries(path)
        except (OSError, UnicodeDecodeError) as exc:
            raise AdapterError(f"Cannot read Claude Code log {path}: {exc}") from exc
        tool_results = self._tool_results(entries)
        messages: list[RawMessage] = []
        metadata: dict[str, Any] = {}

        for _, entry in entries:
            kind = entry.get("type")
            if kind not in {"user", "assistant", "system"}:
                continue
            if "cwd" not in metadata and entry.get("cwd"):
                metadata["cwd"] = entry["cwd"]
            if entry.get("gitBranch"):
                metadata["git_branch"] = entry["gitBranch"]
            messages.append(self._to_raw_message(entry, tool_results))

        return ParsedSession(
            session_id=session_id,
            agent_session_id=self.extract_session_id(path),
            path=path,
            messages=messages,
            metadata=metadata,
        )

    @staticmethod
    def _to_raw_message(
        entry: dict[str, Any], tool_results: dict[str, tuple[bool, str]]
    ) -> RawMessage:
        items = _content_items(entry)
        message = entry.get("message") if isinstance(entry.get("message"), dict) else {}
        result_items = [i for i in items if i.get("type") == "tool_result"]

        tool_calls: list[RawToolCall] = []
        for use in (i for i in items if i.get("type") == "tool_use"):
            outcome = tool_results.get(str(use.get("id")))
            tool_calls.append(
                RawToolCall(
                    id=use.get("id"),
                    tool=str(use.get("name") or "unknown"),
                    args=use.get("input") if isinstance(use.get("input"), dict) else {},
                    result=outcome[1] if outcome else None,
                    success=outcome[0] if outcome else True,
                )
            )

        usage = message.get("usage") if isinstance(message, dict) else None
        if result_items:
            content = "\n".join(_tool_result_text(i) for i in result_items)
        else:
            content = _text_of(items) or str(entry.get("content") or "")

        return RawMessage(
            uuid=entry.get("uuid"),
            role=str(entry.get("type")),
            content=content,
            timestamp=_parse_timestamp(entry.get("timestamp")),
            tool_calls=tool_calls,
            is_tool_result=bool(result_items),
            is_meta=bool(entry.get("isMeta")),
            model=message.get("model") if isinstance(message, dict) else None,
            usage=TokenUsage(
                input=int(usage.get("input_tokens") or 0),
                output=int(usage.get("output_tokens") or 0),
                cache_creation=int(usage.get("cache_creation_input_tokens") or 0),
                cache_read=int(usage.get("cache_read_input_tokens") or 0),
            )
            if isinstance(usage, dict)
            else None,
        )


class ClaudeLifecycleAdapter(LifecycleAdapter):
    """Detects `/clear` in ~/.claude/history.jsonl, which starts a new log in the same process."""

    def __init__(self, claude_dir: Path | None = None):
        self.claude_dir = claude_dir or Path.home() / ".claude"

    @property
    def history_path(self) -> Path:
        return self.claude_dir / "history.jsonl"

    def detect_session_end(self, agent_session_id: str, start_time: datetime) -> datetime | None:
        if not self.history_path.exists():
            return None

        try:
            entries = _read_entries(self.history_path)
        except OSError as exc:
            logger.debug("Cannot read %s: %s", self.history_path, exc)
            return None

        for _, entry in entries:
            if entry.get("sessionId") != agent_session_id:
                continue
            display = str(entry.get("display") or "").strip()
            if display.split(" ", 1)[0] != CLEAR_COMMAND:
                continue
            cleared_at = _parse_timestamp(entry.get("timestamp"))
            if cleared_at is not None and cleared_at > start_time:
                return cleared_at
        return None
