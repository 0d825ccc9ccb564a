from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_sync.storage.models import FileInfo, MetricDelta, TokenUsage

logger = logging.getLogger(__name__)

CONTENT_SAMPLE_LINES = 10


class AdapterError(Exception):
    """Raised when an agent log cannot be parsed."""

    pass


class RawToolCall(BaseModel):
    """Normalized tool invocation from any agent transcript."""

    id: str | None = None
    tool: str
    args: dict = Field(default_factory=dict)
    result: str | None = None
    success: bool = True


class RawMessage(BaseModel):
    """Normalized message from any agent transcript."""

    uuid: str | None = None
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: datetime | None = None
    tool_calls: list[RawToolCall] = Field(default_factory=list)
    is_tool_result: bool = False
    is_meta: bool = False
    model: str | None = None
    usage: TokenUsage | None = None


class ParsedSession(BaseModel):
    """One agent log parsed once per sync pass and shared by every processor."""

    session_id: str
    agent_session_id: str
    path: Path
    messages: list[RawMessage] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class IncrementalParseResult(BaseModel):
    """Deltas found beyond the already-processed set, in log order."""

    deltas: list[MetricDelta] = Field(default_factory=list)
    last_line: int = 0
    newly_attached_prompts: list[str] = Field(default_factory=list)


class AgentAdapter(ABC):
    """Pluggable description of where an agent keeps its logs and how to read them."""

    init_delay: float = 0.5
    debounce_seconds: float | None = None
    correlation_retry_delays: Sequence[float] | None = None

    @property
    @abstractmethod
    def agent_name(self) -> str:
        """Identifier for this agent (e.g. "claude-code")."""

    @abstractmethod
    def get_sessions_dir(self) -> Path:
        """Root directory under which the agent writes its session logs."""

    @abstractmethod
    def matches_session_pattern(self, path: Path) -> bool:
        """Whether `path` looks like one of this agent's session logs."""

    @abstractmethod
    def extract_session_id(self, path: Path) -> str:
        """Agent-side session identifier for a log file."""

    @abstractmethod
    def parse_incremental_metrics(
        self,
        path: Path,
        processed_ids: Iterable[str],
        attached_prompt_texts: Iterable[str],
    ) -> IncrementalParseResult:
        """Extract deltas whose record ids are not in `processed_ids`."""

    @abstractmethod
    def parse_session_file(self, path: Path, session_id: str) -> ParsedSession:
        """Parse a whole log into normalized messages for the processors."""

    def select_candidate(
        self, candidates: Sequence[FileInfo], working_directory: str
    ) -> FileInfo | None:
        """Pick the log that belongs to a session started in `working_directory`.

        Looks for the directory in the first and last lines of each candidate
        and falls back to the first candidate.
        """
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]

        for candidate in candidates:
            if self._mentions_directory(candidate.path, working_directory):
                return candidate

        logger.debug(
            "No candidate mentions %s; using %s", working_directory, candidates[0].path
        )
        return candidates[0]

    @staticmethod
    def _mentions_directory(path: Path, working_directory: str) -> bool:
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            return False

        sample = lines[:CONTENT_SAMPLE_LINES] + lines[-CONTENT_SAMPLE_LINES:]
        escaped = working_directory.replace("\\", "\\\\")
        return any(working_directory in line or escaped in line for line in sample)


class LifecycleAdapter(ABC):
    """Detects when the agent's logical session ends while its process keeps running."""

    @abstractmethod
    def detect_session_end(self, agent_session_id: str, start_time: datetime) -> datetime | None:
        """Return when the session ended after `start_time`, or None if it is still live."""
