from __future__ import annotations

from pathlib import Path

from agent_sync.ingest.base import (
    AdapterError,
    AgentAdapter,
    IncrementalParseResult,
    LifecycleAdapter,
    ParsedSession,
    RawMessage,
    RawToolCall,
)
from agent_sync.ingest.claude_code import ClaudeCodeAdapter, ClaudeLifecycleAdapter
from agent_sync.ingest.discovery import discover_session_files

__all__ = [
    "AdapterError",
    "AgentAdapter",
    "LifecycleAdapter",
    "IncrementalParseResult",
    "ParsedSession",
    "RawMessage",
    "RawToolCall",
    "ClaudeCodeAdapter",
    "ClaudeLifecycleAdapter",
    "VALID_AGENT_NAMES",
    "discover_session_files",
    "normalize_agent_name",
    "get_adapter",
    "get_lifecycle_adapter",
]

_AGENT_ALIASES = {
    "claude": "claude-code",
    "claude-code": "claude-code",
    "claude_code": "claude-code",
    "claudecode": "claude-code",
}

VALID_AGENT_NAMES = ("claude-code",)


def normalize_agent_name(name: str) -> str:
    normalized = name.strip().lower()
    if normalized not in _AGENT_ALIASES:
        valid = ", ".join(VALID_AGENT_NAMES)
        raise ValueError(f"Unknown agent '{name}'. Valid options: {valid}")
    return _AGENT_ALIASES[normalized]


def get_adapter(name: str, agent_dir: Path | None = None) -> AgentAdapter:
    normalize_agent_name(name)
    return ClaudeCodeAdapter(claude_dir=agent_dir)


def get_lifecycle_adapter(name: str, agent_dir: Path | None = None) -> LifecycleAdapter | None:
    normalize_agent_name(name)
    return ClaudeLifecycleAdapter(claude_dir=agent_dir)
