"""Shared builders and fakes for the test suite."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

API_BASE_URL = "http://telemetry.test"


class ClaudeLog:
    """Writes Claude Code style JSONL entries to a session log."""

    def __init__(self, path: Path, cwd: Path, git_branch: str | None = "main"):
        self.path = path
        self.cwd = cwd
        self.git_branch = git_branch
        self.session_id = path.stem
        self._clock = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()

    def _write(self, entry: dict[str, Any]) -> str:
        self._clock += timedelta(seconds=1)
        entry.setdefault("uuid", str(uuid4()))
        entry.setdefault("timestamp", self._clock.isoformat().replace("+00:00", "Z"))
        entry.setdefault("sessionId", self.session_id)
        entry.setdefault("cwd", str(self.cwd))
        if self.git_branch:
            entry.setdefault("gitBranch", self.git_branch)
        with self.path.open("a", encoding="utf-8") as file:
            file.write(json.dumps(entry) + "\n")
        return entry["uuid"]

    def user(self, text: str, **extra: Any) -> str:
        return self._write({"type": "user", "message": {"role": "user", "content": text}, **extra})

    def assistant(
        self,
        text: str = "",
        *,
        tool_uses: list[dict[str, Any]] | None = None,
        input_tokens: int = 10,
        output_tokens: int = 5,
        model: str = "claude-sonnet-4-5",
        **extra: Any,
    ) -> str:
        content: list[dict[str, Any]] = []
        if text:
            content.append({"type": "text", "text": text})
        content.extend(tool_uses or [])
        return self._write(
            {
                "type": "assistant",
                "message": {
                    "role": "assistant",
                    "model": model,
                    "content": content,
                    "usage": {
                        "input_tokens": input_tokens,
                        "output_tokens": output_tokens,
                        "cache_creation_input_tokens": 0,
                        "cache_read_input_tokens": 0,
                    },
                },
                **extra,
            }
        )

    def tool_result(self, tool_use_id: str, content: str = "ok", is_error: bool = False) -> str:
        return self._write(
            {
                "type": "user",
                "message": {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": tool_use_id,
                            "content": content,
                            "is_error": is_error,
                        }
                    ],
                },
            }
        )

    def raw(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as file:
            file.write(line)

def tool_use(name: str, tool_id: str | None = None, **args: Any) -> dict[str, Any]:
    tool_id = tool_id or f"toolu_{uuid4().hex[:12]}"
    return {"type": "tool_use", "id": tool_id, "name": name, "input": args}

class FakeWatcher:
    """Stands in for LogFileWatcher; tests trigger changes by hand."""

    def __init__(self, path: Path, on_change: Callable[[], None]):
        self.path = path
        self.on_change = on_change
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True
