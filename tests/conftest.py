from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from uuid import uuid4

import pytest

from agent_sync.ingest.claude_code import ClaudeCodeAdapter
from agent_sync.processors.base import ProcessingContext
from agent_sync.storage.models import SyncSettings
from agent_sync.storage.session_store import SessionStore
from helpers import API_BASE_URL, ClaudeLog


@pytest.fixture
def claude_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".claude"
    (path / "projects").mkdir(parents=True)
    return path


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def project_dir(claude_dir: Path, repo_dir: Path) -> Path:
    path = claude_dir / "projects" / str(repo_dir).replace("/", "-")
    path.mkdir(parents=True)
    return path


@pytest.fixture
def adapter(claude_dir: Path) -> ClaudeCodeAdapter:
    adapter = ClaudeCodeAdapter(claude_dir=claude_dir)
    adapter.init_delay = 0.0
    adapter.correlation_retry_delays = (0.0, 0.0)
    return adapter


@pytest.fixture
def make_log(project_dir: Path, repo_dir: Path) -> Callable[..., ClaudeLog]:
    def factory(name: str | None = None, git_branch: str | None = "main") -> ClaudeLog:
        path = project_dir / f"{name or uuid4()}.jsonl"
        return ClaudeLog(path, repo_dir, git_branch=git_branch)

    return factory


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    return SyncSettings.model_validate(
        {
            "home_dir": tmp_path / "home",
            "monitoring": {"debounce_seconds": 0.05, "discovery_interval_seconds": 3600},
            "correlation": {"retry_delays": [0.0, 0.0]},
            "transport": {"base_url": API_BASE_URL, "retry_attempts": 1, "retry_delays": []},
        }
    )


@pytest.fixture
def store(settings: SyncSettings) -> SessionStore:
    return SessionStore(settings.sessions_dir)


@pytest.fixture
def context() -> ProcessingContext:
    return ProcessingContext(
        api_base_url=API_BASE_URL,
        cookies={"session": "abc"},
        retry_attempts=1,
        retry_delays=(),
    )
