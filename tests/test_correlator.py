from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from agent_sync.core.correlator import CorrelationRequest, RetryPolicy, SessionCorrelator
from agent_sync.ingest.claude_code import ClaudeCodeAdapter
from agent_sync.storage.models import CorrelationStatus, FileInfo


def _info(path: Path) -> FileInfo:
    now = datetime.now(UTC)
    return FileInfo(path=path, size=0, modified_at=now, created_at=now)


def _request(files: list[FileInfo], cwd: str = "/work/repo") -> CorrelationRequest:
    return CorrelationRequest(
        session_id="local-1",
        agent_name="claude-code",
        working_directory=cwd,
        new_files=files,
    )


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def log_path(claude_dir: Path) -> Path:
    path = claude_dir / "projects" / "-work-repo" / "4b1f0c2e.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text('{"cwd": "/work/repo"}\n')
    return path


class TestCorrelate:
    def test_no_new_files_is_pending(self, claude_dir: Path) -> None:
        correlator = SessionCorrelator(ClaudeCodeAdapter(claude_dir))

        result = correlator.correlate(_request([]))

        assert result.status == CorrelationStatus.PENDING
        assert result.agent_session_file is None

    def test_non_matching_files_fail(self, claude_dir: Path, tmp_path: Path) -> None:
        correlator = SessionCorrelator(ClaudeCodeAdapter(claude_dir))
        stray = claude_dir / "projects" / "-work-repo" / "agent-1234.jsonl"

        result = correlator.correlate(_request([_info(stray), _info(tmp_path / "notes.txt")]))

        assert result.status == CorrelationStatus.FAILED

    def test_single_match(self, claude_dir: Path, log_path: Path) -> None:
        correlator = SessionCorrelator(ClaudeCodeAdapter(claude_dir))

        result = correlator.correlate(_request([_info(log_path)]))

        assert result.status == CorrelationStatus.MATCHED
        assert result.agent_session_id == "4b1f0c2e"
        assert result.agent_session_file == str(log_path)
        assert result.detected_at is not None

    def test_multiple_candidates_prefer_working_directory(self, claude_dir: Path) -> None:
        project = claude_dir / "projects" / "-elsewhere"
        project.mkdir(parents=True)
        other = project / "aaaa.jsonl"
        other.write_text('{"cwd": "/elsewhere"}\n')
        mine = project / "bbbb.jsonl"
        mine.write_text('{"cwd": "/work/repo"}\n')
        correlator = SessionCorrelator(ClaudeCodeAdapter(claude_dir))

        result = correlator.correlate(_request([_info(other), _info(mine)]))

        assert result.agent_session_id == "bbbb"


class TestCorrelateWithRetry:
    @pytest.mark.asyncio
    async def test_exhausted_retries_fail(self, claude_dir: Path) -> None:
        sleep = FakeSleep()
        correlator = SessionCorrelator(
            ClaudeCodeAdapter(claude_dir), RetryPolicy((0.5, 1.0, 2.0)), sleep=sleep
        )
        snapshots = 0

        async def retry_snapshot() -> list[FileInfo]:
            nonlocal snapshots
            snapshots += 1
            return []

        result = await correlator.correlate_with_retry(_request([]), retry_snapshot)

        assert result.status == CorrelationStatus.FAILED
        assert result.retry_count == 3
        assert snapshots == 3
        assert sleep.calls == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_match_on_later_retry(self, claude_dir: Path, log_path: Path) -> None:
        sleep = FakeSleep()
        correlator = SessionCorrelator(
            ClaudeCodeAdapter(claude_dir), RetryPolicy((0.1, 0.2, 0.3)), sleep=sleep
        )
        attempts = iter([[], [_info(log_path)]])

        async def retry_snapshot() -> list[FileInfo]:
            return next(attempts)

        result = await correlator.correlate_with_retry(_request([]), retry_snapshot)

        assert result.status == CorrelationStatus.MATCHED
        assert result.retry_count == 2
        assert sleep.calls == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_immediate_match_does_not_sleep(
        self, claude_dir: Path, log_path: Path
    ) -> None:
        sleep = FakeSleep()
        correlator = SessionCorrelator(ClaudeCodeAdapter(claude_dir), sleep=sleep)

        async def retry_snapshot() -> list[FileInfo]:
            raise AssertionError("should not retry")

        result = await correlator.correlate_with_retry(_request([_info(log_path)]), retry_snapshot)

        assert result.retry_count == 0
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_snapshot_errors_count_as_attempts(self, claude_dir: Path) -> None:
        correlator = SessionCorrelator(
            ClaudeCodeAdapter(claude_dir), RetryPolicy((0.0, 0.0)), sleep=FakeSleep()
        )

        async def retry_snapshot() -> list[FileInfo]:
            raise OSError("permission denied")

        result = await correlator.correlate_with_retry(_request([]), retry_snapshot)

        assert result.status == CorrelationStatus.FAILED
        assert result.retry_count == 2

    def test_adapter_delays_used_without_policy(self, claude_dir: Path) -> None:
        adapter = ClaudeCodeAdapter(claude_dir)
        adapter.correlation_retry_delays = (1.0, 1.0)

        assert SessionCorrelator(adapter).policy.max_retries == 2
