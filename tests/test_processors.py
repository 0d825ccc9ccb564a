from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

import httpx
import pytest
import respx

from agent_sync.ingest.base import ParsedSession
from agent_sync.ingest.claude_code import ClaudeCodeAdapter
from agent_sync.processors import ConversationsProcessor, MetricsProcessor, get_default_processors
from agent_sync.processors.base import (
    SYNC_IN_PROGRESS,
    ProcessingContext,
    ProcessingResult,
    SessionProcessor,
)
from agent_sync.processors.conversations import build_history
from agent_sync.processors.metrics import build_session_metric, group_by_branch
from agent_sync.storage.append_log import ConversationLog, MetricsLog
from agent_sync.storage.models import (
    ConversationsSyncState,
    CorrelationResult,
    CorrelationStatus,
    FileOperation,
    MetricDelta,
    Session,
    SyncStatus,
    TokenUsage,
    ToolStatusCount,
)
from agent_sync.storage.session_store import SessionStore
from helpers import API_BASE_URL, ClaudeLog, tool_use

METRICS_URL = f"{API_BASE_URL}/v1/metrics"


def _correlated_session(store: SessionStore, log: ClaudeLog) -> Session:
    session = Session(
        agent_name="claude-code",
        working_directory=str(log.cwd),
        git_branch="main",
        correlation=CorrelationResult(
            status=CorrelationStatus.MATCHED,
            agent_session_id=log.session_id,
            agent_session_file=str(log.path),
        ),
    )
    store.save(session)
    return session


def _delta(record_id: str, branch: str | None, **fields: object) -> MetricDelta:
    return MetricDelta(record_id=record_id, git_branch=branch, **fields)


def _conversation_url(conversation_id: str) -> str:
    return f"{API_BASE_URL}/v1/conversations/{conversation_id}/history"


@pytest.fixture
def log(make_log: Callable[..., ClaudeLog]) -> ClaudeLog:
    log = make_log()
    log.user("add retries")
    log.assistant("Added them.")
    log.user("now write tests")
    log.assistant("Tests written.")
    return log


class TestMetricAggregation:
    def test_group_by_branch_uses_default(self) -> None:
        deltas = [_delta("a", "main"), _delta("b", None), _delta("c", "feature")]

        groups = group_by_branch(deltas, "develop")

        assert {branch: [d.record_id for d in ds] for branch, ds in groups.items()} == {
            "main": ["a"],
            "develop": ["b"],
            "feature": ["c"],
        }

    def test_build_session_metric_totals(self) -> None:
        session = Session(agent_name="claude-code", working_directory="/work/repo")
        deltas = [
            _delta(
                "a",
                "main",
                tokens=TokenUsage(input=10, output=5, cache_read=100),
                tools={"Edit": 2},
                tool_status={"Edit": ToolStatusCount(success=1, failure=1)},
                file_operations=[
                    FileOperation(type="modified", path="x.py", lines_added=3, lines_removed=1)
                ],
                models=["claude-sonnet-4-5"],
                user_prompts=["fix it"],
            ),
            _delta("b", "main", tokens=TokenUsage(input=1), api_error_message="overloaded"),
        ]

        attributes = build_session_metric(session, "main", deltas)["attributes"]

        assert attributes["repository"] == "repo"
        assert attributes["branch"] == "main"
        assert attributes["total_tokens"] == 116
        assert attributes["total_tool_calls"] == 2
        assert attributes["failed_tool_calls"] == 1
        assert attributes["files_modified"] == 1
        assert attributes["total_lines_added"] == 3
        assert attributes["total_user_prompts"] == 1
        assert attributes["llm_model"] == "claude-sonnet-4-5"
        assert attributes["had_errors"] is True
        assert attributes["count"] == 2


class TestMetricsProcessor:
    @pytest.mark.asyncio
    @respx.mock
    async def test_one_metric_per_branch(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        MetricsLog(store.metrics_path(session.session_id)).extend(
            [_delta("a", "main"), _delta("b", "feature"), _delta("c", "main")]
        )
        route = respx.post(METRICS_URL).mock(return_value=httpx.Response(200, json={}))
        parsed = adapter.parse_session_file(log.path, session.session_id)

        result = await MetricsProcessor(store).process(parsed, context)

        assert result.success
        sent = [json.loads(call.request.content)["attributes"] for call in route.calls]
        assert {a["branch"]: a["count"] for a in sent} == {"main": 2, "feature": 1}
        assert MetricsLog(store.metrics_path(session.session_id)).pending() == []
        state = store.require(session.session_id).sync.metrics
        assert state is not None
        assert state.total_synced == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_branch_stays_pending(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        metrics_log = MetricsLog(store.metrics_path(session.session_id))
        metrics_log.extend([_delta("a", "main"), _delta("b", "feature")])

        def respond(request: httpx.Request) -> httpx.Response:
            branch = json.loads(request.content)["attributes"]["branch"]
            return httpx.Response(500 if branch == "feature" else 200, json={})

        respx.post(METRICS_URL).mock(side_effect=respond)
        parsed = adapter.parse_session_file(log.path, session.session_id)

        result = await MetricsProcessor(store).process(parsed, context)

        assert not result.success
        assert result.metadata == {"branches": ["main", "feature"], "synced": 1, "failed": 1}
        records = {r.record_id: r for r in metrics_log.read_all()}
        assert records["a"].sync_status == SyncStatus.SYNCED
        assert records["b"].sync_status == SyncStatus.PENDING
        assert records["b"].sync_attempts == 1
        assert records["b"].sync_error is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_nothing_pending(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        parsed = adapter.parse_session_file(log.path, session.session_id)

        result = await MetricsProcessor(store).process(parsed, context)

        assert result.success
        assert result.message == "No pending metrics"
        assert not respx.calls


class BlockingProcessor(SessionProcessor):
    name = "blocking"

    def __init__(self, in_flight: set[tuple[str, str]] | None = None) -> None:
        super().__init__(in_flight)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.runs = 0

    async def _process(
        self, parsed: ParsedSession, context: ProcessingContext
    ) -> ProcessingResult:
        self.runs += 1
        self.entered.set()
        await self.release.wait()
        return ProcessingResult(success=True, message="done")


class BrokenProcessor(SessionProcessor):
    name = "broken"

    async def _process(
        self, parsed: ParsedSession, context: ProcessingContext
    ) -> ProcessingResult:
        raise RuntimeError("boom")


class TestProcessorGuard:
    @pytest.mark.asyncio
    async def test_second_call_while_running_is_skipped(
        self, adapter: ClaudeCodeAdapter, log: ClaudeLog, context: ProcessingContext
    ) -> None:
        processor = BlockingProcessor()
        parsed = adapter.parse_session_file(log.path, "local-1")

        first = asyncio.create_task(processor.process(parsed, context))
        await asyncio.wait_for(processor.entered.wait(), timeout=1)
        second = await processor.process(parsed, context)
        processor.release.set()

        assert second == ProcessingResult(success=True, message=SYNC_IN_PROGRESS)
        assert (await first).message == "done"
        assert processor.runs == 1
        assert not processor.is_running

    @pytest.mark.asyncio
    async def test_instances_sharing_in_flight_skip_the_same_session(
        self, adapter: ClaudeCodeAdapter, log: ClaudeLog, context: ProcessingContext
    ) -> None:
        in_flight: set[tuple[str, str]] = set()
        first_instance = BlockingProcessor(in_flight)
        second_instance = BlockingProcessor(in_flight)
        parsed = adapter.parse_session_file(log.path, "local-1")
        other = adapter.parse_session_file(log.path, "local-2")

        first = asyncio.create_task(first_instance.process(parsed, context))
        await asyncio.wait_for(first_instance.entered.wait(), timeout=1)
        skipped = await second_instance.process(parsed, context)
        second_instance.release.set()
        unrelated = await second_instance.process(other, context)
        first_instance.release.set()

        assert skipped == ProcessingResult(success=True, message=SYNC_IN_PROGRESS)
        assert unrelated.message == "done"
        assert (await first).message == "done"
        assert first_instance.runs == 1
        assert second_instance.runs == 1
        assert in_flight == set()

    @pytest.mark.asyncio
    @respx.mock
    async def test_metrics_processors_over_one_store_send_once(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        MetricsLog(store.metrics_path(session.session_id)).extend([_delta("a", "main")])

        async def slow_accept(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.05)
            return httpx.Response(200, json={})

        route = respx.post(METRICS_URL).mock(side_effect=slow_accept)
        parsed = adapter.parse_session_file(log.path, session.session_id)

        results = await asyncio.gather(
            MetricsProcessor(store).process(parsed, context),
            MetricsProcessor(store).process(parsed, context),
        )

        assert route.call_count == 1
        assert SYNC_IN_PROGRESS in [result.message for result in results]
        assert MetricsLog(store.metrics_path(session.session_id)).pending() == []

    @pytest.mark.asyncio
    async def test_exceptions_become_failed_results(
        self, adapter: ClaudeCodeAdapter, log: ClaudeLog, context: ProcessingContext
    ) -> None:
        processor = BrokenProcessor()
        parsed = adapter.parse_session_file(log.path, "local-1")

        result = await processor.process(parsed, context)

        assert not result.success
        assert "RuntimeError: boom" in result.message
        assert not processor.is_running

    def test_default_processor_order(self, store: SessionStore) -> None:
        processors = get_default_processors(store)

        assert [p.name for p in sorted(processors, key=lambda p: p.priority)] == [
            "metrics",
            "conversations",
        ]


class TestBuildHistory:
    def test_leading_messages_continue_previous_turn(
        self, adapter: ClaudeCodeAdapter, make_log: Callable[..., ClaudeLog]
    ) -> None:
        log = make_log()
        log.assistant("still working")
        log.user("next question")
        log.assistant("answer")
        messages = adapter.parse_session_file(log.path, "local-1").messages

        history, last_index, continuation = build_history(messages, 4)

        assert continuation
        assert last_index == 5
        assert [(e["role"], e["history_index"]) for e in history] == [
            ("Assistant", 4),
            ("User", 5),
            ("Assistant", 5),
        ]

    def test_tool_calls_become_thoughts(
        self, adapter: ClaudeCodeAdapter, make_log: Callable[..., ClaudeLog]
    ) -> None:
        log = make_log()
        log.user("run tests")
        call = tool_use("Bash", command="pytest")
        log.assistant("Running", tool_uses=[call], input_tokens=7)
        log.tool_result(call["id"], "3 passed")
        log.assistant("All green", input_tokens=3)
        messages = adapter.parse_session_file(log.path, "local-1").messages

        history, _, _ = build_history(messages, 0, assistant_id="asst-1")

        user, reply = history
        assert user["message"] == "run tests"
        assert reply["message"] == "All green"
        assert reply["assistant_id"] == "asst-1"
        assert reply["input_tokens"] == 10
        (thought,) = reply["thoughts"]
        assert thought["author_name"] == "Bash"
        assert thought["message"] == "3 passed"
        assert thought["error"] is False


class TestConversationsProcessor:
    @pytest.mark.asyncio
    @respx.mock
    async def test_first_sync_sends_all_turns(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        route = respx.put(_conversation_url(session.session_id)).mock(
            return_value=httpx.Response(200, json={"success": True})
        )
        parsed = adapter.parse_session_file(log.path, session.session_id)

        result = await ConversationsProcessor(store).process(parsed, context)

        assert result.success
        assert result.message == "Synced 4 message(s) in 1 payload(s)"
        history = json.loads(route.calls.last.request.content)["history"]
        assert [(e["role"], e["history_index"]) for e in history] == [
            ("User", 1),
            ("Assistant", 1),
            ("User", 2),
            ("Assistant", 2),
        ]
        cursor = store.require(session.session_id).sync.conversations
        assert cursor is not None
        assert cursor.conversation_id == session.session_id
        assert cursor.last_synced_message_id == parsed.messages[-1].uuid
        assert cursor.last_synced_index == 2
        assert ConversationLog(store.conversation_path(session.session_id)).pending() == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_incremental_sync_sends_only_new_turns(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        route = respx.put(_conversation_url(session.session_id)).mock(
            return_value=httpx.Response(200, json={})
        )
        processor = ConversationsProcessor(store)
        await processor.process(adapter.parse_session_file(log.path, session.session_id), context)

        log.user("and a changelog entry")
        log.assistant("Added.")
        result = await processor.process(
            adapter.parse_session_file(log.path, session.session_id), context
        )

        assert result.message == "Synced 2 message(s) in 1 payload(s)"
        history = json.loads(route.calls.last.request.content)["history"]
        assert [(e["role"], e["history_index"]) for e in history] == [
            ("User", 3),
            ("Assistant", 3),
        ]

        idle = await processor.process(
            adapter.parse_session_file(log.path, session.session_id), context
        )
        assert idle.message == "No new messages"
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_cursor_resyncs_everything_once(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        session = _correlated_session(store, log)

        def stale_cursor(record: Session) -> None:
            record.sync.conversations = ConversationsSyncState(
                last_synced_message_id="no-longer-in-log", last_synced_index=7
            )

        store.update(session.session_id, stale_cursor)
        route = respx.put(_conversation_url(session.session_id)).mock(
            return_value=httpx.Response(200, json={})
        )
        processor = ConversationsProcessor(store)
        parsed = adapter.parse_session_file(log.path, session.session_id)

        with caplog.at_level(logging.WARNING, logger="agent_sync.processors.conversations"):
            await processor.process(parsed, context)
        await processor.process(parsed, context)

        assert "reset detected" in caplog.text
        assert route.call_count == 1
        history = json.loads(route.calls.last.request.content)["history"]
        assert [e["history_index"] for e in history] == [1, 1, 2, 2]

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_payload_is_retried_next_pass(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)
        route = respx.put(_conversation_url(session.session_id)).mock(
            side_effect=[httpx.Response(503), httpx.Response(200, json={})]
        )
        processor = ConversationsProcessor(store)
        parsed = adapter.parse_session_file(log.path, session.session_id)
        conversation_log = ConversationLog(store.conversation_path(session.session_id))

        failed = await processor.process(parsed, context)

        assert not failed.success
        (pending,) = conversation_log.pending()
        assert pending.sync_attempts == 1
        cursor = store.require(session.session_id).sync.conversations
        assert cursor is not None
        assert cursor.conversation_id is None

        retried = await processor.process(parsed, context)

        assert retried.success
        assert route.call_count == 2
        assert conversation_log.pending() == []
        cursor = store.require(session.session_id).sync.conversations
        assert cursor is not None
        assert cursor.conversation_id == session.session_id
        assert cursor.total_sync_attempts == 2
        assert cursor.total_messages_synced == 4

    @pytest.mark.asyncio
    @respx.mock
    async def test_existing_conversation_id_is_reused(
        self,
        store: SessionStore,
        adapter: ClaudeCodeAdapter,
        log: ClaudeLog,
        context: ProcessingContext,
    ) -> None:
        session = _correlated_session(store, log)

        def known_conversation(record: Session) -> None:
            record.sync.conversations = ConversationsSyncState(conversation_id="conv-42")

        store.update(session.session_id, known_conversation)
        route = respx.put(_conversation_url("conv-42")).mock(
            return_value=httpx.Response(200, json={})
        )

        result = await ConversationsProcessor(store, folder="agents").process(
            adapter.parse_session_file(log.path, session.session_id), context
        )

        assert result.success
        assert json.loads(route.calls.last.request.content)["folder"] == "agents"
        cursor = store.require(session.session_id).sync.conversations
        assert cursor is not None
        assert cursor.conversation_id == "conv-42"
