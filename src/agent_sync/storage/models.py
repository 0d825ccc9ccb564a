from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """UTC now with timezone info for stable serialization."""
    return datetime.now(UTC)


def new_session_id() -> str:
    return str(uuid4())


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RECOVERED = "recovered"


TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.RECOVERED}
)


class CorrelationStatus(StrEnum):
    """Whether a local session has been matched to the agent's own log file."""

    PENDING = "pending"
    MATCHED = "matched"
    FAILED = "failed"


class SyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"


class CorrelationResult(BaseModel):
    status: CorrelationStatus = CorrelationStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    agent_session_id: str | None = None
    agent_session_file: str | None = None
    detected_at: datetime | None = None


class MonitoringState(BaseModel):
    is_active: bool = False
    change_count: int = Field(default=0, ge=0)
    last_check_time: datetime | None = None


class MetricsSyncState(BaseModel):
    """Incremental cursor for delta collection and metric delivery."""

    last_processed_line: int = Field(default=0, ge=0)
    last_processed_timestamp: datetime | None = None
    processed_record_ids: list[str] = Field(default_factory=list)
    attached_user_prompt_texts: list[str] = Field(default_factory=list)
    last_synced_record_id: str | None = None
    last_sync_at: datetime | None = None
    total_deltas: int = Field(default=0, ge=0)
    total_synced: int = Field(default=0, ge=0)
    total_failed: int = Field(default=0, ge=0)
    last_sync_error: str | None = None


class ConversationsSyncState(BaseModel):
    """Identity cursor for transcript delivery.

    `conversation_id` is minted on the first successful sync and reused afterwards.
    """

    conversation_id: str | None = None
    last_synced_message_id: str | None = None
    last_synced_index: int = Field(default=0, ge=0)
    last_sync_at: datetime | None = None
    total_messages_synced: int = Field(default=0, ge=0)
    total_sync_attempts: int = Field(default=0, ge=0)
    last_sync_error: str | None = None


class SyncState(BaseModel):
    metrics: MetricsSyncState | None = None
    conversations: ConversationsSyncState | None = None


class SessionDiagnostic(BaseModel):
    """Error captured during a lifecycle phase, kept on the session for later display."""

    phase: str
    error_type: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """Single source of truth for one monitored agent run."""

    session_id: str = Field(default_factory=new_session_id)
    agent_name: str = Field(..., min_length=1)
    provider: str = "unknown"
    project: str | None = None
    working_directory: str
    git_branch: str | None = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    activity_started_at: datetime | None = None
    active_duration_ms: int = Field(default=0, ge=0)
    status: SessionStatus = SessionStatus.ACTIVE
    correlation: CorrelationResult = Field(default_factory=CorrelationResult)
    monitoring: MonitoringState = Field(default_factory=MonitoringState)
    sync: SyncState = Field(default_factory=SyncState)
    transitioned_to: str | None = None
    transitioned_from: str | None = None
    diagnostics: list[SessionDiagnostic] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


class FileInfo(BaseModel):
    path: Path
    size: int
    modified_at: datetime
    # Birth time; None where the filesystem does not report one (Linux).
    created_at: datetime | None = None

    model_config = ConfigDict(frozen=True)


class FileSnapshot(BaseModel):
    """Directory listing captured at one point in time. Never persisted."""

    files: tuple[FileInfo, ...] = ()
    taken_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def paths(self) -> frozenset[Path]:
        return frozenset(info.path for info in self.files)


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_creation + self.cache_read


class ToolStatusCount(BaseModel):
    success: int = 0
    failure: int = 0


class FileOperation(BaseModel):
    type: Literal["created", "modified", "deleted"]
    path: str | None = None
    tool: str | None = None
    lines_added: int = 0
    lines_removed: int = 0


class MetricDelta(BaseModel):
    """Telemetry extracted from one agent log entry.

    Append-only: after it is written only the sync fields change.
    """

    record_id: str
    session_id: str = ""
    agent_session_id: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    git_branch: str | None = None
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    tools: dict[str, int] = Field(default_factory=dict)
    tool_status: dict[str, ToolStatusCount] = Field(default_factory=dict)
    file_operations: list[FileOperation] = Field(default_factory=list)
    models: list[str] = Field(default_factory=list)
    user_prompts: list[str] = Field(default_factory=list)
    api_error_message: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    synced_at: datetime | None = None
    sync_attempts: int = Field(default=0, ge=0)
    sync_error: str | None = None


class ConversationPayloadRecord(BaseModel):
    """Queued transcript upsert for one sync pass."""

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    created_at: datetime = Field(default_factory=utcnow)
    conversation_id: str
    is_turn_continuation: bool = False
    history_indices: list[int] = Field(default_factory=list)
    message_ids: list[str] = Field(default_factory=list)
    history: list[dict[str, Any]] = Field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.PENDING
    synced_at: datetime | None = None
    sync_attempts: int = Field(default=0, ge=0)
    sync_error: str | None = None


class TransportConfig(BaseModel):
    """Connection settings for the telemetry API."""

    base_url: str | None = Field(
        default=None,
        description="Telemetry API base URL (e.g., https://telemetry.example.com)",
    )
    api_key_env: str = Field(
        default="AGENT_SYNC_API_KEY",
        min_length=1,
        description="Environment variable containing the API key sent as user-id",
    )
    client_type: str = Field(default="agent-sync", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0, description="HTTP timeout in seconds")
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts for retryable failures (5xx, 429, network)",
    )
    retry_delays: list[float] = Field(
        default_factory=lambda: [1.0, 2.0, 5.0],
        description="Delay in seconds before each retry; the last value repeats",
    )


class MonitoringConfig(BaseModel):
    debounce_seconds: float = Field(default=5.0, ge=0.0)
    discovery_interval_seconds: float = Field(default=30.0, gt=0.0)
    transition_window_ms: int = Field(
        default=200,
        ge=0,
        description="Files created this long before a transition still count as candidates",
    )


class CorrelationConfig(BaseModel):
    retry_delays: list[float] = Field(
        default_factory=lambda: [0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 32.0],
        description="Delay in seconds before each correlation retry",
    )


class SessionSyncConfig(BaseModel):
    enabled: bool = True
    interval_seconds: float = Field(default=300.0, gt=0.0)
    dry_run: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    stderr_level: str = "WARNING"
    max_size_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=5, ge=1)


class SyncSettings(BaseModel):
    """Root configuration for <home>/config.yaml."""

    extends: list[str] = Field(default_factory=list)
    home_dir: Path = Field(default_factory=lambda: Path.home() / ".agent-sync")
    sync: SessionSyncConfig = Field(default_factory=SessionSyncConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def sessions_dir(self) -> Path:
        return self.home_dir / "sessions"

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / "logs"
