"""
DeployForge - Pydantic Schemas
==============================

Typed shapes of the session document and the API contract.

The nested JSON columns of ``DeploymentSession`` are always read and written
through these models, so malformed data is rejected at the boundary instead
of being coerced after the fact.
"""

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from src.core.models import (
    BackendStatus,
    CommandKind,
    HealthStatus,
    LogStream,
    QueueItemStatus,
    SessionStatus,
)

OPAQUE_CONTEXT_MAX_BYTES = 64 * 1024


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class DocumentSchema(BaseModel):
    """
    Base for models stored inside the session document.

    Whitespace is preserved: command output and terminal logs are stored
    exactly as produced.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        extra="forbid",
    )


# ==========================================================================
# Commands
# ==========================================================================

class GeneratedCommand(BaseSchema):
    """Command proposed by the assistant, before it is queued."""

    command: str = Field(min_length=1, max_length=10_000)
    reason: str = ""
    expected_result: str = ""
    kind: Optional[CommandKind] = None  # Classified on enqueue when omitted


class QueueItem(DocumentSchema):
    """One command in the stage's execution queue."""

    command: str
    kind: CommandKind = CommandKind.SHELL
    reason: str = ""
    expected_result: str = ""
    status: QueueItemStatus = QueueItemStatus.PENDING
    order: int = Field(ge=0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: str = ""
    output_truncated: bool = False
    duration_ms: Optional[int] = None
    is_fix_command: bool = False
    is_retry_command: bool = False
    via_tool: Optional[str] = None  # "backend.operation" when dispatched as a tool call
    fallback: bool = False


class ExecutionResult(DocumentSchema):
    """Append-only record of a finished command."""

    command: str
    kind: CommandKind
    exit_code: int
    output: str = ""
    output_truncated: bool = False
    success: bool
    duration_ms: int = 0
    is_fix_command: bool = False
    is_retry_command: bool = False
    via_tool: Optional[str] = None
    fallback: bool = False
    executed_at: datetime = Field(default_factory=utc_now)


class CommandLogEntry(DocumentSchema):
    """Structured log line attached to a stage."""

    timestamp: datetime = Field(default_factory=utc_now)
    stream: LogStream = LogStream.INFO
    command: Optional[str] = None
    message: str
    truncated: bool = False


# ==========================================================================
# Errors & Verification
# ==========================================================================

class ErrorAnalysis(DocumentSchema):
    """Diagnosis of a failed command and the proposed remedy."""

    command: str
    error_output: str = ""
    exit_code: Optional[int] = None
    diagnosis: str = ""
    fix_commands: list[GeneratedCommand] = Field(default_factory=list)
    retry_commands: list[GeneratedCommand] = Field(default_factory=list)
    fix_attempts: int = 0
    service_error: Optional[str] = None  # Set when the completion service failed
    analyzed_at: datetime = Field(default_factory=utc_now)


class BlockingError(DocumentSchema):
    """The failure that currently blocks the stage's queue."""

    command: str
    exit_code: Optional[int] = None
    error_output: str = ""
    analysis: Optional[str] = None
    fix_attempts: int = 0
    queue_index: int = Field(ge=0)
    raised_at: datetime = Field(default_factory=utc_now)


class VerificationResult(DocumentSchema):
    """Outcome of the stage verification step."""

    passed: bool
    all_commands_executed: bool
    analysis: str = ""
    should_advance: bool
    verified_at: datetime = Field(default_factory=utc_now)


# ==========================================================================
# Stage Data & History
# ==========================================================================

class StageData(DocumentSchema):
    """Live working state of the active stage."""

    instructions: Optional[str] = None
    generated_commands: list[GeneratedCommand] = Field(default_factory=list)
    command_queue: list[QueueItem] = Field(default_factory=list)
    current_command_index: int = Field(default=0, ge=0)
    is_blocked: bool = False
    blocking_error: Optional[BlockingError] = None
    terminal_log: str = ""
    terminal_log_truncated: bool = False
    execution_results: list[ExecutionResult] = Field(default_factory=list)
    error_analyses: list[ErrorAnalysis] = Field(default_factory=list)
    verification_result: Optional[VerificationResult] = None
    command_logs: list[CommandLogEntry] = Field(default_factory=list)
    fix_attempts: dict[str, int] = Field(default_factory=dict)  # Keyed by command text
    stuck_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)


class StageRecord(DocumentSchema):
    """Frozen snapshot of a finished stage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage_id: str
    stage_name: str
    stage_description: str = ""
    stage_index: int
    success: bool
    notes: str = ""
    started_at: datetime
    completed_at: datetime
    data: StageData


class SessionMetadata(DocumentSchema):
    """Counters derived from the stage history and the live stage."""

    total_commands_executed: int = 0
    successful_commands: int = 0
    failed_commands: int = 0
    total_error_analyses: int = 0
    resume_count: int = 0


# ==========================================================================
# Project Context (tagged union)
# ==========================================================================

class RepositoryContext(DocumentSchema):
    """Project cloned from a source repository."""

    kind: Literal["repository"] = "repository"
    repository_url: str
    branch: str = "main"
    project_path: Optional[str] = None
    language: Optional[str] = None
    framework: Optional[str] = None
    runtime: Optional[str] = None
    build_tool: Optional[str] = None
    is_monorepo: bool = False
    services: list[str] = Field(default_factory=list)


class LocalContext(DocumentSchema):
    """Project already present on the local filesystem."""

    kind: Literal["local"] = "local"
    project_path: str
    language: Optional[str] = None
    framework: Optional[str] = None


class OpaqueContext(DocumentSchema):
    """Unstructured context, bounded in size."""

    kind: Literal["opaque"] = "opaque"
    data: dict[str, Any]

    @field_validator("data")
    @classmethod
    def validate_size(cls, v: dict[str, Any]) -> dict[str, Any]:
        size = len(json.dumps(v, default=str).encode("utf-8"))
        if size > OPAQUE_CONTEXT_MAX_BYTES:
            raise ValueError(
                f"Opaque context is {size} bytes, limit is {OPAQUE_CONTEXT_MAX_BYTES}"
            )
        return v


ProjectContext = Annotated[
    Union[RepositoryContext, LocalContext, OpaqueContext],
    Field(discriminator="kind"),
]

project_context_adapter: TypeAdapter[ProjectContext] = TypeAdapter(ProjectContext)


# ==========================================================================
# Wizard API Schemas
# ==========================================================================

class CreateSessionRequest(BaseSchema):
    """Request to find or create a deployment session."""

    owner_id: str = Field(min_length=1, max_length=100)
    initial_stage: Optional[str] = None
    stage_ids: Optional[list[str]] = None
    project_context: Optional[ProjectContext] = None


class EnqueueCommandsRequest(BaseSchema):
    """Commands to append to the active stage's queue."""

    commands: list[GeneratedCommand] = Field(min_length=1)


class RunQueueRequest(BaseSchema):
    """Options for a queue run."""

    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)


class ReasonRequest(BaseSchema):
    """Free-text reason for cancel and fail transitions."""

    reason: str = ""


class StageListEntry(BaseSchema):
    """Position of one stage within the pipeline."""

    stage_id: str
    name: str
    state: Literal["completed", "current", "pending"]


class SessionSummary(BaseSchema):
    """Compact view of a session."""

    deployment_id: str
    owner_id: str
    status: SessionStatus
    current_stage: Optional[str]
    current_stage_name: Optional[str]
    current_stage_index: int
    total_stages: int
    completed_stages: int
    progress: int
    metadata: SessionMetadata
    stages: list[StageListEntry]
    is_blocked: bool
    stuck_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStatus(BaseSchema):
    """Counts and blocking state of the active stage's queue."""

    total: int
    pending: int
    running: int
    completed: int
    failed: int
    skipped: int
    current_index: int
    is_blocked: bool
    blocking_error: Optional[BlockingError] = None
    next_command: Optional[QueueItem] = None


class AdvanceResult(BaseSchema):
    """Outcome of an advance attempt."""

    advanced: bool
    reason: str
    verification: Optional[VerificationResult] = None
    current_stage: Optional[str] = None


class RunQueueResult(BaseSchema):
    """
    Outcome of a queue run.

    ``last_*`` describe the most recent command run or recorded by this
    call. ``state_stale`` is set when that outcome could not be saved or
    the queue could not be reloaded; ``queue`` is None in the latter case.
    """

    executed: int
    blocked: bool
    drained: bool
    stopped_reason: Optional[str] = None
    queue: Optional[QueueStatus] = None
    last_command: Optional[str] = None
    last_exit_code: Optional[int] = None
    last_output: Optional[str] = None
    state_stale: bool = False


class StageRunResult(BaseSchema):
    """Outcome of a full stage run: generate, execute, recover, verify."""

    stage_id: Optional[str]
    runs: list[RunQueueResult]
    recovery_rounds: int
    advance: AdvanceResult


# ==========================================================================
# Tool API Schemas
# ==========================================================================

class ToolCallRequest(BaseSchema):
    """Parameters for a tool call."""

    params: dict[str, Any] = Field(default_factory=dict)
    deployment_id: Optional[str] = None


class ToolCallResponse(BaseSchema):
    """Result of a tool call."""

    backend: str
    operation: str
    result: Any
    fallback: bool
    latency_ms: int


class BackendInfo(BaseSchema):
    """Registry entry of a tool backend."""

    name: str
    status: BackendStatus
    operations: list[str]
    fallback_operations: list[str]
    last_error: Optional[str] = None


class ToolHealth(BaseSchema):
    """Aggregate probe result."""

    status: HealthStatus
    backends: dict[str, bool]


class UsageStats(BaseSchema):
    """Call counters for one backend or one operation."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    fallback: int = 0
    average_latency_ms: float = 0.0


class UsageEntry(BaseSchema):
    """One sanitized ledger record."""

    backend: str
    operation: str
    success: bool
    latency_ms: int
    fallback: bool
    params: Any = None
    result: Any = None
    error: Optional[str] = None
    deployment_id: Optional[str] = None
    timestamp: datetime


class ToolUsageStats(BaseSchema):
    """Usage ledger summary."""

    total_calls: int
    successful_calls: int
    failed_calls: int
    fallback_calls: int
    by_backend: dict[str, UsageStats]
    by_operation: dict[str, UsageStats]


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    tools: HealthStatus
