"""
Deployment Session API Routes
=============================

REST endpoints for driving a deployment through its stages.

Endpoints:
- POST   /api/v1/deployments/{id}/session       - Find or create the session
- GET    /api/v1/deployments/{id}               - Session summary
- GET    /api/v1/deployments/{id}/stage         - Live stage data
- GET    /api/v1/deployments/{id}/history       - Archived stage records
- POST   /api/v1/deployments/{id}/instructions  - Store stage instructions
- POST   /api/v1/deployments/{id}/commands      - Enqueue commands
- GET    /api/v1/deployments/{id}/queue         - Queue status
- GET    /api/v1/deployments/{id}/queue/next    - Next runnable command
- POST   /api/v1/deployments/{id}/run           - Run the queue
- POST   /api/v1/deployments/{id}/run-stage     - Generate, run, recover, verify
- POST   /api/v1/deployments/{id}/resolve       - One recovery round
- POST   /api/v1/deployments/{id}/skip          - Skip the blocking command
- POST   /api/v1/deployments/{id}/advance       - Verify and advance
- POST   /api/v1/deployments/{id}/pause         - Pause
- POST   /api/v1/deployments/{id}/resume        - Resume
- POST   /api/v1/deployments/{id}/cancel        - Cancel
"""

from typing import Optional

from fastapi import APIRouter, Query, status
from pydantic import Field

from src.api.deps import OrchestratorDep, QueueRunnerDep, RecoveryDep, StateMachineDep
from src.core.schemas import (
    AdvanceResult,
    BaseSchema,
    CreateSessionRequest,
    EnqueueCommandsRequest,
    ErrorAnalysis,
    QueueItem,
    QueueStatus,
    ReasonRequest,
    RunQueueRequest,
    RunQueueResult,
    SessionSummary,
    StageData,
    StageRecord,
    StageRunResult,
)
from src.core.wizard.state_machine import build_session_summary

router = APIRouter(prefix="/deployments", tags=["deployments"])


# ==========================================================================
# Schemas
# ==========================================================================

class InstructionsRequest(BaseSchema):
    """Assistant instructions; commands are parsed from fenced shell blocks."""
    instructions: str = Field(..., max_length=200_000)


class RunStageRequest(RunQueueRequest):
    """Full stage run options."""
    auto_recover: bool = True


# ==========================================================================
# Session
# ==========================================================================

@router.post(
    "/{deployment_id}/session",
    response_model=SessionSummary,
    status_code=status.HTTP_200_OK,
)
async def find_or_create_session(
    deployment_id: str,
    body: CreateSessionRequest,
    state_machine: StateMachineDep,
) -> SessionSummary:
    """Return the session for a deployment, creating it on first use."""
    row = await state_machine.find_or_create(
        deployment_id,
        owner_id=body.owner_id,
        initial_stage=body.initial_stage,
        stage_ids=body.stage_ids,
        project_context=body.project_context,
    )
    return build_session_summary(row)


@router.get("/{deployment_id}", response_model=SessionSummary)
async def get_session(deployment_id: str, orchestrator: OrchestratorDep) -> SessionSummary:
    return await orchestrator.get_session_summary(deployment_id)


@router.get("/{deployment_id}/stage", response_model=StageData)
async def get_stage_data(deployment_id: str, state_machine: StateMachineDep) -> StageData:
    return await state_machine.get_stage_data(deployment_id)


@router.get("/{deployment_id}/history", response_model=list[StageRecord])
async def get_history(
    deployment_id: str,
    state_machine: StateMachineDep,
    stage_id: Optional[str] = Query(None, description="Only records of this stage"),
) -> list[StageRecord]:
    return await state_machine.get_stage_history(deployment_id, stage_id)


@router.post("/{deployment_id}/instructions", response_model=StageData)
async def set_instructions(
    deployment_id: str,
    body: InstructionsRequest,
    state_machine: StateMachineDep,
) -> StageData:
    return await state_machine.set_instructions(deployment_id, body.instructions)


# ==========================================================================
# Queue
# ==========================================================================

@router.post(
    "/{deployment_id}/commands",
    response_model=list[QueueItem],
    status_code=status.HTTP_201_CREATED,
)
async def enqueue_commands(
    deployment_id: str,
    body: EnqueueCommandsRequest,
    orchestrator: OrchestratorDep,
) -> list[QueueItem]:
    """Append commands to the current stage's queue."""
    return await orchestrator.enqueue_commands(deployment_id, body.commands)


@router.get("/{deployment_id}/queue", response_model=QueueStatus)
async def get_queue(deployment_id: str, orchestrator: OrchestratorDep) -> QueueStatus:
    return await orchestrator.get_queue_status(deployment_id)


@router.get("/{deployment_id}/queue/next", response_model=Optional[QueueItem])
async def get_next_command(deployment_id: str, runner: QueueRunnerDep) -> Optional[QueueItem]:
    """Item at the cursor, or null when blocked, drained or already running."""
    return await runner.get_next_command(deployment_id)


@router.post("/{deployment_id}/run", response_model=RunQueueResult)
async def run_queue(
    deployment_id: str,
    runner: QueueRunnerDep,
    body: Optional[RunQueueRequest] = None,
) -> RunQueueResult:
    """Run pending commands until the queue drains or blocks."""
    body = body or RunQueueRequest()
    return await runner.run_queue(
        deployment_id, cwd=body.cwd, env=body.env, timeout_ms=body.timeout_ms
    )


@router.post("/{deployment_id}/run-stage", response_model=StageRunResult)
async def run_stage(
    deployment_id: str,
    orchestrator: OrchestratorDep,
    body: Optional[RunStageRequest] = None,
) -> StageRunResult:
    body = body or RunStageRequest()
    return await orchestrator.run_stage(
        deployment_id,
        auto_recover=body.auto_recover,
        cwd=body.cwd,
        env=body.env,
        timeout_ms=body.timeout_ms,
    )


@router.post("/{deployment_id}/resolve", response_model=ErrorAnalysis)
async def resolve_blocking_error(deployment_id: str, recovery: RecoveryDep) -> ErrorAnalysis:
    """Diagnose the blocking failure and inject fix and retry commands."""
    return await recovery.resolve_blocking_error(deployment_id)


@router.post("/{deployment_id}/skip", response_model=QueueStatus)
async def skip_blocked_command(deployment_id: str, runner: QueueRunnerDep) -> QueueStatus:
    return await runner.skip_blocked_command(deployment_id)


@router.post("/{deployment_id}/advance", response_model=AdvanceResult)
async def advance_stage(deployment_id: str, orchestrator: OrchestratorDep) -> AdvanceResult:
    """Verify the drained stage and move to the next one when it passes."""
    return await orchestrator.advance_if_ready(deployment_id)


# ==========================================================================
# Lifecycle
# ==========================================================================

@router.post("/{deployment_id}/pause", response_model=SessionSummary)
async def pause_session(deployment_id: str, state_machine: StateMachineDep) -> SessionSummary:
    return build_session_summary(await state_machine.pause(deployment_id))


@router.post("/{deployment_id}/resume", response_model=SessionSummary)
async def resume_session(deployment_id: str, state_machine: StateMachineDep) -> SessionSummary:
    return build_session_summary(await state_machine.resume(deployment_id))


@router.post("/{deployment_id}/cancel", response_model=SessionSummary)
async def cancel_session(
    deployment_id: str,
    state_machine: StateMachineDep,
    body: Optional[ReasonRequest] = None,
) -> SessionSummary:
    reason = body.reason if body else ""
    return build_session_summary(await state_machine.cancel(deployment_id, reason))
