"""
Deployment Orchestrator
=======================

Top-level flow for one stage:

    generate commands ─▶ run queue ─▶ blocked? ─yes─▶ recover ─┐
            ▲                  ▲                                │
            │                  └────────────────────────────────┘
            │                  │ drained
            │                  ▼
            │              verify ─▶ should_advance? ─yes─▶ complete stage
            │                                      └─no──▶ stuck (reported)

A stuck stage is reported back to the caller; nothing here retries forever.
"""

from typing import Optional

import structlog

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import InvalidTransition, RecoveryExhausted, VerificationRejected
from src.core.models import DeploymentSession, SessionStatus
from src.core.schemas import (
    AdvanceResult,
    GeneratedCommand,
    QueueItem,
    QueueStatus,
    RunQueueResult,
    SessionSummary,
    StageRunResult,
    VerificationResult,
)
from src.core.wizard.completion import CompletionService
from src.core.wizard.document import read_stage_data, write_stage_data
from src.core.wizard.queue_runner import CommandQueueRunner, queue_drained
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import (
    StageStateMachine,
    apply_stage_completion,
    build_stage_context,
)

logger = structlog.get_logger()


class DeploymentOrchestrator:
    """
    Deployment orchestrator.

    Wires the state machine, the queue runner, the recovery loop and the
    completion service into stage-level operations.
    """

    def __init__(
        self,
        state_machine: StageStateMachine,
        runner: CommandQueueRunner,
        recovery: ErrorRecoveryLoop,
        completion: CompletionService,
        config: Optional[Settings] = None,
    ):
        self.state_machine = state_machine
        self.runner = runner
        self.recovery = recovery
        self.completion = completion
        self.config = config or default_settings

    # ----------------------------------------------------------------------
    # Pass-through operations
    # ----------------------------------------------------------------------

    async def get_session_summary(self, deployment_id: str) -> SessionSummary:
        return await self.state_machine.get_session_summary(deployment_id)

    async def enqueue_commands(
        self, deployment_id: str, commands: list[GeneratedCommand]
    ) -> list[QueueItem]:
        return await self.runner.enqueue_commands(deployment_id, commands)

    async def get_queue_status(self, deployment_id: str) -> QueueStatus:
        return await self.runner.get_queue_status(deployment_id)

    # ----------------------------------------------------------------------
    # Verification & advancement
    # ----------------------------------------------------------------------

    async def advance_if_ready(self, deployment_id: str) -> AdvanceResult:
        """
        Verify a drained stage and advance it when the verdict allows.

        Returns ``advanced=False`` with a reason when the stage is not ready
        or verification declined, and also when another writer moved the
        stage on while the verdict was pending.
        """
        row = await self.state_machine.get(deployment_id)
        if row.status != SessionStatus.ACTIVE:
            return AdvanceResult(
                advanced=False,
                reason=f"Session is {row.status.value}",
                current_stage=row.current_stage_id,
            )

        data = read_stage_data(row)
        if data.is_blocked:
            return AdvanceResult(
                advanced=False,
                reason=f"Stage is blocked on: {data.blocking_error.command}",
                current_stage=row.current_stage_id,
            )
        if not queue_drained(data):
            return AdvanceResult(
                advanced=False,
                reason="Commands are still pending",
                current_stage=row.current_stage_id,
            )

        context = build_stage_context(row, data)
        try:
            verdict = await self.completion.verify(
                data.terminal_log, context.executed_commands, context
            )
        except Exception as e:
            logger.warning("verification_unavailable", deployment_id=deployment_id, error=str(e))
            return AdvanceResult(
                advanced=False,
                reason=f"Verification unavailable: {e}",
                current_stage=row.current_stage_id,
            )

        verification = VerificationResult(
            passed=verdict.passed,
            all_commands_executed=True,
            analysis=verdict.analysis,
            should_advance=verdict.should_advance,
        )
        stage_id = row.current_stage_id
        rejection = None
        if not verdict.should_advance:
            rejection = VerificationRejected(
                f"Verification declined to advance {stage_id}: {verdict.analysis}",
                {"stage_id": stage_id},
            )

        def store_verdict(session: DeploymentSession) -> Optional[bool]:
            current = read_stage_data(session)
            if (
                session.status != SessionStatus.ACTIVE
                or session.current_stage_id != stage_id
                or not queue_drained(current)
            ):
                # Another writer moved the session on; nothing to store
                return None
            current.verification_result = verification
            if rejection is not None:
                current.stuck_reason = rejection.message
                write_stage_data(session, current)
                return False
            current.stuck_reason = None
            write_stage_data(session, current)
            apply_stage_completion(session, True, notes=verdict.analysis)
            return True

        advanced = await self.state_machine.store.mutate(deployment_id, store_verdict)
        updated = await self.state_machine.get(deployment_id)
        if advanced is None:
            logger.info(
                "stage_changed_during_verification",
                deployment_id=deployment_id,
                stage=stage_id,
                current_stage=updated.current_stage_id,
            )
            return AdvanceResult(
                advanced=False,
                reason=f"Stage {stage_id} changed while it was being verified",
                verification=verification,
                current_stage=updated.current_stage_id,
            )
        if advanced:
            logger.info(
                "stage_advanced",
                deployment_id=deployment_id,
                stage=stage_id,
                next_stage=updated.current_stage_id,
                status=updated.status.value,
            )
            reason = "Verification passed"
        else:
            logger.warning("stage_stuck", deployment_id=deployment_id, stage=stage_id, reason=rejection.message)
            reason = rejection.message

        return AdvanceResult(
            advanced=advanced,
            reason=reason,
            verification=verification,
            current_stage=updated.current_stage_id,
        )

    # ----------------------------------------------------------------------
    # Full stage run
    # ----------------------------------------------------------------------

    async def run_stage(
        self,
        deployment_id: str,
        auto_recover: bool = True,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> StageRunResult:
        """Generate, execute, recover and verify the current stage."""
        row = await self.state_machine.get(deployment_id)
        if row.status != SessionStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot run a stage of a session that is {row.status.value}",
                current_status=row.status.value,
            )
        stage_id = row.current_stage_id
        data = read_stage_data(row)

        if not data.command_queue and not data.is_blocked:
            commands = await self.completion.generate_commands(build_stage_context(row, data))
            if commands:
                await self.state_machine.set_instructions(
                    deployment_id, data.instructions or "", commands
                )
                await self.runner.enqueue_commands(deployment_id, commands)
            logger.info("stage_commands_generated", deployment_id=deployment_id, stage=stage_id, count=len(commands))

        runs: list[RunQueueResult] = []
        rounds = 0
        while True:
            run = await self.runner.run_queue(deployment_id, cwd=cwd, env=env, timeout_ms=timeout_ms)
            runs.append(run)
            if not (run.blocked and auto_recover):
                break
            if rounds >= self.config.MAX_RECOVERY_ROUNDS_PER_STAGE:
                break
            try:
                await self.recovery.resolve_blocking_error(deployment_id)
            except RecoveryExhausted as e:
                logger.warning("stage_recovery_exhausted", deployment_id=deployment_id, stage=stage_id, error=e.message)
                break
            rounds += 1

        advance = await self.advance_if_ready(deployment_id)
        return StageRunResult(stage_id=stage_id, runs=runs, recovery_rounds=rounds, advance=advance)
