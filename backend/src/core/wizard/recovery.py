"""
Error Recovery Loop - diagnosis and fix/retry injection for a blocked stage.

Each call is one analysis round for the blocking command:

1. Ask the completion service to diagnose the failure
2. Record an ErrorAnalysis
3. Splice fix commands, then retry commands, right after the failed item
4. Clear the block so the queue runner picks the injected items up

Rounds per blocking command are capped; past the cap the stage is marked
stuck and handed to a human.
"""

import logging
from typing import Optional

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import InvalidTransition, RecoveryExhausted
from src.core.models import DeploymentSession, LogStream
from src.core.schemas import ErrorAnalysis, GeneratedCommand
from src.core.wizard.completion import CompletionService, DiagnosisResult
from src.core.wizard.document import read_stage_data, write_stage_data
from src.core.wizard.queue_runner import splice_recovery_commands
from src.core.wizard.state_machine import StageStateMachine, add_command_log, build_stage_context

logger = logging.getLogger(__name__)


class ErrorRecoveryLoop:
    """
    Bounded recovery for blocking command failures.

    Max ``MAX_FIX_ATTEMPTS`` analysis rounds per blocking command before
    escalation.
    """

    def __init__(
        self,
        state_machine: StageStateMachine,
        completion: CompletionService,
        config: Optional[Settings] = None,
    ):
        self.state_machine = state_machine
        self.store = state_machine.store
        self.completion = completion
        self.config = config or default_settings
        self.max_fix_attempts = self.config.MAX_FIX_ATTEMPTS
        self.max_rounds_per_stage = self.config.MAX_RECOVERY_ROUNDS_PER_STAGE

    async def resolve_blocking_error(self, deployment_id: str) -> ErrorAnalysis:
        """
        Run one recovery round for the stage's blocking error.

        Raises:
            InvalidTransition: the stage is not blocked
            RecoveryExhausted: the attempt cap for this command is reached
        """
        row = await self.state_machine.get(deployment_id)
        data = read_stage_data(row)
        if not data.is_blocked or data.blocking_error is None:
            raise InvalidTransition("Stage is not blocked; nothing to resolve")

        blocking = data.blocking_error
        attempts = data.fix_attempts.get(blocking.command, 0)
        if attempts >= self.max_fix_attempts:
            await self._mark_stuck(
                deployment_id,
                f"Command failed after {attempts} fix attempts: {blocking.command}",
            )
            raise RecoveryExhausted(
                f"Max fix attempts ({self.max_fix_attempts}) reached for {blocking.command}",
                command=blocking.command,
                attempts=attempts,
            )
        if len(data.error_analyses) >= self.max_rounds_per_stage:
            await self._mark_stuck(
                deployment_id,
                f"Stage exceeded {self.max_rounds_per_stage} recovery rounds",
            )
            raise RecoveryExhausted(
                f"Max recovery rounds ({self.max_rounds_per_stage}) reached for stage {row.current_stage_id}",
                command=blocking.command,
                attempts=len(data.error_analyses),
            )

        logger.info(
            f"Recovery round {attempts + 1}/{self.max_fix_attempts} for "
            f"{deployment_id}: {blocking.command!r}"
        )

        service_error: Optional[str] = None
        try:
            diagnosis = await self.completion.diagnose(
                blocking.command,
                blocking.error_output,
                blocking.exit_code,
                build_stage_context(row, data),
            )
        except Exception as e:
            service_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Diagnosis failed for {deployment_id}: {service_error}")
            diagnosis = DiagnosisResult(analysis=f"Diagnosis unavailable: {service_error}")

        retry_commands = list(diagnosis.retry_commands) or [
            GeneratedCommand(
                command=blocking.command,
                reason="Re-run the failed command",
                expected_result="Command exits with status 0",
            )
        ]

        def apply(session: DeploymentSession) -> ErrorAnalysis:
            current = read_stage_data(session)
            if (
                not current.is_blocked
                or current.blocking_error is None
                or current.blocking_error.command != blocking.command
                or current.blocking_error.queue_index != blocking.queue_index
            ):
                raise InvalidTransition(
                    "Blocking error changed while it was being diagnosed",
                    details={"command": blocking.command},
                )

            round_number = current.fix_attempts.get(blocking.command, 0) + 1
            analysis = ErrorAnalysis(
                command=blocking.command,
                error_output=blocking.error_output,
                exit_code=blocking.exit_code,
                diagnosis=diagnosis.analysis,
                fix_commands=diagnosis.fix_commands,
                retry_commands=retry_commands,
                fix_attempts=round_number,
                service_error=service_error,
            )
            current.error_analyses = [*current.error_analyses, analysis]
            current.fix_attempts = {**current.fix_attempts, blocking.command: round_number}
            injected = splice_recovery_commands(current, diagnosis.fix_commands, retry_commands)
            add_command_log(
                current,
                f"Recovery round {round_number}: injected {injected} command(s) after {blocking.command}",
                LogStream.INFO,
                self.config,
                blocking.command,
            )
            write_stage_data(session, current)
            return analysis

        analysis = await self.store.mutate(deployment_id, apply)
        logger.info(
            f"Injected {len(analysis.fix_commands)} fix and "
            f"{len(analysis.retry_commands)} retry command(s) for {deployment_id}"
        )
        return analysis

    async def _mark_stuck(self, deployment_id: str, reason: str) -> None:
        def mark(session: DeploymentSession) -> None:
            data = read_stage_data(session)
            if data.stuck_reason == reason:
                return
            data.stuck_reason = reason
            add_command_log(data, f"Escalated to human: {reason}", LogStream.ERROR, self.config)
            write_stage_data(session, data)

        await self.store.mutate(deployment_id, mark)
        logger.warning(f"Escalating {deployment_id} to human: {reason}")
