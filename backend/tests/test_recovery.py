"""
DeployForge - Error Recovery Tests
==================================

Diagnosis, fix/retry injection and the escalation caps.
"""

import pytest

from conftest import FakeCompletionService, ScriptedProcessRunner, commands
from src.core.config import Settings
from src.core.exceptions import InvalidTransition, RecoveryExhausted
from src.core.models import DeploymentSession, QueueItemStatus
from src.core.wizard.completion import DiagnosisResult
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine

APPLY = "terraform apply -auto-approve"


async def _block_on_apply(
    queue_runner: CommandQueueRunner,
    process_runner: ScriptedProcessRunner,
) -> None:
    process_runner.on(APPLY, exit_code=1, stderr="error: resource conflict")
    await queue_runner.enqueue_commands("dep-1", commands("ls -la", APPLY))
    await queue_runner.run_queue("dep-1")


class TestResolveBlockingError:
    """One recovery round per call."""

    async def test_retry_injected_after_failed_item(
        self,
        recovery: ErrorRecoveryLoop,
        queue_runner: CommandQueueRunner,
        state_machine: StageStateMachine,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        await _block_on_apply(queue_runner, process_runner)

        analysis = await recovery.resolve_blocking_error("dep-1")

        assert analysis.command == APPLY
        assert analysis.fix_attempts == 1
        assert [c.command for c in analysis.retry_commands] == [APPLY]

        data = await state_machine.get_stage_data("dep-1")
        assert data.is_blocked is False
        assert data.blocking_error is None
        assert data.current_command_index == 2
        assert [item.command for item in data.command_queue] == ["ls -la", APPLY, APPLY]
        assert [item.order for item in data.command_queue] == [0, 1, 2]
        assert data.command_queue[1].status == QueueItemStatus.FAILED
        assert data.command_queue[2].is_retry_command is True
        assert data.fix_attempts == {APPLY: 1}
        assert len(data.error_analyses) == 1

    async def test_retry_success_drains_queue(
        self,
        recovery: ErrorRecoveryLoop,
        queue_runner: CommandQueueRunner,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        process_runner.on(APPLY, exit_code=1, stderr="error: resource conflict")
        process_runner.on(APPLY, exit_code=0, stdout="Apply complete!")
        await queue_runner.enqueue_commands("dep-1", commands("ls -la", APPLY))
        await queue_runner.run_queue("dep-1")

        await recovery.resolve_blocking_error("dep-1")
        result = await queue_runner.run_queue("dep-1")

        assert result.drained is True
        assert result.queue.completed == 2
        assert result.queue.failed == 1

    async def test_fix_commands_precede_retry(
        self,
        recovery: ErrorRecoveryLoop,
        queue_runner: CommandQueueRunner,
        state_machine: StageStateMachine,
        process_runner: ScriptedProcessRunner,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        completion.diagnoses.append(
            DiagnosisResult(
                analysis="Provider plugins missing",
                fix_commands=commands("terraform init -input=false"),
            )
        )
        await _block_on_apply(queue_runner, process_runner)

        await recovery.resolve_blocking_error("dep-1")

        data = await state_machine.get_stage_data("dep-1")
        injected = data.command_queue[2:]
        assert [item.command for item in injected] == ["terraform init -input=false", APPLY]
        assert injected[0].is_fix_command is True
        assert injected[1].is_retry_command is True

    async def test_diagnosis_failure_still_retries(
        self,
        recovery: ErrorRecoveryLoop,
        queue_runner: CommandQueueRunner,
        process_runner: ScriptedProcessRunner,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        completion.diagnose_error = RuntimeError("completion endpoint down")
        await _block_on_apply(queue_runner, process_runner)

        analysis = await recovery.resolve_blocking_error("dep-1")

        assert analysis.service_error == "RuntimeError: completion endpoint down"
        assert [c.command for c in analysis.retry_commands] == [APPLY]

    async def test_not_blocked(self, recovery: ErrorRecoveryLoop, deployment: DeploymentSession):
        with pytest.raises(InvalidTransition):
            await recovery.resolve_blocking_error("dep-1")


class TestRecoveryCaps:
    """Escalation to a human once the caps are reached."""

    async def test_fix_attempt_cap(
        self,
        recovery: ErrorRecoveryLoop,
        queue_runner: CommandQueueRunner,
        state_machine: StageStateMachine,
        process_runner: ScriptedProcessRunner,
        test_settings: Settings,
        deployment: DeploymentSession,
    ):
        await _block_on_apply(queue_runner, process_runner)
        for _ in range(test_settings.MAX_FIX_ATTEMPTS):
            await recovery.resolve_blocking_error("dep-1")
            result = await queue_runner.run_queue("dep-1")
            assert result.blocked is True

        with pytest.raises(RecoveryExhausted) as exc_info:
            await recovery.resolve_blocking_error("dep-1")

        assert exc_info.value.command == APPLY
        assert exc_info.value.attempts == test_settings.MAX_FIX_ATTEMPTS
        data = await state_machine.get_stage_data("dep-1")
        assert data.is_blocked is True
        assert APPLY in data.stuck_reason
        summary = await state_machine.get_session_summary("dep-1")
        assert summary.stuck_reason == data.stuck_reason

    async def test_stage_round_cap(
        self,
        state_machine: StageStateMachine,
        queue_runner: CommandQueueRunner,
        process_runner: ScriptedProcessRunner,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        config = Settings(MAX_FIX_ATTEMPTS=10, MAX_RECOVERY_ROUNDS_PER_STAGE=2)
        recovery = ErrorRecoveryLoop(state_machine, completion, config)
        await _block_on_apply(queue_runner, process_runner)
        for _ in range(2):
            await recovery.resolve_blocking_error("dep-1")
            await queue_runner.run_queue("dep-1")

        with pytest.raises(RecoveryExhausted):
            await recovery.resolve_blocking_error("dep-1")
        assert len(completion.diagnosed) == 2
