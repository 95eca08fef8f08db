"""
DeployForge - Deployment Orchestrator Tests
===========================================

End-to-end stage runs against a scripted shell and completion service.
"""

import asyncio

import pytest

from conftest import FakeCompletionService, ScriptedProcessRunner, commands
from src.core.config import Settings
from src.core.exceptions import InvalidTransition
from src.core.models import DeploymentSession, SessionStatus
from src.core.wizard.completion import VerificationVerdict
from src.core.wizard.orchestrator import DeploymentOrchestrator
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine

APPLY = "terraform apply -auto-approve"


class GatedCompletionService(FakeCompletionService):
    """Holds each verification until ``expected`` calls are in flight."""

    def __init__(self, expected: int):
        super().__init__()
        self.expected = expected
        self.all_arrived = asyncio.Event()

    async def verify(self, stage_log, executed_commands, context) -> VerificationVerdict:
        verdict = await super().verify(stage_log, executed_commands, context)
        if len(self.verified) >= self.expected:
            self.all_arrived.set()
        await asyncio.wait_for(self.all_arrived.wait(), timeout=5)
        return verdict


class TestAdvanceIfReady:
    """Verification gate between stages."""

    async def test_pending_commands_not_ready(
        self,
        orchestrator: DeploymentOrchestrator,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        await orchestrator.enqueue_commands("dep-1", commands("ls"))

        result = await orchestrator.advance_if_ready("dep-1")

        assert result.advanced is False
        assert result.reason == "Commands are still pending"
        assert completion.verified == []

    async def test_blocked_not_ready(
        self,
        orchestrator: DeploymentOrchestrator,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        process_runner.on("false", exit_code=1)
        await orchestrator.enqueue_commands("dep-1", commands("false"))
        await orchestrator.runner.run_queue("dep-1")

        result = await orchestrator.advance_if_ready("dep-1")

        assert result.advanced is False
        assert result.reason.startswith("Stage is blocked")

    async def test_verified_stage_advances(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        await orchestrator.enqueue_commands("dep-1", commands("ls -la"))
        await orchestrator.runner.run_queue("dep-1")

        result = await orchestrator.advance_if_ready("dep-1")

        assert result.advanced is True
        assert result.current_stage == "FILE_GENERATION"
        assert result.verification.should_advance is True
        assert completion.verified[0][0]["command"] == "ls -la"
        history = await state_machine.get_stage_history("dep-1")
        assert history[0].data.verification_result.passed is True

    async def test_rejected_verification_marks_stuck(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        completion.verdict = VerificationVerdict(
            passed=False, should_advance=False, analysis="health endpoint returned 503"
        )
        await orchestrator.enqueue_commands("dep-1", commands("curl -fsS http://app/health"))
        await orchestrator.runner.run_queue("dep-1")

        result = await orchestrator.advance_if_ready("dep-1")

        assert result.advanced is False
        assert "health endpoint returned 503" in result.reason
        assert result.current_stage == "ANALYZE"
        data = await state_machine.get_stage_data("dep-1")
        assert data.verification_result.should_advance is False
        assert data.stuck_reason == result.reason

    async def test_verification_error_reported(
        self,
        orchestrator: DeploymentOrchestrator,
        completion: FakeCompletionService,
        deployment: DeploymentSession,
    ):
        completion.verify_error = RuntimeError("timeout")
        await orchestrator.enqueue_commands("dep-1", commands("ls"))
        await orchestrator.runner.run_queue("dep-1")

        result = await orchestrator.advance_if_ready("dep-1")

        assert result.advanced is False
        assert result.reason == "Verification unavailable: timeout"

    async def test_concurrent_advance_completes_stage_once(
        self,
        state_machine: StageStateMachine,
        queue_runner: CommandQueueRunner,
        recovery: ErrorRecoveryLoop,
        test_settings: Settings,
        deployment: DeploymentSession,
    ):
        gated = GatedCompletionService(expected=2)
        orchestrator = DeploymentOrchestrator(state_machine, queue_runner, recovery, gated, test_settings)
        await orchestrator.enqueue_commands("dep-1", commands("ls"))
        await orchestrator.runner.run_queue("dep-1")

        results = await asyncio.gather(
            orchestrator.advance_if_ready("dep-1"),
            orchestrator.advance_if_ready("dep-1"),
        )

        assert sorted(result.advanced for result in results) == [False, True]
        loser = next(result for result in results if not result.advanced)
        assert loser.reason == "Stage ANALYZE changed while it was being verified"
        assert loser.current_stage == "FILE_GENERATION"
        row = await state_machine.get("dep-1")
        assert row.current_stage_index == 1
        assert row.completed_stages == 1
        history = await state_machine.get_stage_history("dep-1")
        assert [record.stage_id for record in history] == ["ANALYZE"]


class TestRunStage:
    """Generate, execute, recover, verify."""

    async def test_generated_commands_run_and_advance(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        completion: FakeCompletionService,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        completion.generated = commands("ls -la", "docker build -t app .")

        result = await orchestrator.run_stage("dep-1")

        assert result.stage_id == "ANALYZE"
        assert process_runner.calls == ["ls -la", "docker build -t app ."]
        assert result.recovery_rounds == 0
        assert result.advance.advanced is True
        history = await state_machine.get_stage_history("dep-1", "ANALYZE")
        assert [c.command for c in history[0].data.generated_commands] == ["ls -la", "docker build -t app ."]

    async def test_failure_recovered_by_retry(
        self,
        orchestrator: DeploymentOrchestrator,
        completion: FakeCompletionService,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        completion.generated = commands("ls -la", APPLY)
        process_runner.on(APPLY, exit_code=1, stderr="error: resource conflict")
        process_runner.on(APPLY, exit_code=0, stdout="Apply complete!")

        result = await orchestrator.run_stage("dep-1")

        assert len(result.runs) == 2
        assert result.runs[0].blocked is True
        assert result.runs[1].drained is True
        assert result.recovery_rounds == 1
        assert result.advance.advanced is True
        assert completion.diagnosed == [APPLY]

    async def test_exhausted_recovery_reports_stuck(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        completion: FakeCompletionService,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        completion.generated = commands(APPLY)
        process_runner.on(APPLY, exit_code=1, stderr="error: resource conflict")

        result = await orchestrator.run_stage("dep-1")

        assert result.recovery_rounds == 3
        assert result.advance.advanced is False
        summary = await state_machine.get_session_summary("dep-1")
        assert summary.is_blocked is True
        assert summary.stuck_reason is not None
        assert summary.current_stage == "ANALYZE"

    async def test_no_auto_recover(
        self,
        orchestrator: DeploymentOrchestrator,
        completion: FakeCompletionService,
        process_runner: ScriptedProcessRunner,
        deployment: DeploymentSession,
    ):
        completion.generated = commands(APPLY)
        process_runner.on(APPLY, exit_code=1)

        result = await orchestrator.run_stage("dep-1", auto_recover=False)

        assert len(result.runs) == 1
        assert result.recovery_rounds == 0
        assert completion.diagnosed == []

    async def test_paused_session_rejected(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        deployment: DeploymentSession,
    ):
        await state_machine.pause("dep-1")

        with pytest.raises(InvalidTransition):
            await orchestrator.run_stage("dep-1")

    async def test_walks_whole_sequence(
        self,
        orchestrator: DeploymentOrchestrator,
        state_machine: StageStateMachine,
        completion: FakeCompletionService,
    ):
        await state_machine.find_or_create("dep-short", owner_id="owner-1", stage_ids=["DEPLOY", "HEALTH_CHECK"])
        completion.generated = commands("echo step")

        first = await orchestrator.run_stage("dep-short")
        second = await orchestrator.run_stage("dep-short")

        assert first.advance.current_stage == "HEALTH_CHECK"
        assert second.advance.current_stage is None
        summary = await orchestrator.get_session_summary("dep-short")
        assert summary.status == SessionStatus.COMPLETED
        assert summary.progress == 100
        assert summary.metadata.total_commands_executed == 2
