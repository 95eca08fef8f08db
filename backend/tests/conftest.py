"""
DeployForge - Test Fixtures
===========================

Shared pytest fixtures for all tests.

Each test gets its own SQLite file so two sessions (connections) can race
on the same row, which an in-memory database cannot model.
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.api.main import create_app, shutdown, startup
from src.core.config import Settings
from src.core.database import close_db, create_engine, create_session_factory, init_db
from src.core.models import DeploymentSession
from src.core.schemas import GeneratedCommand
from src.core.tools.dispatcher import ToolDispatcher
from src.core.tools.fallbacks import FallbackRegistry, register_default_fallbacks
from src.core.tools.usage import UsageLedger
from src.core.wizard.completion import DiagnosisResult, StageContext, VerificationVerdict
from src.core.wizard.executor import CommandExecutor, RawProcessResult
from src.core.wizard.orchestrator import DeploymentOrchestrator
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine
from src.core.wizard.store import SessionStore


# ==========================================================================
# Fakes
# ==========================================================================

class ScriptedProcessRunner:
    """
    Process runner answering from a script instead of a shell.

    ``on(command, ...)`` queues results for a command; the last queued
    result repeats. Unscripted commands succeed.
    """

    def __init__(self) -> None:
        self.script: dict[str, list[RawProcessResult]] = {}
        self.calls: list[str] = []

    def on(self, command: str, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.script.setdefault(command, []).append(
            RawProcessResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
        )

    async def run(
        self,
        command: str,
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        timeout_ms: int,
    ) -> RawProcessResult:
        self.calls.append(command)
        results = self.script.get(command)
        if not results:
            return RawProcessResult(stdout=f"ok: {command}\n", stderr="", exit_code=0)
        if len(results) > 1:
            return results.pop(0)
        return results[0]


class FakeCompletionService:
    """Completion service with canned answers."""

    def __init__(self) -> None:
        self.generated: list[GeneratedCommand] = []
        self.diagnoses: list[DiagnosisResult] = []
        self.verdict = VerificationVerdict(passed=True, should_advance=True, analysis="Stage verified")
        self.diagnose_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.diagnosed: list[str] = []
        self.verified: list[list[dict[str, Any]]] = []

    async def generate_commands(self, stage_context: StageContext) -> list[GeneratedCommand]:
        return list(self.generated)

    async def diagnose(
        self,
        command: str,
        error_output: str,
        exit_code: Optional[int],
        context: StageContext,
    ) -> DiagnosisResult:
        self.diagnosed.append(command)
        if self.diagnose_error is not None:
            raise self.diagnose_error
        if self.diagnoses:
            return self.diagnoses.pop(0)
        return DiagnosisResult(analysis=f"{command} failed with exit {exit_code}")

    async def verify(
        self,
        stage_log: str,
        executed_commands: list[dict[str, Any]],
        context: StageContext,
    ) -> VerificationVerdict:
        self.verified.append(executed_commands)
        if self.verify_error is not None:
            raise self.verify_error
        return self.verdict


# ==========================================================================
# Settings & Database Fixtures
# ==========================================================================

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'deployforge.db'}",
        TOOLS_EAGER_CONNECT=False,
        TOOL_CONNECT_TIMEOUT_SECONDS=1.0,
        TOOL_CALL_TIMEOUT_SECONDS=1.0,
        COMPLETION_API_URL=None,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database per test; tables are created up front."""
    engine = create_engine(config=test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


# ==========================================================================
# Component Fixtures
# ==========================================================================

@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession], test_settings: Settings) -> SessionStore:
    return SessionStore(session_factory, conflict_retries=test_settings.STATE_CONFLICT_RETRIES)


@pytest.fixture
def state_machine(store: SessionStore, test_settings: Settings) -> StageStateMachine:
    return StageStateMachine(store, test_settings)


@pytest.fixture
def process_runner() -> ScriptedProcessRunner:
    return ScriptedProcessRunner()


@pytest.fixture
def completion() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def dispatcher(session_factory: async_sessionmaker[AsyncSession]) -> ToolDispatcher:
    return ToolDispatcher(
        ledger=UsageLedger(session_factory=session_factory),
        fallbacks=register_default_fallbacks(FallbackRegistry()),
    )


@pytest.fixture
def queue_runner(
    state_machine: StageStateMachine,
    process_runner: ScriptedProcessRunner,
    dispatcher: ToolDispatcher,
    test_settings: Settings,
) -> CommandQueueRunner:
    executor = CommandExecutor(runner=process_runner, config=test_settings)
    return CommandQueueRunner(state_machine, executor, dispatcher, test_settings)


@pytest.fixture
def recovery(
    state_machine: StageStateMachine,
    completion: FakeCompletionService,
    test_settings: Settings,
) -> ErrorRecoveryLoop:
    return ErrorRecoveryLoop(state_machine, completion, test_settings)


@pytest.fixture
def orchestrator(
    state_machine: StageStateMachine,
    queue_runner: CommandQueueRunner,
    recovery: ErrorRecoveryLoop,
    completion: FakeCompletionService,
    test_settings: Settings,
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(state_machine, queue_runner, recovery, completion, test_settings)


@pytest_asyncio.fixture
async def deployment(state_machine: StageStateMachine) -> DeploymentSession:
    """An active session on the default stage sequence."""
    return await state_machine.find_or_create("dep-1", owner_id="owner-1")


# ==========================================================================
# API Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    completion: FakeCompletionService,
    process_runner: ScriptedProcessRunner,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client against a fully wired application.
    """
    app = create_app(test_settings, completion=completion, process_runner=process_runner)
    await startup(app)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await shutdown(app)


# ==========================================================================
# Helper Functions
# ==========================================================================

def commands(*texts: str) -> list[GeneratedCommand]:
    """Build a command list from plain command strings."""
    return [GeneratedCommand(command=text) for text in texts]
