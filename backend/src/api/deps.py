"""
DeployForge - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.

Components are built once in the application lifespan and stored on
``app.state``; these helpers hand them to the routes.
"""

from typing import Annotated

from fastapi import Depends, Request

from src.core.tools.dispatcher import ToolDispatcher
from src.core.wizard.orchestrator import DeploymentOrchestrator
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine


# ==========================================================================
# Component Dependencies
# ==========================================================================

def get_state_machine(request: Request) -> StageStateMachine:
    return request.app.state.state_machine


def get_queue_runner(request: Request) -> CommandQueueRunner:
    return request.app.state.queue_runner


def get_recovery(request: Request) -> ErrorRecoveryLoop:
    return request.app.state.recovery


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator


def get_dispatcher(request: Request) -> ToolDispatcher:
    return request.app.state.dispatcher


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

# Use these in endpoint signatures for cleaner code
StateMachineDep = Annotated[StageStateMachine, Depends(get_state_machine)]
QueueRunnerDep = Annotated[CommandQueueRunner, Depends(get_queue_runner)]
RecoveryDep = Annotated[ErrorRecoveryLoop, Depends(get_recovery)]
OrchestratorDep = Annotated[DeploymentOrchestrator, Depends(get_orchestrator)]
DispatcherDep = Annotated[ToolDispatcher, Depends(get_dispatcher)]
