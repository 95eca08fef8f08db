"""
DeployForge Wizard - Stage Execution Core
=========================================

Drives a deployment through its ordered stages with a durable,
optimistically-locked session record.

Components:
- SessionStore: Versioned session persistence with conflict retries
- StageStateMachine: Stage transitions, history and lifecycle
- CommandExecutor: Shell command execution with timeouts
- CommandQueueRunner: Sequential queue execution with blocking semantics
- ErrorRecoveryLoop: Bounded diagnosis and fix/retry injection
- DeploymentOrchestrator: Generate, run, recover and verify a stage
"""

from src.core.wizard.executor import CommandExecutor, SubprocessRunner
from src.core.wizard.orchestrator import DeploymentOrchestrator
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine
from src.core.wizard.store import SessionStore

__all__ = [
    "SessionStore",
    "StageStateMachine",
    "CommandExecutor",
    "SubprocessRunner",
    "CommandQueueRunner",
    "ErrorRecoveryLoop",
    "DeploymentOrchestrator",
]
