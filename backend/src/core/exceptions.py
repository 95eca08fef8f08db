"""
DeployForge - Exceptions
========================

Typed error hierarchy shared by the wizard, the tool layer and the API.
Every error carries a human readable message plus an optional ``details``
dict that the API returns verbatim.
"""

from typing import Any, Optional


class DeployForgeError(Exception):
    """Base exception for all DeployForge errors."""

    code = "DEPLOYFORGE_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(DeployForgeError):
    """A session, stage or tool backend does not exist."""

    code = "NOT_FOUND"


class ValidationFailure(DeployForgeError):
    """Input rejected at the boundary."""

    code = "VALIDATION_FAILED"


class InvalidTransition(DeployForgeError):
    """Operation not allowed in the current session status."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.current_status = current_status


class QueueBlocked(DeployForgeError):
    """The stage is blocked on a failed command."""

    code = "QUEUE_BLOCKED"

    def __init__(
        self,
        message: str,
        blocking_command: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.blocking_command = blocking_command


class CommandFailure(DeployForgeError):
    """A command exited non-zero or the executor failed."""

    code = "COMMAND_FAILED"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.exit_code = exit_code


class DispatchFailure(DeployForgeError):
    """A tool backend is unreachable and no fallback stub exists."""

    code = "DISPATCH_FAILED"

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.backend = backend
        self.operation = operation


class VerificationRejected(DeployForgeError):
    """All commands ran but verification declined to advance the stage."""

    code = "VERIFICATION_REJECTED"


class StateConflict(DeployForgeError):
    """Concurrent write to the same session detected."""

    code = "STATE_CONFLICT"


class PersistenceFailure(DeployForgeError):
    """The durable store is unavailable."""

    code = "PERSISTENCE_FAILED"


class RecoveryExhausted(DeployForgeError):
    """Fix attempts for a blocking command exceeded the cap."""

    code = "RECOVERY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        attempts: int = 0,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.command = command
        self.attempts = attempts


class InvariantViolation(DeployForgeError):
    """A write would leave the session document inconsistent."""

    code = "INVARIANT_VIOLATION"
