"""
Completion service - the assistant that proposes, diagnoses and verifies.

Two implementations:
- HttpCompletionService: posts JSON to a configured completion endpoint
- HeuristicCompletionService: local pattern matching, used when no endpoint
  is configured
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
from pydantic import TypeAdapter, ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.schemas import GeneratedCommand
from src.core.wizard.classifier import parse_commands_from_markdown

logger = logging.getLogger(__name__)

_commands_adapter = TypeAdapter(list[GeneratedCommand])


@dataclass
class StageContext:
    """What the assistant needs to know about the active stage."""
    deployment_id: str
    stage_id: str
    stage_name: str
    stage_description: str
    verification: str
    instructions: Optional[str] = None
    project_context: Optional[dict[str, Any]] = None
    executed_commands: list[dict[str, Any]] = field(default_factory=list)
    terminal_log: str = ""


@dataclass
class DiagnosisResult:
    """Proposed remedy for a failed command."""
    analysis: str
    fix_commands: list[GeneratedCommand] = field(default_factory=list)
    retry_commands: list[GeneratedCommand] = field(default_factory=list)


@dataclass
class VerificationVerdict:
    """Assistant's judgement on a drained stage."""
    passed: bool
    should_advance: bool
    analysis: str = ""


class CompletionService(Protocol):
    """External assistant interface."""

    async def generate_commands(self, stage_context: StageContext) -> list[GeneratedCommand]:
        ...

    async def diagnose(
        self,
        command: str,
        error_output: str,
        exit_code: Optional[int],
        context: StageContext,
    ) -> DiagnosisResult:
        ...

    async def verify(
        self,
        stage_log: str,
        executed_commands: list[dict[str, Any]],
        context: StageContext,
    ) -> VerificationVerdict:
        ...


class CompletionServiceError(Exception):
    """The completion endpoint failed or answered with an unusable payload."""


# ==========================================================================
# HTTP Completion Service
# ==========================================================================

class HttpCompletionService:
    """
    Completion service reached over HTTP.

    Endpoints (relative to ``COMPLETION_API_URL``):
    - POST /generate-commands  -> {"commands": [...]} or {"content": "<markdown>"}
    - POST /diagnose           -> {"analysis", "fix_commands", "retry_commands"}
    - POST /verify             -> {"passed", "should_advance", "analysis"}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "HttpCompletionService":
        config = config or default_settings
        if not config.COMPLETION_API_URL:
            raise ValueError("COMPLETION_API_URL is not configured")
        return cls(
            base_url=config.COMPLETION_API_URL,
            api_key=config.COMPLETION_API_KEY,
            timeout_seconds=config.COMPLETION_TIMEOUT_SECONDS,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=self._headers(), timeout=self.timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"Completion request to {path} failed: {e}") from e
        except ValueError as e:
            raise CompletionServiceError(f"Completion response from {path} is not JSON") from e

        if not isinstance(data, dict):
            raise CompletionServiceError(f"Completion response from {path} is not an object")
        return data

    def _parse_commands(self, raw: Any) -> list[GeneratedCommand]:
        try:
            return _commands_adapter.validate_python(raw or [])
        except ValidationError as e:
            raise CompletionServiceError(f"Malformed command list: {e}") from e

    async def generate_commands(self, stage_context: StageContext) -> list[GeneratedCommand]:
        data = await self._post("/generate-commands", {"stage": _context_payload(stage_context)})
        if "commands" in data:
            return self._parse_commands(data["commands"])
        return self._parse_commands(parse_commands_from_markdown(data.get("content") or ""))

    async def diagnose(
        self,
        command: str,
        error_output: str,
        exit_code: Optional[int],
        context: StageContext,
    ) -> DiagnosisResult:
        data = await self._post(
            "/diagnose",
            {
                "command": command,
                "error_output": error_output,
                "exit_code": exit_code,
                "stage": _context_payload(context),
            },
        )
        return DiagnosisResult(
            analysis=str(data.get("analysis", "")),
            fix_commands=self._parse_commands(data.get("fix_commands")),
            retry_commands=self._parse_commands(data.get("retry_commands")),
        )

    async def verify(
        self,
        stage_log: str,
        executed_commands: list[dict[str, Any]],
        context: StageContext,
    ) -> VerificationVerdict:
        data = await self._post(
            "/verify",
            {
                "stage_log": stage_log,
                "executed_commands": executed_commands,
                "stage": _context_payload(context),
            },
        )
        passed = data.get("passed")
        should_advance = data.get("should_advance", passed)
        if not isinstance(passed, bool) or not isinstance(should_advance, bool):
            raise CompletionServiceError("Verification response lacks boolean verdict")
        return VerificationVerdict(
            passed=passed,
            should_advance=should_advance,
            analysis=str(data.get("analysis", "")),
        )


def _context_payload(context: StageContext) -> dict[str, Any]:
    return {
        "deployment_id": context.deployment_id,
        "stage_id": context.stage_id,
        "stage_name": context.stage_name,
        "description": context.stage_description,
        "verification": context.verification,
        "instructions": context.instructions,
        "project_context": context.project_context,
    }


# ==========================================================================
# Heuristic Completion Service
# ==========================================================================

class ErrorType(str, Enum):
    """Deployment error categories recognized from command output."""
    TERRAFORM_INIT_REQUIRED = "terraform_init_required"
    STATE_LOCK = "state_lock"
    RESOURCE_CONFLICT = "resource_conflict"
    CREDENTIALS = "credentials"
    PERMISSION_DENIED = "permission_denied"
    PORT_CONFLICT = "port_conflict"
    TIMEOUT = "timeout"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class HeuristicCompletionService:
    """
    Pattern-based diagnosis without a remote assistant.

    Proposes a targeted fix for the few errors with a safe mechanical remedy
    and always proposes re-running the failed command.
    """

    ERROR_PATTERNS = {
        ErrorType.TERRAFORM_INIT_REQUIRED: [
            'run "terraform init"',
            "terraform init",
            "module not installed",
            "required plugins are not installed",
            "inconsistent dependency lock file",
        ],
        ErrorType.STATE_LOCK: [
            "error acquiring the state lock",
            "state lock",
        ],
        ErrorType.RESOURCE_CONFLICT: [
            "resource conflict",
            "already exists",
            "entityalreadyexists",
            "conflict",
        ],
        ErrorType.CREDENTIALS: [
            "no valid credential",
            "unable to locate credentials",
            "expiredtoken",
            "invalidclienttokenid",
            "authentication failed",
        ],
        ErrorType.PERMISSION_DENIED: [
            "permission denied",
            "accessdenied",
            "unauthorized",
            "forbidden",
        ],
        ErrorType.PORT_CONFLICT: [
            "port is already allocated",
            "address already in use",
            "eaddrinuse",
        ],
        ErrorType.TIMEOUT: [
            "timed out",
            "timeout",
            "deadline exceeded",
        ],
        ErrorType.NETWORK: [
            "could not resolve host",
            "connection refused",
            "no route to host",
        ],
        ErrorType.NOT_FOUND: [
            "command not found",
            "no such file or directory",
        ],
    }

    CORRECTION_STRATEGIES = {
        ErrorType.TERRAFORM_INIT_REQUIRED: "Initialize the working directory, then retry",
        ErrorType.STATE_LOCK: "Wait for the other operation to release the state lock, then retry",
        ErrorType.RESOURCE_CONFLICT: "Import or rename the conflicting resource, then retry",
        ErrorType.CREDENTIALS: "Refresh the cloud credentials collected for this deployment",
        ErrorType.PERMISSION_DENIED: "Grant the missing permission to the deployment identity",
        ErrorType.PORT_CONFLICT: "Stop the process holding the port or choose another port",
        ErrorType.TIMEOUT: "Retry; increase the command timeout if it keeps failing",
        ErrorType.NETWORK: "Check that the endpoint is reachable from this host",
        ErrorType.NOT_FOUND: "Install the missing tool or fix the path",
        ErrorType.UNKNOWN: "Manual review required",
    }

    def classify_error(self, error_output: str) -> ErrorType:
        error_lower = error_output.lower()
        for error_type, patterns in self.ERROR_PATTERNS.items():
            if any(pattern in error_lower for pattern in patterns):
                return error_type
        return ErrorType.UNKNOWN

    async def generate_commands(self, stage_context: StageContext) -> list[GeneratedCommand]:
        if stage_context.instructions:
            return _commands_adapter.validate_python(
                parse_commands_from_markdown(stage_context.instructions)
            )
        return []

    async def diagnose(
        self,
        command: str,
        error_output: str,
        exit_code: Optional[int],
        context: StageContext,
    ) -> DiagnosisResult:
        error_type = self.classify_error(error_output)
        logger.info(f"Diagnosed {command!r} as {error_type.value}")

        fix_commands: list[GeneratedCommand] = []
        if error_type == ErrorType.TERRAFORM_INIT_REQUIRED and command.strip().startswith("terraform"):
            fix_commands.append(
                GeneratedCommand(
                    command="terraform init -input=false",
                    reason="Working directory is not initialized",
                    expected_result="Terraform has been successfully initialized",
                )
            )

        return DiagnosisResult(
            analysis=(
                f"{error_type.value} (exit {exit_code}): "
                f"{self.CORRECTION_STRATEGIES[error_type]}"
            ),
            fix_commands=fix_commands,
            retry_commands=[
                GeneratedCommand(
                    command=command,
                    reason="Retry after diagnosis",
                    expected_result="Command exits with status 0",
                )
            ],
        )

    async def verify(
        self,
        stage_log: str,
        executed_commands: list[dict[str, Any]],
        context: StageContext,
    ) -> VerificationVerdict:
        if not executed_commands:
            return VerificationVerdict(
                passed=False,
                should_advance=False,
                analysis="No commands were executed for this stage",
            )
        # A failed command counts as resolved once a later run of it succeeded
        last_exit: dict[str, int] = {}
        for result in executed_commands:
            last_exit[result["command"]] = result["exit_code"]
        failing = [cmd for cmd, code in last_exit.items() if code != 0]
        if failing:
            return VerificationVerdict(
                passed=False,
                should_advance=False,
                analysis=f"Unresolved failures: {', '.join(failing)}",
            )
        return VerificationVerdict(
            passed=True,
            should_advance=True,
            analysis=f"All {len(last_exit)} commands succeeded",
        )


def build_completion_service(config: Optional[Settings] = None) -> CompletionService:
    """Pick the HTTP service when an endpoint is configured."""
    config = config or default_settings
    if config.COMPLETION_API_URL:
        return HttpCompletionService.from_settings(config)
    logger.info("COMPLETION_API_URL not set, using heuristic completion service")
    return HeuristicCompletionService()
