"""
Tool Dispatcher
===============

Routes tool calls to named backends:

    execute_tool(backend, operation, params)
        │
        ├── unknown backend ─────────────▶ NotFoundError
        ├── connected ──▶ live call ──ok─▶ result           (ledger: success)
        │                     │
        │                   raises
        ▼                     ▼
    disconnected ──▶ fallback stub? ──yes─▶ result, fallback=True
                                    └─no──▶ DispatchFailure

Shared by every session. The connectivity map and the usage ledger are
only modified under their locks.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import DispatchFailure, NotFoundError
from src.core.models import BackendStatus, HealthStatus
from src.core.schemas import BackendInfo, ToolHealth, ToolUsageStats
from src.core.tools.backends import HttpToolBackend, ToolBackend
from src.core.tools.fallbacks import (
    CLOUD_BACKEND,
    SOURCE_CONTROL_BACKEND,
    TERRAFORM_BACKEND,
    FallbackFn,
    FallbackRegistry,
    register_default_fallbacks,
)
from src.core.tools.sanitize import sanitize
from src.core.tools.usage import UsageLedger

logger = structlog.get_logger()


@dataclass
class ToolResult:
    """Outcome of a dispatched tool call."""
    backend: str
    operation: str
    result: Any
    fallback: bool
    latency_ms: int


class ToolDispatcher:
    """Registry of tool backends with fallback and usage accounting."""

    def __init__(
        self,
        ledger: Optional[UsageLedger] = None,
        fallbacks: Optional[FallbackRegistry] = None,
    ):
        self.ledger = ledger or UsageLedger()
        self.fallbacks = fallbacks or FallbackRegistry()
        self._backends: dict[str, ToolBackend] = {}
        self._lock = asyncio.Lock()

    # ----------------------------------------------------------------------
    # Registry
    # ----------------------------------------------------------------------

    def register_backend(self, backend: ToolBackend) -> None:
        self._backends[backend.name] = backend

    def register_fallback(self, backend: str, operation: str, fn: FallbackFn) -> None:
        self.fallbacks.register(backend, operation, fn)

    def get_backend(self, name: str) -> ToolBackend:
        backend = self._backends.get(name)
        if backend is None:
            raise NotFoundError(f"Unknown tool backend: {name}", {"backend": name})
        return backend

    def has_backend(self, name: str) -> bool:
        return name in self._backends

    def can_execute_live(self, backend: str, operation: str) -> bool:
        """True when ``backend`` is connected and offers ``operation``."""
        target = self._backends.get(backend)
        return (
            target is not None
            and target.status == BackendStatus.CONNECTED
            and target.supports(operation)
        )

    def get_backend_statuses(self) -> list[BackendInfo]:
        return [
            BackendInfo(
                name=backend.name,
                status=backend.status,
                operations=list(backend.operations),
                fallback_operations=self.fallbacks.operations_for(backend.name),
                last_error=backend.last_error,
            )
            for backend in self._backends.values()
        ]

    # ----------------------------------------------------------------------
    # Connectivity
    # ----------------------------------------------------------------------

    async def _set_status(
        self, backend: ToolBackend, status: BackendStatus, error: Optional[str] = None
    ) -> None:
        async with self._lock:
            backend.status = status
            backend.last_error = error

    async def mark_disconnected(self, name: str, error: Optional[str] = None) -> None:
        backend = self.get_backend(name)
        await self._set_status(backend, BackendStatus.DISCONNECTED, error)
        logger.warning("tool_backend_disconnected", backend=name, error=error)

    async def reconnect(self, name: str) -> BackendStatus:
        backend = self.get_backend(name)
        try:
            await backend.connect()
        except Exception as e:
            await self._set_status(backend, BackendStatus.ERROR, str(e))
            logger.warning("tool_backend_connect_failed", backend=name, error=str(e))
            return BackendStatus.ERROR
        await self._set_status(backend, BackendStatus.CONNECTED)
        return BackendStatus.CONNECTED

    async def connect_all(self) -> dict[str, BackendStatus]:
        """Connect every backend; failures degrade to fallback mode."""
        names = list(self._backends)
        statuses = await asyncio.gather(*(self.reconnect(name) for name in names))
        connected = [name for name, status in zip(names, statuses) if status == BackendStatus.CONNECTED]
        logger.info("tool_backends_initialized", connected=connected or "none (using fallbacks)")
        return dict(zip(names, statuses))

    async def close(self) -> None:
        for backend in self._backends.values():
            await backend.close()
            await self._set_status(backend, BackendStatus.DISCONNECTED)

    # ----------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------

    async def execute_tool(
        self,
        backend: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
        deployment_id: Optional[str] = None,
    ) -> ToolResult:
        """
        Run ``operation`` on ``backend``.

        Raises:
            NotFoundError: backend is not registered
            DispatchFailure: live call unavailable or failed and no stub exists
        """
        target = self.get_backend(backend)
        params = params or {}
        live_error: Optional[str] = None

        if target.status == BackendStatus.CONNECTED and target.supports(operation):
            started = time.monotonic()
            logger.info(
                "tool_call_started",
                backend=backend,
                operation=operation,
                params=sanitize(params),
            )
            try:
                result = await target.call(operation, params)
            except Exception as e:
                latency_ms = int((time.monotonic() - started) * 1000)
                live_error = str(e)
                await self.ledger.record(
                    backend, operation, success=False, latency_ms=latency_ms,
                    params=params, error=live_error, deployment_id=deployment_id,
                )
                logger.error(
                    "tool_call_failed",
                    backend=backend,
                    operation=operation,
                    error=live_error,
                    latency_ms=latency_ms,
                )
            else:
                latency_ms = int((time.monotonic() - started) * 1000)
                await self.ledger.record(
                    backend, operation, success=True, latency_ms=latency_ms,
                    params=params, result=result, deployment_id=deployment_id,
                )
                logger.info("tool_call_succeeded", backend=backend, operation=operation, latency_ms=latency_ms)
                return ToolResult(backend, operation, result, fallback=False, latency_ms=latency_ms)
        elif target.status == BackendStatus.CONNECTED:
            live_error = f"Operation {operation} not offered by {backend}"
        else:
            live_error = target.last_error or f"Tool backend {backend} is {target.status.value}"

        return await self._execute_fallback(target, operation, params, live_error, deployment_id)

    async def _execute_fallback(
        self,
        target: ToolBackend,
        operation: str,
        params: dict[str, Any],
        reason: Optional[str],
        deployment_id: Optional[str],
    ) -> ToolResult:
        if self.fallbacks.get(target.name, operation) is None:
            raise DispatchFailure(
                f"{target.name}.{operation} unavailable and no fallback exists: {reason}",
                backend=target.name,
                operation=operation,
                details={"reason": reason},
            )

        logger.warning("tool_call_fallback", backend=target.name, operation=operation, reason=reason)
        started = time.monotonic()
        result = await self.fallbacks.run(target.name, operation, params)
        latency_ms = int((time.monotonic() - started) * 1000)
        await self.ledger.record(
            target.name, operation, success=True, latency_ms=latency_ms,
            params=params, result=result, fallback=True, deployment_id=deployment_id,
        )
        return ToolResult(target.name, operation, result, fallback=True, latency_ms=latency_ms)

    # ----------------------------------------------------------------------
    # Health & stats
    # ----------------------------------------------------------------------

    async def _probe(self, backend: ToolBackend) -> bool:
        try:
            healthy = await backend.probe()
        except Exception as e:
            await self._set_status(backend, BackendStatus.ERROR, str(e))
            return False
        if healthy:
            await self._set_status(backend, BackendStatus.CONNECTED)
        elif backend.status == BackendStatus.CONNECTED:
            await self._set_status(backend, BackendStatus.ERROR, backend.last_error)
        return healthy

    async def health_check(self) -> ToolHealth:
        """Probe every backend; healthy if all pass, degraded if some do."""
        backends = list(self._backends.values())
        results = await asyncio.gather(*(self._probe(b) for b in backends))
        by_name = {b.name: ok for b, ok in zip(backends, results)}
        passed = sum(1 for ok in results if ok)

        if passed == len(results):
            status = HealthStatus.HEALTHY
        elif passed:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY
        return ToolHealth(status=status, backends=by_name)

    async def get_stats(self) -> ToolUsageStats:
        return await self.ledger.get_stats()


# ==========================================================================
# Factory
# ==========================================================================

TERRAFORM_OPERATIONS = [
    "get_provider_docs",
    "search_modules",
    "get_module_info",
    "get_sentinel_policies",
]
CLOUD_OPERATIONS = ["describe_resources", "get_cost_and_usage", "estimate_cost", "check_service_quotas"]
SOURCE_CONTROL_OPERATIONS = ["read_repository", "read_file"]


def build_tool_dispatcher(
    config: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ToolDispatcher:
    """Register the configured backends and the default fallback stubs."""
    config = config or default_settings
    dispatcher = ToolDispatcher(
        ledger=UsageLedger(
            session_factory=session_factory,
            history_limit=config.TOOL_USAGE_HISTORY_LIMIT,
            max_chars=config.TOOL_RESULT_MAX_CHARS,
        ),
        fallbacks=register_default_fallbacks(FallbackRegistry()),
    )

    terraform_headers = {"Authorization": f"Bearer {config.TFE_TOKEN}"} if config.TFE_TOKEN else {}
    github_headers = {"Authorization": f"token {config.GITHUB_TOKEN}"} if config.GITHUB_TOKEN else {}

    for name, url, operations, headers in (
        (TERRAFORM_BACKEND, config.TERRAFORM_MCP_URL, TERRAFORM_OPERATIONS, terraform_headers),
        (CLOUD_BACKEND, config.AWS_MCP_URL, CLOUD_OPERATIONS, {}),
        (SOURCE_CONTROL_BACKEND, config.GITHUB_MCP_URL, SOURCE_CONTROL_OPERATIONS, github_headers),
    ):
        dispatcher.register_backend(
            HttpToolBackend(
                name=name,
                url=url,
                operations=operations,
                headers=headers,
                connect_timeout=config.TOOL_CONNECT_TIMEOUT_SECONDS,
                call_timeout=config.TOOL_CALL_TIMEOUT_SECONDS,
            )
        )
    return dispatcher
