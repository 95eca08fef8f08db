"""
Tool Dispatcher API Routes
==========================

Endpoints:
- GET    /api/v1/tools/backends                      - Registered backends
- POST   /api/v1/tools/backends/{backend}/reconnect  - Reconnect one backend
- POST   /api/v1/tools/{backend}/{operation}         - Execute a tool call
- GET    /api/v1/tools/health                        - Probe every backend
- GET    /api/v1/tools/stats                         - Usage counters
- GET    /api/v1/tools/usage                         - Recent sanitized calls
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Query

from src.api.deps import DispatcherDep
from src.core.schemas import (
    BackendInfo,
    ToolCallRequest,
    ToolCallResponse,
    ToolHealth,
    ToolUsageStats,
    UsageEntry,
)
from src.core.tools.sanitize import sanitize

router = APIRouter(prefix="/tools", tags=["tools"])


@router.get("/backends", response_model=list[BackendInfo])
async def list_backends(dispatcher: DispatcherDep) -> list[BackendInfo]:
    return dispatcher.get_backend_statuses()


@router.post("/backends/{backend}/reconnect", response_model=BackendInfo)
async def reconnect_backend(backend: str, dispatcher: DispatcherDep) -> BackendInfo:
    await dispatcher.reconnect(backend)
    return next(info for info in dispatcher.get_backend_statuses() if info.name == backend)


@router.get("/health", response_model=ToolHealth)
async def tools_health(dispatcher: DispatcherDep) -> ToolHealth:
    return await dispatcher.health_check()


@router.get("/stats", response_model=ToolUsageStats)
async def tools_stats(dispatcher: DispatcherDep) -> ToolUsageStats:
    return await dispatcher.get_stats()


@router.get("/usage", response_model=list[UsageEntry])
async def tools_usage(
    dispatcher: DispatcherDep,
    limit: int = Query(100, ge=1, le=1000),
) -> list[UsageEntry]:
    records = await dispatcher.ledger.get_history(limit)
    return [UsageEntry(**asdict(record)) for record in records]


@router.post("/{backend}/{operation}", response_model=ToolCallResponse)
async def execute_tool(
    backend: str,
    operation: str,
    dispatcher: DispatcherDep,
    body: Optional[ToolCallRequest] = None,
) -> ToolCallResponse:
    """
    Execute an operation on a tool backend.

    Falls back to the local stub when the backend is unavailable. The
    returned result is sanitized the same way the usage ledger stores it.
    """
    body = body or ToolCallRequest()
    result = await dispatcher.execute_tool(
        backend, operation, body.params, deployment_id=body.deployment_id
    )
    return ToolCallResponse(
        backend=result.backend,
        operation=result.operation,
        result=sanitize(result.result, dispatcher.ledger.max_chars),
        fallback=result.fallback,
        latency_ms=result.latency_ms,
    )
