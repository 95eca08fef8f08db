"""
Tool usage ledger.

In-memory history of tool calls guarded by an asyncio lock, mirrored into
the ``tool_usage`` table when a session factory is configured. Only the
table survives a restart.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.models import ToolUsage
from src.core.schemas import ToolUsageStats, UsageStats
from src.core.tools.sanitize import DEFAULT_MAX_CHARS, sanitize

logger = structlog.get_logger()


@dataclass
class UsageRecord:
    """One tool call, already sanitized."""
    backend: str
    operation: str
    success: bool
    latency_ms: int
    fallback: bool = False
    params: Any = None
    result: Any = None
    error: Optional[str] = None
    deployment_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class UsageLedger:
    """Process-wide record of tool calls."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        history_limit: int = 1000,
        max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self._session_factory = session_factory
        self.history_limit = history_limit
        self.max_chars = max_chars
        self._records: list[UsageRecord] = []
        self._lock = asyncio.Lock()

    async def record(
        self,
        backend: str,
        operation: str,
        success: bool,
        latency_ms: int,
        params: Any = None,
        result: Any = None,
        error: Optional[str] = None,
        fallback: bool = False,
        deployment_id: Optional[str] = None,
    ) -> UsageRecord:
        entry = UsageRecord(
            backend=backend,
            operation=operation,
            success=success,
            latency_ms=latency_ms,
            fallback=fallback,
            params=sanitize(params, self.max_chars),
            result=sanitize(result, self.max_chars),
            error=error,
            deployment_id=deployment_id,
        )
        async with self._lock:
            self._records.append(entry)
            if len(self._records) > self.history_limit:
                self._records = self._records[-self.history_limit:]

        if self._session_factory is not None:
            await self._persist(entry)
        return entry

    async def _persist(self, entry: UsageRecord) -> None:
        # Ledger write failures are logged, never raised
        try:
            async with self._session_factory() as db:
                db.add(
                    ToolUsage(
                        deployment_id=entry.deployment_id,
                        backend=entry.backend,
                        operation=entry.operation,
                        input=_as_document(entry.params),
                        result=_as_document(entry.result),
                        error=entry.error,
                        success=entry.success,
                        fallback=entry.fallback,
                        latency_ms=entry.latency_ms,
                        called_at=entry.timestamp,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(
                "tool_usage_persist_failed",
                backend=entry.backend,
                operation=entry.operation,
                error=str(e),
            )

    async def get_history(self, limit: int = 100) -> list[UsageRecord]:
        async with self._lock:
            return list(self._records[-limit:])

    async def get_stats(self) -> ToolUsageStats:
        async with self._lock:
            records = list(self._records)

        by_backend: dict[str, list[UsageRecord]] = {}
        by_operation: dict[str, list[UsageRecord]] = {}
        for entry in records:
            by_backend.setdefault(entry.backend, []).append(entry)
            by_operation.setdefault(f"{entry.backend}.{entry.operation}", []).append(entry)

        return ToolUsageStats(
            total_calls=len(records),
            successful_calls=sum(1 for r in records if r.success),
            failed_calls=sum(1 for r in records if not r.success),
            fallback_calls=sum(1 for r in records if r.fallback),
            by_backend={name: _summarize(group) for name, group in by_backend.items()},
            by_operation={name: _summarize(group) for name, group in by_operation.items()},
        )


def _summarize(records: list[UsageRecord]) -> UsageStats:
    total = len(records)
    return UsageStats(
        total=total,
        successful=sum(1 for r in records if r.success),
        failed=sum(1 for r in records if not r.success),
        fallback=sum(1 for r in records if r.fallback),
        average_latency_ms=round(sum(r.latency_ms for r in records) / total, 1) if total else 0.0,
    )


def _as_document(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    return {"value": value}
