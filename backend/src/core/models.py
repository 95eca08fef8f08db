"""
DeployForge - Database Models
=============================

SQLAlchemy models for all persisted entities.

A deployment is stored as a single session document: scalar columns for the
fields that are queried or locked on, JSON columns for the nested stage data
and the append-only stage history.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class SessionStatus(str, enum.Enum):
    """Deployment session lifecycle status."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CommandKind(str, enum.Enum):
    """Command type inferred from the command prefix."""
    SHELL = "shell"
    CONTAINER = "container"
    CLOUD_CLI = "cloud-cli"
    INFRA_AS_CODE = "infra-as-code"
    NETWORK = "network"
    OTHER = "other"


class QueueItemStatus(str, enum.Enum):
    """Status of a single queued command."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogStream(str, enum.Enum):
    """Origin of a structured command log line."""
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"
    ERROR = "error"


class BackendStatus(str, enum.Enum):
    """Connectivity of a tool backend."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class HealthStatus(str, enum.Enum):
    """Aggregate health of all tool backends."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# Terminal queue item states never transition again
TERMINAL_ITEM_STATES = frozenset(
    {QueueItemStatus.SUCCEEDED, QueueItemStatus.FAILED, QueueItemStatus.SKIPPED}
)

# Session states from which no further transition is allowed
TERMINAL_SESSION_STATES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class DeploymentSession(Base, TimestampMixin):
    """
    Deployment session document.

    Root aggregate of one deployment: the fixed stage sequence, the live
    working data of the active stage and the frozen history of finished
    stages. The ``version`` column is the optimistic lock; a stale write
    raises ``StaleDataError`` on flush.
    """

    __tablename__ = "deployment_sessions"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    deployment_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Stage pipeline
    stage_sequence: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
    )  # Ordered stage ids, fixed at creation
    current_stage_index: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    current_stage_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )  # None once the session is completed

    # Stage data
    current_stage_data: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )  # StageData
    stage_history: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
    )  # list[StageRecord], append-only
    project_context: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )  # ProjectContext (tagged union)

    # Lifecycle
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Progress (derived on every write)
    total_stages: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    completed_stages: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )  # 0-100
    session_metadata: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )  # SessionMetadata

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Optimistic lock
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<DeploymentSession {self.deployment_id} [{self.status.value}] stage={self.current_stage_id}>"


class ToolUsage(Base, TimestampMixin):
    """
    Durable usage ledger of tool backend calls.

    Inputs and results are stored already sanitized.
    """

    __tablename__ = "tool_usage"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    deployment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    backend: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    operation: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        index=True,
    )
    input: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    result: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    success: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    fallback: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    latency_ms: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    called_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        status = "ok" if self.success else "failed"
        return f"<ToolUsage {self.backend}.{self.operation} [{status}]>"
