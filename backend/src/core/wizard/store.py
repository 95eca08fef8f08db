"""
Session Store - durable adapter for deployment session documents.

All writes go through ``mutate``: load the row, apply a change function,
run the ordered write path (normalize, then check invariants) and commit.
The row's ``version`` column detects concurrent writers; a stale write is
retried against the freshly loaded row.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from src.core.exceptions import (
    DeployForgeError,
    NotFoundError,
    PersistenceFailure,
    StateConflict,
)
from src.core.models import DeploymentSession, SessionStatus
from src.core.wizard.invariants import check_invariants, normalize_session, touch

logger = structlog.get_logger()

T = TypeVar("T")
MutateFn = Callable[[DeploymentSession], Union[T, Awaitable[T]]]


class SessionStore:
    """Load, create and mutate session rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        conflict_retries: int = 3,
    ):
        self._session_factory = session_factory
        self.conflict_retries = conflict_retries

    async def _get(self, db: AsyncSession, deployment_id: str) -> DeploymentSession:
        result = await db.execute(
            select(DeploymentSession).where(DeploymentSession.deployment_id == deployment_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(
                f"Deployment session not found: {deployment_id}",
                {"deployment_id": deployment_id},
            )
        return row

    async def load(self, deployment_id: str) -> DeploymentSession:
        """Load a detached snapshot of the session row."""
        try:
            async with self._session_factory() as db:
                return await self._get(db, deployment_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to load session {deployment_id}: {e}") from e

    async def create(self, row: DeploymentSession) -> tuple[DeploymentSession, bool]:
        """
        Insert a new session row.

        Returns ``(row, created)``. When another writer inserted the same
        deployment id first, the existing row is returned with
        ``created=False``.
        """
        normalize_session(row)
        check_invariants(row)
        try:
            async with self._session_factory() as db:
                db.add(row)
                await db.commit()
                return row, True
        except IntegrityError:
            logger.info("session_create_race", deployment_id=row.deployment_id)
            return await self.load(row.deployment_id), False
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to create session {row.deployment_id}: {e}") from e

    async def mutate(
        self,
        deployment_id: str,
        fn: MutateFn,
        retries: Optional[int] = None,
    ) -> T:
        """
        Apply ``fn`` to the session row and commit.

        ``fn`` may be sync or async and may raise to abort without writing.
        On a version conflict ``fn`` is re-applied to the reloaded row up to
        ``retries`` times before ``StateConflict`` propagates.
        """
        retries = self.conflict_retries if retries is None else retries
        attempt = 0
        while True:
            try:
                return await self._mutate_once(deployment_id, fn)
            except StateConflict:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    "session_state_conflict_retry",
                    deployment_id=deployment_id,
                    attempt=attempt,
                )

    async def _mutate_once(self, deployment_id: str, fn: MutateFn) -> T:
        async with self._session_factory() as db:
            try:
                row = await self._get(db, deployment_id)
                index_before = row.current_stage_index

                result = fn(row)
                if inspect.isawaitable(result):
                    result = await result

                normalize_session(row)
                check_invariants(row, index_before)
                if db.is_modified(row):
                    touch(row)
                await db.commit()
                return result
            except StaleDataError as e:
                await db.rollback()
                raise StateConflict(
                    f"Session {deployment_id} was modified concurrently",
                    {"deployment_id": deployment_id},
                ) from e
            except DeployForgeError:
                await db.rollback()
                raise
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceFailure(
                    f"Failed to save session {deployment_id}: {e}",
                    {"deployment_id": deployment_id},
                ) from e

    async def list_sessions(
        self,
        status: Optional[Union[SessionStatus, list[SessionStatus]]] = None,
        owner_id: Optional[str] = None,
    ) -> list[DeploymentSession]:
        """List sessions, newest first."""
        query = select(DeploymentSession).order_by(DeploymentSession.started_at.desc())
        if isinstance(status, list):
            query = query.where(DeploymentSession.status.in_(status))
        elif status is not None:
            query = query.where(DeploymentSession.status == status)
        if owner_id is not None:
            query = query.where(DeploymentSession.owner_id == owner_id)
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Failed to list sessions: {e}") from e
