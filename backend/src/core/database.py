"""
DeployForge - Database Connection
=================================

Async SQLAlchemy setup with connection pooling.

The engine and session factory are built once at process start and handed
to the components that need them; nothing here is created at import time.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.core.config import Settings, settings as default_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(config: Optional[Settings] = None) -> AsyncEngine:
    """Create async database engine with connection pooling."""
    config = config or default_settings
    url = config.DATABASE_URL

    # SQLite doesn't support pool_size/max_overflow
    if config.is_sqlite:
        return create_async_engine(
            url,
            echo=config.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=config.DATABASE_POOL_SIZE,
        max_overflow=config.DATABASE_MAX_OVERFLOW,
        echo=config.DATABASE_ECHO,
        pool_pre_ping=True,  # Verify connections before use
    )


# ==========================================================================
# Session Factory
# ==========================================================================

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory shared by the store and the usage ledger."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(engine: AsyncEngine) -> None:
    """Initialize database (create tables if not exist)."""
    async with engine.begin() as conn:
        # Import all models to register them
        from src.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
