"""
DeployForge - Core Package
==========================

Core business logic, models, and schemas.
"""

from src.core.config import settings
from src.core.database import Base, create_engine, create_session_factory

__all__ = ["Base", "create_engine", "create_session_factory", "settings"]
