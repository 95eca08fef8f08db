"""
DeployForge - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "DeployForge"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./deployforge.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Command Execution
    # ==========================================================================
    COMMAND_TIMEOUT_MS: int = 30_000
    COMMAND_SHELL: str = "/bin/sh"

    # Byte ceilings for persisted text
    COMMAND_OUTPUT_MAX_BYTES: int = 100_000
    TERMINAL_LOG_MAX_BYTES: int = 500_000
    LOG_LINE_MAX_BYTES: int = 10_000
    COMMAND_LOG_MAX_ENTRIES: int = 1000
    COMMAND_LOG_KEEP_ENTRIES: int = 500

    # ==========================================================================
    # Recovery
    # ==========================================================================
    MAX_FIX_ATTEMPTS: int = 3
    MAX_RECOVERY_ROUNDS_PER_STAGE: int = 10
    STATE_CONFLICT_RETRIES: int = 3

    # ==========================================================================
    # Completion Service
    # ==========================================================================
    COMPLETION_API_URL: str | None = None
    COMPLETION_API_KEY: str | None = None
    COMPLETION_TIMEOUT_SECONDS: float = 120.0

    # ==========================================================================
    # Tool Backends (MCP-style JSON-RPC over HTTP)
    # ==========================================================================
    TOOLS_EAGER_CONNECT: bool = False
    TOOL_CONNECT_TIMEOUT_SECONDS: float = 30.0
    TOOL_CALL_TIMEOUT_SECONDS: float = 60.0
    TOOL_RESULT_MAX_CHARS: int = 1000
    TOOL_USAGE_HISTORY_LIMIT: int = 1000

    TERRAFORM_MCP_URL: str | None = None
    TFE_TOKEN: str | None = None

    AWS_MCP_URL: str | None = None

    GITHUB_MCP_URL: str | None = None
    GITHUB_TOKEN: str | None = None

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
