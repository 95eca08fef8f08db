"""
DeployForge - FastAPI Application
=================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.api import deployments, tools
from src.core.config import Settings, settings as default_settings
from src.core.database import close_db, create_engine, create_session_factory, init_db
from src.core.exceptions import (
    DeployForgeError,
    DispatchFailure,
    InvalidTransition,
    InvariantViolation,
    NotFoundError,
    PersistenceFailure,
    QueueBlocked,
    RecoveryExhausted,
    StateConflict,
    ValidationFailure,
    VerificationRejected,
)
from src.core.models import HealthStatus
from src.core.schemas import ErrorResponse, HealthResponse
from src.core.tools.dispatcher import build_tool_dispatcher
from src.core.wizard.completion import CompletionService, build_completion_service
from src.core.wizard.executor import CommandExecutor, ProcessRunner
from src.core.wizard.orchestrator import DeploymentOrchestrator
from src.core.wizard.queue_runner import CommandQueueRunner
from src.core.wizard.recovery import ErrorRecoveryLoop
from src.core.wizard.state_machine import StageStateMachine
from src.core.wizard.store import SessionStore

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if default_settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Component Wiring
# ==========================================================================

async def startup(app: FastAPI) -> None:
    """
    Build every component and store it on ``app.state``.

    A completion service or process runner already placed on ``app.state``
    is used instead of the configured one.
    """
    config: Settings = app.state.config

    engine = create_engine(config=config)
    await init_db(engine)
    session_factory = create_session_factory(engine)
    logger.info("Database initialized", url=config.DATABASE_URL.split("@")[-1])

    store = SessionStore(session_factory, conflict_retries=config.STATE_CONFLICT_RETRIES)
    state_machine = StageStateMachine(store, config)
    executor = CommandExecutor(runner=app.state.process_runner, config=config)

    dispatcher = build_tool_dispatcher(config, session_factory)
    if config.TOOLS_EAGER_CONNECT:
        await dispatcher.connect_all()

    completion = app.state.completion or build_completion_service(config)
    runner = CommandQueueRunner(state_machine, executor, dispatcher, config)
    recovery = ErrorRecoveryLoop(state_machine, completion, config)
    orchestrator = DeploymentOrchestrator(state_machine, runner, recovery, completion, config)

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.store = store
    app.state.state_machine = state_machine
    app.state.dispatcher = dispatcher
    app.state.queue_runner = runner
    app.state.recovery = recovery
    app.state.orchestrator = orchestrator

    # Commands left running by a previous process can never finish
    recovered = await state_machine.recover_all_interrupted()
    if recovered:
        logger.warning("Recovered interrupted sessions", sessions=recovered)


async def shutdown(app: FastAPI) -> None:
    await app.state.dispatcher.close()
    await close_db(app.state.engine)
    logger.info("Database connections closed")


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database and components
    - Demote commands interrupted by a previous crash

    Shutdown:
    - Close tool backends
    - Close database connections
    """
    logger.info("Starting DeployForge", version=app.state.config.APP_VERSION)
    await startup(app)

    yield

    logger.info("Shutting down DeployForge")
    await shutdown(app)


# ==========================================================================
# App Factory
# ==========================================================================

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationFailure, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (QueueBlocked, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (StateConflict, status.HTTP_409_CONFLICT),
    (RecoveryExhausted, status.HTTP_409_CONFLICT),
    (VerificationRejected, status.HTTP_409_CONFLICT),
    (InvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DispatchFailure, status.HTTP_502_BAD_GATEWAY),
    (PersistenceFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: DeployForgeError) -> int:
    for exc_type, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app(
    config: Optional[Settings] = None,
    completion: Optional[CompletionService] = None,
    process_runner: Optional[ProcessRunner] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    config = config or default_settings
    app = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        description="DeployForge - Staged deployment wizard",
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        openapi_url="/openapi.json" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.completion = completion
    app.state.process_runner = process_runner

    # ==========================================================================
    # Middleware
    # ==========================================================================

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(DeployForgeError)
    async def deployforge_exception_handler(request: Request, exc: DeployForgeError) -> JSONResponse:
        """Map domain errors to HTTP responses."""
        code = status_for(exc)
        log = logger.error if code >= 500 else logger.info
        log("Request failed", path=request.url.path, code=exc.code, error=exc.message)

        details = dict(exc.details)
        if isinstance(exc, QueueBlocked) and exc.blocking_command:
            details.setdefault("blocking_command", exc.blocking_command)
        if isinstance(exc, InvalidTransition) and exc.current_status:
            details.setdefault("current_status", exc.current_status)
        return JSONResponse(
            status_code=code,
            content=ErrorResponse(
                error=type(exc).__name__,
                detail=exc.message,
                code=exc.code,
                details=details or None,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if config.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    # Health check (no prefix)
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """
        Check application health.

        Returns status of:
        - Application
        - Database connection
        - Tool backends
        """
        database = "connected"
        try:
            async with request.app.state.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            database = "disconnected"

        tools_health = await request.app.state.dispatcher.health_check()
        if database != "connected":
            overall = "unhealthy"
        elif tools_health.status == HealthStatus.HEALTHY:
            overall = "healthy"
        else:
            overall = "degraded"

        return HealthResponse(
            status=overall,
            version=config.APP_VERSION,
            environment=config.ENVIRONMENT,
            database=database,
            tools=tools_health.status,
        )

    # API v1 routes
    app.include_router(deployments.router, prefix=config.API_V1_PREFIX)
    app.include_router(tools.router, prefix=config.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": config.APP_NAME,
            "version": config.APP_VERSION,
            "docs": "/docs" if config.is_development else "Disabled in production",
            "health": "/health",
            "api": config.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.is_development,
        log_level="info",
    )
