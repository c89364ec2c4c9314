"""
Mission Track - FastAPI Application
===================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from mission_track.api import auth, messages, missions, notifications, teams
from mission_track.core import encryption
from mission_track.core.config import settings
from mission_track.core.container import build_services
from mission_track.core.database import AsyncSessionLocal, close_db, engine, init_db
from mission_track.core.errors import MissionTrackError
from mission_track.core.schemas import ApiResponse, HealthResponse

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
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Load the default encryption key (fails fast when it is missing)
    - Create tables
    - Build the service graph, including the realtime router

    Shutdown:
    - Close database connections
    """
    logger.info("Starting Mission Track", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)

    encryption.initialize(settings.ENCRYPTION_KEY)

    await init_db()
    logger.info("Database initialized")

    app.state.services = build_services(AsyncSessionLocal)

    yield

    logger.info("Shutting down Mission Track")
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# Error Envelope
# ==========================================================================

def error_response(status_code: int, error: str, message: Optional[str] = None) -> JSONResponse:
    body = ApiResponse[None](success=False, error=error, message=message)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts)


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Secure realtime communication for operational teams",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(MissionTrackError)
    async def domain_exception_handler(request: Request, exc: MissionTrackError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Request failed",
            path=request.url.path,
            method=request.method,
            code=exc.code,
            error=exc.message,
        )
        return error_response(exc.status_code, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Validation failed",
            _describe_validation(exc),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = None

        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", detail)

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """Check the database connection and report live socket and user counts."""
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.error("Health check database failure", error=str(e))
            database = "unavailable"

        services = getattr(request.app.state, "services", None)
        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            realtime_connections=services.router.connection_count if services else 0,
            realtime_users=len(services.router.connected_user_ids()) if services else 0,
        )

    app.include_router(auth.router, prefix=settings.API_PREFIX)
    app.include_router(teams.router, prefix=settings.API_PREFIX)
    app.include_router(missions.router, prefix=settings.API_PREFIX)
    app.include_router(messages.router, prefix=settings.API_PREFIX)
    app.include_router(notifications.router, prefix=settings.API_PREFIX)

    # ==========================================================================
    # WebSocket Endpoints
    # ==========================================================================

    @app.websocket("/ws")
    async def realtime_websocket(websocket: WebSocket):
        """Realtime team events. See mission_track.core.realtime.gateway."""
        await websocket.app.state.services.gateway.handle(websocket)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_PREFIX,
            "websocket": "/ws",
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
        "mission_track.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
