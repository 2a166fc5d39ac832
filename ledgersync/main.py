"""
FastAPI application factory with middleware, CORS, and request tracing.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledgersync.config import Settings
from ledgersync.engine import SyncEngine, build_engine
from ledgersync.errors import SyncError
from ledgersync.routers import sync
from ledgersync.utils.logging import configure_logging, get_logger

# Configure logging at module level
configure_logging()
logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[SyncEngine] = None,
) -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.

    Args:
        settings: Application settings (read from the environment when omitted)
        engine: Pre-built engine; built from settings at startup when omitted

    Sync and import jobs run in Celery workers; the API only triggers and
    reports on them.
    """
    settings = settings or (engine.settings if engine else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.
        Handles startup and shutdown events.
        """
        if app.state.engine is None:
            app.state.engine = build_engine(settings)
        current: SyncEngine = app.state.engine

        logger.info(
            "application_startup",
            version=app.version,
            dev_mode=settings.dev_mode,
            eager_tasks=settings.celery_task_always_eager,
        )

        yield

        # Shutdown
        await current.aclose()
        logger.info("application_shutdown")

    app = FastAPI(
        title="LedgerSync API",
        description="Multi-tenant accounting sync engine",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind request ID to structlog context
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
            )

            return response
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        log = logger.warning if exc.is_operational else logger.error
        log(
            "sync_error",
            path=request.url.path,
            error=exc.code,
            message=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.code,
                "message": exc.message,
                "context": exc.context,
            },
        )

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        current: Optional[SyncEngine] = app.state.engine
        return {
            "status": "healthy",
            "version": app.version,
            "engine_ready": current is not None,
            "eager_tasks": settings.celery_task_always_eager,
        }

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["Sync"])

    logger.info("application_configured", routers_count=1)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "ledgersync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
