"""Main FastAPI application."""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from opsflow.config import Settings, get_settings
from opsflow.services import Services, build_services

# Metrics
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds", "HTTP request duration", ["method", "endpoint"]
)

logger = structlog.get_logger()


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    When ``services`` is given the app uses them as is; otherwise they are
    built on startup and closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting opsflow application", version=settings.app_version)
        owned = app.state.services is None
        if owned:
            from opsflow.worker import celery_app

            app.state.services = await build_services(settings, celery_app=celery_app)
        try:
            logger.info("Application startup completed")
            yield
        finally:
            logger.info("Shutting down opsflow application")
            if owned:
                await app.state.services.close()
                app.state.services = None

    app = FastAPI(
        title=settings.app_name,
        description="Durable workflow execution engine",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )
    app.state.services = services

    # Request logging and metrics middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code,
        ).inc()
        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=request.url.path,
        ).observe(duration)

        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            duration=duration,
        )
        return response

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        current = app.state.services
        if current is not None and current.database is not None:
            db_health = await current.database.health_check()
        else:
            db_health = {
                "database": {"status": "disabled", "error": None},
                "redis": {"status": "disabled", "error": None},
            }

        overall_healthy = all(
            db["status"] in ("healthy", "disabled") for db in db_health.values()
        )
        return {
            "status": "healthy" if overall_healthy else "degraded",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": time.time(),
            "databases": db_health,
        }

    # Metrics endpoint
    if settings.metrics_enabled:
        @app.get("/metrics")
        async def metrics():
            """Prometheus metrics endpoint."""
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            url=str(request.url),
            method=request.method,
            exc_info=True,
        )
        if settings.is_development:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal Server Error",
                    "detail": str(exc),
                    "type": type(exc).__name__,
                },
            )
        return JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    from opsflow.triggers.routes import router as triggers_router

    app.include_router(triggers_router)

    return app


# Create the app instance
app = create_app()
