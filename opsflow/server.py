"""Process bootstrap: logging and the uvicorn server."""

import logging
import sys
from typing import Optional

import structlog
import uvicorn

from opsflow.config import Settings, get_settings

logger = structlog.get_logger()

APP_PATH = "opsflow.main:app"


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route structlog through stdlib logging at the configured level.

    Production renders one JSON object per line; other environments use the
    console renderer.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def serve(
    host: Optional[str] = None,
    port: Optional[int] = None,
    reload: Optional[bool] = None,
    workers: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Run the trigger ingress API; arguments override settings."""
    settings = settings or get_settings()
    setup_logging(settings)

    host = host or settings.host
    port = port or settings.port
    reload = settings.reload if reload is None else reload
    # uvicorn cannot combine reload with several worker processes
    workers = 1 if reload else (workers or settings.workers)

    if settings.webhook_secret:
        ingress = "shared secret"
    elif settings.allow_unauthenticated_triggers:
        ingress = "open"
    else:
        ingress = "per-workflow secrets only"

    logger.info(
        "Starting opsflow API",
        environment=settings.environment,
        host=host,
        port=port,
        workers=workers,
        reload=reload,
        ingress=ingress,
    )
    try:
        uvicorn.run(
            APP_PATH,
            host=host,
            port=port,
            reload=reload,
            workers=workers,
            log_level=settings.log_level.lower(),
            access_log=settings.is_development,
            server_header=False,
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    serve()
