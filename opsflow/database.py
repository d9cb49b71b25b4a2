"""Database configuration and connection management."""

from typing import Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from opsflow.config import Settings, settings as default_settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


class DatabaseManager:
    """Connection manager for the run store database and Redis."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
        self.redis_client: Optional[Redis] = None

    async def initialize(self, create_tables: bool = False) -> None:
        """Initialize all connections."""
        logger.info("Initializing database connections...")
        await self._init_sql(create_tables)
        await self._init_redis()
        logger.info("Database connections initialized")

    async def _init_sql(self, create_tables: bool) -> None:
        url = self.settings.database_url
        engine_kwargs = {"echo": self.settings.database_echo, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_recycle=3600,
            )
        try:
            self.engine = create_async_engine(url, **engine_kwargs)
            self.async_session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            async with self.engine.begin() as conn:
                if create_tables:
                    await conn.run_sync(Base.metadata.create_all)
                await conn.execute(text("SELECT 1"))
            logger.info("Run store database connection established")
        except Exception as e:
            logger.error("Failed to initialize run store database", error=str(e))
            raise

    async def _init_redis(self) -> None:
        try:
            self.redis_client = Redis.from_url(
                self.settings.redis_url,
                password=self.settings.redis_password,
                max_connections=self.settings.redis_max_connections,
                decode_responses=True,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            await self.redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning("Redis not available, skipping initialization", error=str(e))
            self.redis_client = None

    async def close(self) -> None:
        """Close all connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            logger.info("Run store database connection closed")
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("Redis connection closed")

    async def health_check(self) -> dict:
        """Perform health check on every connection."""
        health_status = {
            "database": {"status": "unknown", "error": None},
            "redis": {"status": "unknown", "error": None},
        }

        try:
            if self.engine:
                async with self.engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))
                health_status["database"]["status"] = "healthy"
            else:
                health_status["database"]["status"] = "disabled"
        except Exception as e:
            health_status["database"]["status"] = "unhealthy"
            health_status["database"]["error"] = str(e)

        try:
            if self.redis_client:
                await self.redis_client.ping()
                health_status["redis"]["status"] = "healthy"
            else:
                health_status["redis"]["status"] = "disabled"
        except Exception as e:
            health_status["redis"]["status"] = "unhealthy"
            health_status["redis"]["error"] = str(e)

        return health_status


# Import models to ensure they are registered with SQLAlchemy
import opsflow.runs.models  # noqa: E402,F401
