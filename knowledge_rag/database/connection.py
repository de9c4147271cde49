"""
Database connection management for the Knowledge RAG service.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from redis.asyncio import Redis, ConnectionPool
import structlog

from knowledge_rag.config.settings import DatabaseSettings, RedisSettings

logger = structlog.get_logger(__name__)


class DatabaseManager:
    """Owns the SQL engine, its session factory and the optional Redis client.

    Instances are created by the service factory and passed explicitly to the
    components that need them; there is no module level instance.
    """

    def __init__(
        self,
        database: DatabaseSettings,
        redis: Optional[RedisSettings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.database_settings = database
        self.redis_settings = redis
        self.engine: Optional[AsyncEngine] = engine
        self.session_factory: Optional[async_sessionmaker] = None
        self.redis_client: Optional[Redis] = None
        self._initialized = False

    @property
    def dialect_name(self) -> str:
        """Name of the SQL dialect in use (postgresql, sqlite, ...)."""
        if not self.engine:
            raise RuntimeError("Database not initialized")
        return self.engine.dialect.name

    async def initialize(self):
        """Initialize database connections."""
        if self._initialized:
            return

        try:
            await self._init_sql()

            if self.redis_settings and self.redis_settings.enabled:
                await self._init_redis()

            self._initialized = True
            logger.info("Database connections initialized successfully", dialect=self.dialect_name)

        except Exception as e:
            logger.error("Failed to initialize database connections", error=str(e))
            raise

    async def _init_sql(self):
        """Initialize the SQL engine and session factory."""
        if self.engine is None:
            url = self.database_settings.url
            engine_kwargs = {"echo": self.database_settings.echo, "pool_pre_ping": True}
            if url.startswith("postgresql"):
                engine_kwargs.update(
                    pool_size=self.database_settings.max_connections,
                    max_overflow=self.database_settings.max_connections,
                    pool_timeout=self.database_settings.pool_timeout,
                    pool_recycle=3600,
                )
            self.engine = create_async_engine(url, **engine_kwargs)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        # Test connection
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("SQL connection initialized successfully")

    async def _init_redis(self):
        """Initialize Redis connection."""
        pool = ConnectionPool.from_url(
            self.redis_settings.url,
            max_connections=self.redis_settings.pool_size,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )

        self.redis_client = Redis(connection_pool=pool)

        # Test connection
        await self.redis_client.ping()

        logger.info("Redis connection initialized successfully")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Open a session; rolls back if the block raises (including cancellation)."""
        if not self.session_factory:
            raise RuntimeError("Database not initialized")

        async with self.session_factory() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    def get_redis_client(self) -> Optional[Redis]:
        """Get Redis client, None when Redis is disabled."""
        return self.redis_client

    async def close(self):
        """Close all database connections."""
        try:
            if self.redis_client:
                await self.redis_client.aclose()
                logger.info("Redis connections closed")

            if self.engine:
                await self.engine.dispose()
                logger.info("SQL connections closed")

        except Exception as e:
            logger.error("Error closing database connections", error=str(e))
            raise
        finally:
            self._initialized = False

    async def health_check(self) -> dict:
        """Check health of all database connections."""
        health_status = {
            "sql": {"status": "unknown", "error": None},
            "redis": {"status": "unknown", "error": None},
        }

        try:
            if self.engine:
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                health_status["sql"]["status"] = "healthy"
            else:
                health_status["sql"]["status"] = "not_initialized"
        except Exception as e:
            health_status["sql"]["status"] = "unhealthy"
            health_status["sql"]["error"] = str(e)

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
