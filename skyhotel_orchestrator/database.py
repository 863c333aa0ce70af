"""
Task Platform Database

Database connection and session management.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
import structlog
import os

from .config import PlatformSettings
from .control_plane import models  # noqa: F401  (registers tables on SQLModel.metadata)

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager for the task platform.

    Uses async SQLModel with asyncpg. SQLite DSNs (aiosqlite) are accepted
    for local runs and tests and skip the connection pool sizing.
    """

    def __init__(self, settings: PlatformSettings) -> None:
        self._settings = settings
        engine_options = {"pool_pre_ping": True, "echo": False}
        if not settings.postgres_dsn.startswith("sqlite"):
            engine_options.update(pool_size=5, max_overflow=15)
        self._engine: AsyncEngine = create_async_engine(settings.postgres_dsn, **engine_options)
        self._session_factory = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel models.
        Set SKIP_INIT_MODELS=true to skip this when migrations own the schema.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("init_models_skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("task_platform_tables_initialized")

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
