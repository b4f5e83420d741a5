"""
Serval Run Database

Database connection and session management for reports and responses.
"""
import os

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from .config import ServalSettings
from .control_plane import models  # noqa: F401  (registers the tables)

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager.

    Uses async SQLModel with asyncpg in production and aiosqlite in tests.
    """

    def __init__(self, settings: ServalSettings) -> None:
        self._settings = settings
        dsn = settings.postgres_dsn
        engine_options = {"pool_pre_ping": True, "echo": False}
        if not dsn.startswith("sqlite"):
            engine_options.update(pool_size=5, max_overflow=15)
        self._engine: AsyncEngine = create_async_engine(dsn, **engine_options)
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

        Creates the reports and responses tables if missing.
        Set SKIP_INIT_MODELS=true when the schema is managed by migrations.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("init_models_skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("result_store_tables_initialized")

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
