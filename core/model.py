import logging
from datetime import datetime, timezone
from typing import List, Optional, Type, TypeVar

from sqlalchemy import DateTime, select
from sqlalchemy.dialects import mysql
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()
logger = logging.getLogger("DbMessenger.Model")

# Lease stamps are compared for equality, so MySQL must keep microseconds
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")

T = TypeVar("T")


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the storage convention for all tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Model:
    """
    Process-wide engine and session factory for the messenger tables.

    ``Application`` configures it from DB_* settings; tests point it at a
    throwaway SQLite file. While unconfigured every helper is a no-op.
    """

    _engine: Optional[AsyncEngine] = None
    _session_factory = None
    _is_enabled = False

    @classmethod
    def configure(cls, connection_string: str, **engine_options):
        """
        Create the async engine.

        Args:
            connection_string: SQLAlchemy URL with an async driver (aiosqlite, aiomysql)
            engine_options: Passed through to ``create_async_engine``
        """
        cls._engine = create_async_engine(connection_string, **engine_options)
        cls._session_factory = sessionmaker(cls._engine, class_=AsyncSession, expire_on_commit=False)
        cls._is_enabled = True
        logger.info(f"Database engine ready ({cls._engine.dialect.name})")

    @classmethod
    async def cleanup(cls):
        """Dispose of the engine; the model is unconfigured afterwards."""
        if cls._engine is None:
            return

        await cls._engine.dispose()
        cls._engine, cls._session_factory, cls._is_enabled = None, None, False
        logger.info("Database connections closed")

    @classmethod
    async def get_session(cls) -> Optional[AsyncSession]:
        """New session, or None while the database is disabled."""
        if not cls._is_enabled:
            logger.warning("Database session requested while the database is disabled")
            return None
        return cls._session_factory()

    @classmethod
    async def create_tables(cls):
        """Create messenger_messages and messenger_failed_messages if missing."""
        if not cls._is_enabled:
            logger.info("Database disabled, not creating tables")
            return

        # Importing the models registers them on Base.metadata
        import app.models  # noqa: F401

        async with cls._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("Messenger tables are up to date")

    @classmethod
    async def find(cls, model_class: Type[T], id_value) -> Optional[T]:
        """Row of ``model_class`` with the given primary key."""
        if not cls._is_enabled:
            return None

        async with cls._session_factory() as session:
            result = await session.execute(select(model_class).where(model_class.id == id_value))
            return result.scalars().first()

    @classmethod
    async def all(cls, model_class: Type[T]) -> List[T]:
        """Every row of ``model_class`` in id order."""
        if not cls._is_enabled:
            return []

        async with cls._session_factory() as session:
            result = await session.execute(select(model_class).order_by(model_class.id))
            return list(result.scalars().all())
