import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from msp_sync.config import settings
from msp_sync.models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """
    Create an async engine for ``database_url``.

    SQLite does not enforce foreign keys unless asked to on every
    connection, so a connect listener turns them on.
    """
    new_engine = create_async_engine(database_url, echo=echo, future=True, **kwargs)
    if new_engine.dialect.name == "sqlite":
        event.listen(new_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return new_engine


engine = create_engine(settings.database_url, echo=settings.log_level == "DEBUG")

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db(target_engine: AsyncEngine = None):
    """Initialize the database, creating all tables."""
    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug(f"Database tables ready ({target_engine.dialect.name})")


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_maker() -> async_sessionmaker:
    """Dependency for code that opens its own sessions (sync runs)."""
    return AsyncSessionLocal
