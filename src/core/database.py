from collections.abc import AsyncGenerator
from datetime import UTC, datetime

from loguru import logger
from sqlalchemy import DateTime, event
from sqlalchemy.engine.interfaces import DBAPIConnection, Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import ConnectionPoolEntry
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config.settings import settings


class UTCDateTime(TypeDecorator):
    """Timestamp column stored as naive UTC and loaded back as timezone-aware UTC.

    SQLite has no timezone storage, so offsets are normalized to UTC on the way in.
    Naive values are taken to be UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


# Construct Async SQLite URL
DATABASE_URL = f"sqlite+aiosqlite:///{settings.SQLITE_DB_PATH}"

# Built once at import time and shared by every request through get_session().
engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=settings.DEBUG,
    connect_args={
        "check_same_thread": False,
        "timeout": 30.0,
    },
)


@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(
    dbapi_connection: DBAPIConnection,
    connection_record: ConnectionPoolEntry
) -> None:
    """Configures SQLite connection pragmas for concurrent access.

    Enables Write-Ahead Logging (WAL), relaxes fsync to NORMAL and turns on
    foreign keys so comment and test-case rows cascade with their bug.

    Args:
        dbapi_connection: The raw DBAPI connection object.
        connection_record: The connection pool record.

    Raises:
        sqlite3.OperationalError: If the database is locked and pragmas cannot be set.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
    except Exception as e:
        logger.error(f"Failed to set SQLite pragmas: {e}")
        raise
    finally:
        cursor.close()


async_session_maker = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_schema(bind: AsyncEngine = engine) -> None:
    """Creates every registered SQLModel table on the given engine."""
    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency provider for asynchronous database sessions.

    Yields:
        AsyncSession: An active SQLAlchemy/SQLModel asynchronous session.
    """
    async with async_session_maker() as session:
        yield session
