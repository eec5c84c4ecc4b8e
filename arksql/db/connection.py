import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from arksql.core.config import settings

logger = logging.getLogger(__name__)

# One pooled engine per distinct connection string, created on first use
async_db_engines: Dict[str, AsyncEngine] = {}

# Signature shared by every component that needs a database connection
ConnectionFactory = Callable[[str], AsyncContextManager[AsyncConnection]]


def describe_connection(connection_string: str) -> str:
    """Host/database part of a URL, safe for logs."""
    return connection_string.split('@')[1] if '@' in connection_string else '?'


def _create_async_engine(db_url: str) -> AsyncEngine:
    """Create an asynchronous SQLAlchemy engine."""
    # Convert the standard PostgreSQL URL to the async version
    async_url = db_url.replace('postgresql://', 'postgresql+asyncpg://').replace('postgres://', 'postgresql+asyncpg://')

    logger.info(f"Creating async engine for {describe_connection(async_url)} with pool_size={settings.DB_POOL_SIZE}, max_overflow={settings.DB_MAX_OVERFLOW}, pool_timeout={settings.DB_POOL_TIMEOUT}s")

    return create_async_engine(
        async_url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


def get_async_db_engine(connection_string: str) -> AsyncEngine:
    """Get (or lazily create) the engine for ``connection_string``."""
    if not connection_string:
        raise ValueError("A database connection string is required.")
    engine = async_db_engines.get(connection_string)
    if engine is None:
        engine = _create_async_engine(connection_string)
        async_db_engines[connection_string] = engine
    return engine


@asynccontextmanager
async def get_async_db_connection(connection_string: str) -> AsyncIterator[AsyncConnection]:
    """Async context manager yielding a dedicated connection.

    The connection goes back to the pool on every exit path, including
    errors raised by the caller's block.
    """
    engine = get_async_db_engine(connection_string)
    conn = await engine.connect()
    try:
        yield conn
    finally:
        try:
            await conn.close()
        except Exception as e:
            # A dropped connection can fail to close; the pool discards it
            logger.warning(f"Error while closing connection to {describe_connection(connection_string)}: {e}")
        logger.debug(f"Connection to {describe_connection(connection_string)} released.")


async def check_connection(connection_string: str, connection_factory=None) -> bool:
    """Run ``SELECT 1`` against the database."""
    async with (connection_factory or get_async_db_connection)(connection_string) as conn:
        result = await conn.execute(text("SELECT 1"))
        row = result.fetchone()
        return bool(row and row[0] == 1)


async def dispose_engines() -> None:
    """Dispose every engine created so far (application shutdown)."""
    for connection_string, engine in list(async_db_engines.items()):
        try:
            await engine.dispose()
            logger.info(f"Disposed engine for {describe_connection(connection_string)}")
        except Exception as e:
            logger.error(f"Error disposing engine for {describe_connection(connection_string)}: {e}")
    async_db_engines.clear()
