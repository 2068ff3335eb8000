"""
Database Configuration

SECURITY:
- SQLAlchemy echo disabled in production to prevent credential leakage
- Connection string never logged
"""

import logging
import time

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from esign.config import settings

logger = logging.getLogger(__name__)


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.sqlalchemy_echo,
    future=True,
    pool_size=10,
    max_overflow=5,
    pool_recycle=3600,
    pool_pre_ping=True,
)


def install_slow_query_logging(async_engine, threshold_ms: float) -> None:
    """Log statements on ``async_engine`` that take at least ``threshold_ms``."""

    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info["query_start_time"] = time.monotonic()

    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = conn.info.pop("query_start_time", None)
        if start is None:
            return
        duration_ms = (time.monotonic() - start) * 1000
        if duration_ms >= threshold_ms:
            param_count = len(parameters) if parameters else 0
            truncated = statement[:200] + ("..." if len(statement) > 200 else "")
            logger.warning(
                "Slow query (%.0fms, %d params): %s", duration_ms, param_count, truncated
            )

    event.listen(async_engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(async_engine.sync_engine, "after_cursor_execute", _after_cursor_execute)


install_slow_query_logging(engine, settings.DB_SLOW_QUERY_MS)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


async def get_db() -> AsyncSession:
    """Dependency to get database session.

    Note: Endpoints are responsible for calling commit() when needed.
    This dependency only provides the session and handles cleanup.
    """
    session = async_session_maker()
    try:
        yield session
    finally:
        await session.close()


async def init_db():
    """Initialize database tables."""
    # Register models with the metadata before create_all
    import esign.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
