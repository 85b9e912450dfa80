"""
PostgreSQL database session configuration with error handling.

- Connection pooling with pre-ping for stale connection detection
- asyncpg statement caching
- get_db() dependency mapping SQLAlchemy failures to DatabaseException
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.exceptions import DatabaseException, ErrorCode
from app.core.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# Connection Pool Configuration
# =============================================================================
# A sync run holds one session for its whole duration, so the pool is sized
# for a handful of concurrent runs plus the read-only status endpoints.

POOL_SIZE = 5
MAX_OVERFLOW = 10
POOL_RECYCLE = 1800  # Recycle connections every 30 minutes
POOL_TIMEOUT = 30  # Seconds to wait for a connection

# =============================================================================
# Engine Configuration
# =============================================================================


def _engine_kwargs(url: str) -> dict[str, Any]:
    """Pool and driver options; only asyncpg takes the pool sizing and connect args."""
    kwargs: dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if url.startswith("postgresql+asyncpg"):
        kwargs.update(
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_recycle=POOL_RECYCLE,
            pool_timeout=POOL_TIMEOUT,
            connect_args={
                "prepared_statement_cache_size": 100,
                "command_timeout": 60,
            },
        )
    return kwargs


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,  # Don't expire objects after commit (reduces queries)
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Commits on success, rolls back on error. SQLAlchemy errors surface as
    DatabaseException so the API returns the standard error body.

    Usage:
        @router.get("/runs")
        async def list_runs(db: AsyncSession = Depends(get_db)):
            ...

    Raises:
        DatabaseException: On connection or query failure
    """
    session: AsyncSession | None = None
    try:
        session = async_session_maker()
        yield session
        await session.commit()

    except OperationalError as e:
        logger.error(
            "PostgreSQL connection error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
            exc_info=True,
        )
        if session:
            await session.rollback()
        raise DatabaseException(
            message="Unable to connect to the database",
            code=ErrorCode.DATABASE_CONNECTION,
            original_error=e,
        ) from e

    except IntegrityError as e:
        logger.warning(
            "PostgreSQL integrity error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
        )
        if session:
            await session.rollback()
        raise DatabaseException(
            message="Data integrity error",
            details={"constraint_violation": True},
            original_error=e,
        ) from e

    except SQLAlchemyError as e:
        logger.error(
            "SQLAlchemy error",
            extra={"error_type": type(e).__name__, "error_message": str(e)},
            exc_info=True,
        )
        if session:
            await session.rollback()
        raise DatabaseException(original_error=e) from e

    except Exception:
        if session:
            await session.rollback()
        raise

    finally:
        if session:
            await session.close()


async def dispose_engine() -> None:
    """
    Dispose of the engine and all connections.

    Call this during application shutdown.
    """
    await engine.dispose()
    logger.info("Database engine disposed")


async def check_database_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection is available, False otherwise.
    """
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
