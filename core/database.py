"""
Database session management with SQLAlchemy async
"""

from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError, InterfaceError
from sqlalchemy.pool import NullPool
from core.config import settings
from core.exceptions import DatabaseConnectionError, DeadlockError
import logging

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    poolclass=NullPool,  # For async, connection pooling handled differently
    future=True
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session


def dialect_insert(session: AsyncSession, model):
    """
    Return an INSERT construct supporting ON CONFLICT for the bound dialect.

    PostgreSQL is the production store; SQLite backs the test suite.
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported for dialect {dialect_name}")


# ============================================================================
# Store error translation
# ============================================================================

_CONTENTION_MARKERS = ("deadlock", "could not serialize", "database is locked")


def is_transient_store_error(exc: BaseException) -> bool:
    """True for connectivity and lock-contention failures, never for constraint violations"""
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        message = str(exc).lower()
        return any(marker in message for marker in _CONTENTION_MARKERS)
    return False


def translate_store_error(exc: BaseException, operation: str, table_name: str):
    """Wrap a raw driver error in the queue's retryable store exceptions"""
    context = {"operation": operation, "table_name": table_name}
    message = str(exc).lower()
    if any(marker in message for marker in _CONTENTION_MARKERS):
        return DeadlockError(
            f"Store contention during {operation}",
            context=context,
            original_exception=exc
        )
    return DatabaseConnectionError(
        f"Store unavailable during {operation}",
        context=context,
        original_exception=exc
    )


@asynccontextmanager
async def store_operation(operation: str, table_name: str = "source_records"):
    """
    Translate transient store failures raised inside the block.

    Usage:
        async with store_operation("claim"):
            await session.execute(stmt)
    """
    try:
        yield
    except (DBAPIError, OSError) as e:
        if not is_transient_store_error(e):
            raise
        error = translate_store_error(e, operation, table_name)
        logger.error(
            f"Store failure during {operation}: {e}",
            extra={"error_context": error.to_dict()}
        )
        raise error from e
