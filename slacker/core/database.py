"""Database connection and session management.

Transaction Guarantees:
- Each handler gets its own session
- State changes are committed by the service that makes them
- On any exception, the uncommitted part of the transaction is rolled back
- Sessions are properly closed after each unit of work
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    url = database_url.replace("postgresql://", "postgresql+asyncpg://")
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        echo=echo,
        pool_pre_ping=True,  # Check connection health before use
        pool_recycle=300,
        pool_timeout=30,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new sessions for each unit of work."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Don't expire objects after commit
        autoflush=False,         # Manual flush for better control
    )


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a transactional database session.

    Transaction Behavior:
    - Session starts in a transaction automatically
    - On successful completion: COMMIT
    - On any exception: ROLLBACK
    - Session is always closed properly
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
            logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Error during request, transaction rolled back: {e}")
            raise
        finally:
            await session.close()


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions (for use outside FastAPI)."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database (create tables if needed)."""
    from ..models import Base

    async with engine.begin() as conn:
        # In production, use migrations instead
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
