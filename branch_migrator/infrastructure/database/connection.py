# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Control database connection management using SQLAlchemy async.

The control database stores the branch registry and the central migration
ledger. Branch databases are never reached through this module; they are
routed per branch by ConnectionRouter.

Example:
    from branch_migrator.infrastructure.database.connection import (
        init_control_database,
        get_control_session,
    )

    # Initialize at application startup
    await init_control_database(settings)

    # Use in services
    async with get_control_session() as session:
        result = await session.execute(select(BranchRecord))
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from branch_migrator.infrastructure.database.models.base import Base

if TYPE_CHECKING:
    from branch_migrator.core.config.settings import Settings

# Module-level state for the control database connection
_control_engine: Optional[AsyncEngine] = None
_control_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class DatabaseError(Exception):
    """Base exception for control database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the sessionmaker used for every control database session.

    Args:
        engine: Control database engine.

    Returns:
        Configured async sessionmaker.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_control_database(settings: "Settings") -> None:
    """Initialize the control database connection pool.

    This should be called once at application startup.

    Args:
        settings: Application settings containing database configuration.

    Raises:
        DatabaseError: If connection pool creation fails.
    """
    global _control_engine, _control_sessionmaker

    engine_kwargs: dict[str, Any] = {"echo": settings.control_db.echo}
    if not settings.control_db.is_sqlite:
        engine_kwargs.update(
            pool_size=settings.control_db.pool_size,
            pool_pre_ping=True,
            pool_recycle=1800,
        )

    try:
        _control_engine = create_async_engine(settings.control_db.url, **engine_kwargs)
        _control_sessionmaker = build_sessionmaker(_control_engine)
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to initialize control database connection", e) from e


async def create_control_tables() -> None:
    """Create the registry and ledger tables if they do not exist.

    Raises:
        DatabaseError: If the database has not been initialized or DDL fails.
    """
    engine = get_control_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to create control database tables", e) from e


async def close_control_database() -> None:
    """Close the control database connection pool.

    This should be called at application shutdown.
    """
    global _control_engine, _control_sessionmaker

    if _control_engine is not None:
        await _control_engine.dispose()
        _control_engine = None
        _control_sessionmaker = None


def get_control_engine() -> AsyncEngine:
    """Get the control database async engine.

    Returns:
        The SQLAlchemy async engine for the control database.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _control_engine is None:
        raise DatabaseError(
            "Control database not initialized. Call init_control_database() first."
        )
    return _control_engine


def get_control_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the control database sessionmaker.

    Returns:
        The SQLAlchemy async sessionmaker for the control database.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _control_sessionmaker is None:
        raise DatabaseError(
            "Control database not initialized. Call init_control_database() first."
        )
    return _control_sessionmaker


@asynccontextmanager
async def get_control_session() -> AsyncIterator[AsyncSession]:
    """Get an async session for the control database.

    The session is automatically committed on success and rolled back
    on exception.

    Yields:
        AsyncSession for database operations.

    Raises:
        DatabaseError: If the database has not been initialized or
            if a database operation fails.
    """
    sessionmaker = get_control_sessionmaker()

    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise DatabaseError("Database operation failed", e) from e
        except Exception:
            await session.rollback()
            raise


async def check_control_database_connection() -> bool:
    """Check if the control database is reachable.

    Returns:
        True if the database is reachable, False otherwise.
    """
    if _control_engine is None:
        return False

    try:
        async with _control_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
