"""
Database handle for gitopsplane processes.

Each process (API server, reclaimer, worker) builds its own Database and
passes it to whatever needs a session. There is no module-level engine.
"""

import functools
from collections.abc import AsyncGenerator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import event, text
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gitopsplane.db.models import Base
from gitopsplane.errors import ConstraintViolationError, StoreUnavailableError
from gitopsplane.logging_config import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def translate_db_errors(
    fn: Callable[P, Coroutine[Any, Any, T]],
) -> Callable[P, Coroutine[Any, Any, T]]:
    """Map driver exceptions onto the gitopsplane error taxonomy."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await fn(*args, **kwargs)
        except IntegrityError as e:
            raise ConstraintViolationError(str(e.orig)) from e
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(str(e.orig)) from e

    return wrapper


class Database:
    """Async engine plus session factory for one database."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
        if url.startswith("postgresql"):
            engine_kwargs.update(pool_size=10, max_overflow=20)

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Session that commits on success and rolls back on any exception."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConstraintViolationError(str(e.orig)) from e
            except (OperationalError, InterfaceError) as e:
                await session.rollback()
                raise StoreUnavailableError(str(e.orig)) from e
            except Exception:
                await session.rollback()
                raise

    async def connect(self) -> None:
        """Verify the database is reachable."""
        logger.info("Initializing database connection")
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(str(e)) from e
        logger.info("Database connection established")

    async def create_all(self) -> None:
        """Create all tables. Used by tests and local development; production uses Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health(self) -> bool:
        """Check database health for readiness probe."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close database connection pool."""
        logger.info("Closing database connection pool")
        await self.engine.dispose()
