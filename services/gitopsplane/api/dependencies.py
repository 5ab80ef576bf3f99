"""FastAPI dependencies shared by the gitopsplane routers."""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from gitopsplane.db.session import Database


def get_database(request: Request) -> Database:
    """The Database handle created for this application instance."""
    return request.app.state.database


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession]:
    """
    Dependency that provides a database session, committed after the request.

    Usage:
        @router.get("/operations/{operation_id}")
        async def show(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with database.session() as session:
        yield session
