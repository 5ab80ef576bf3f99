"""
Health check endpoints for the gitopsplane API server.

/health is what wait_for_server_up() style readiness polling hits;
/ready additionally checks the database.
"""

from fastapi import APIRouter, Depends, Response, status

from gitopsplane.api.dependencies import get_database
from gitopsplane.db.session import Database
from gitopsplane.logging_config import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/", status_code=status.HTTP_200_OK)
@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Liveness probe endpoint.

    Returns 200 if the API server is running.
    """
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(
    response: Response, database: Database = Depends(get_database)
) -> dict[str, str | dict[str, str]]:
    """Readiness probe endpoint."""
    checks = {"database": "healthy" if await database.health() else "unhealthy"}

    if checks["database"] != "healthy":
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
