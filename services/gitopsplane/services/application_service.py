"""Application and observed application-state service."""

from sqlalchemy.ext.asyncio import AsyncSession

from gitopsplane.db.models import Application, ApplicationState, HealthStatus, SyncStatus
from gitopsplane.db.repositories import ApplicationRepository, ApplicationStateRepository
from gitopsplane.logging_config import get_logger

logger = get_logger(__name__)


async def create_application(
    db: AsyncSession,
    application_id: str,
    name: str,
    engine_instance_id: str,
    managed_environment_id: str,
    spec_field: str = "",
) -> Application:
    """Create an application. spec_field is stored verbatim and never parsed here."""
    app = await ApplicationRepository.create(
        db,
        Application(
            application_id=application_id,
            name=name,
            spec_field=spec_field,
            engine_instance_inst_id=engine_instance_id,
            managed_environment_id=managed_environment_id,
        ),
    )
    logger.info(
        "Application created",
        application_id=application_id,
        name=name,
        engine_instance_id=engine_instance_id,
    )
    return app


async def update_application_spec(
    db: AsyncSession, application_id: str, spec_field: str
) -> Application:
    """Replace the user-controlled spec blob of an application."""
    return await ApplicationRepository.update(db, application_id, spec_field=spec_field)


async def record_application_state(
    db: AsyncSession,
    application_id: str,
    health: HealthStatus | str,
    sync_status: SyncStatus | str,
) -> ApplicationState:
    """Overwrite the observed state of an application, creating the row on first observation.

    Raises ValueError for health or sync values outside the known sets.
    """
    health = HealthStatus(health)
    sync_status = SyncStatus(sync_status)

    state = await ApplicationStateRepository.find(db, application_id)
    if state is None:
        state = await ApplicationStateRepository.create(
            db,
            ApplicationState(
                applicationstate_application_id=application_id,
                health=health.value,
                sync_status=sync_status.value,
            ),
        )
    elif state.health != health or state.sync_status != sync_status:
        state = await ApplicationStateRepository.update(
            db, application_id, health=health.value, sync_status=sync_status.value
        )
    else:
        return state

    logger.debug(
        "Application state observed",
        application_id=application_id,
        health=health.value,
        sync_status=sync_status.value,
    )
    return state


async def delete_application(db: AsyncSession, application_id: str) -> None:
    """Delete an application together with its observed state row."""
    if await ApplicationStateRepository.find(db, application_id) is not None:
        await ApplicationStateRepository.delete(db, application_id)
    await ApplicationRepository.delete(db, application_id)
    logger.info("Application deleted", application_id=application_id)
