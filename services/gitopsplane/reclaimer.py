"""Stale-operation reclaimer: a background sweep over the operation table.

Entrypoint: python -m gitopsplane.reclaimer (also started as a task inside
the API server when operations.reclaimer_enabled is set).

Each tick:
1. In_Progress operations whose worker stopped reporting for longer than the
   staleness threshold go back to Waiting (retry policy) or to Failed
   (fail policy).
2. Completed/Failed operations older than the retention window are deleted.

A failed tick is logged and retried on the next one; the loop only stops
when cancelled.
"""

import asyncio
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta

from gitopsplane.config import OperationsConfig, load_settings
from gitopsplane.db.models import OperationState, utc_now
from gitopsplane.db.session import Database
from gitopsplane.logging_config import configure_logging, get_logger
from gitopsplane.services import operation_service

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one reclamation tick."""

    reclaimed: int = 0
    failed: int = 0
    deleted: int = 0


async def sweep_once(
    database: Database,
    config: OperationsConfig,
    now: datetime | None = None,
) -> SweepResult:
    """Run one reclamation and garbage-collection pass."""
    now = now or utc_now()
    stale_before = now - timedelta(seconds=config.staleness_threshold_seconds)
    expire_before = now - timedelta(seconds=config.retention_seconds)

    async with database.session() as db:
        reclaimed = await operation_service.reclaim_stale_operations(
            db, stale_before, config.reclaim_policy, now=now
        )

    async with database.session() as db:
        deleted = await operation_service.delete_expired_operations(db, expire_before)

    result = SweepResult(
        reclaimed=sum(1 for op in reclaimed if op.state == OperationState.WAITING),
        failed=sum(1 for op in reclaimed if op.state == OperationState.FAILED),
        deleted=deleted,
    )
    if result != SweepResult():
        logger.info(
            "Reclamation sweep",
            reclaimed=result.reclaimed,
            failed=result.failed,
            deleted=result.deleted,
        )
    return result


async def run_reclaimer(
    database: Database,
    config: OperationsConfig,
    stop: asyncio.Event | None = None,
) -> None:
    """Main reclaimer loop, run as an async background task.

    Sweeps every sweep_interval_seconds until cancelled or `stop` is set.
    """
    interval = config.sweep_interval_seconds
    stop = stop or asyncio.Event()
    logger.info(
        "Reclaimer started",
        interval_seconds=interval,
        staleness_threshold_seconds=config.staleness_threshold_seconds,
        policy=config.reclaim_policy.value,
    )

    while not stop.is_set():
        try:
            await sweep_once(database, config)
        except Exception as e:
            logger.error("Reclamation sweep failed", error=str(e), exc_info=e)

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except TimeoutError:
            pass
        except asyncio.CancelledError:
            logger.info("Reclaimer stopping")
            raise

    logger.info("Reclaimer stopped")


async def main() -> None:
    settings = load_settings()
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name="gitopsplane-reclaimer"
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    database = Database(settings.database_url, echo=settings.debug)
    try:
        await database.connect()
        await run_reclaimer(database, settings.operations, stop=stop)
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
