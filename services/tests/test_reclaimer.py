"""Tests for the stale-operation reclaimer: sweep policies, garbage collection and the loop."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from gitopsplane import reclaimer
from gitopsplane.config import OperationsConfig, ReclaimPolicy
from gitopsplane.db.models import OperationState, ResourceType
from gitopsplane.reclaimer import SweepResult, run_reclaimer, sweep_once
from gitopsplane.services import operation_service
from gitopsplane.services.operation_service import OperationTarget

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
THRESHOLD = 300


def _config(**kwargs) -> OperationsConfig:
    return OperationsConfig(staleness_threshold_seconds=THRESHOLD, **kwargs)


async def _in_progress(db, topology, operation_id="op-1", claimed_at=T0):
    """Create an operation and claim it, committed so sweeps see it."""
    await operation_service.create_operation(
        db,
        operation_id,
        OperationTarget.of(ResourceType.GITOPS_ENGINE_INSTANCE, topology.engine_instance_id),
        topology.user_id,
        now=claimed_at,
    )
    op = await operation_service.claim_operation(db, operation_id, now=claimed_at)
    await db.commit()
    return op


class TestSweepPolicies:
    async def test_retry_policy_returns_operation_to_waiting(self, database, db, topology):
        await _in_progress(db, topology)
        swept_at = T0 + timedelta(seconds=THRESHOLD + 1)

        result = await sweep_once(database, _config(), now=swept_at)

        assert result == SweepResult(reclaimed=1)
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.WAITING
        assert op.last_state_update == swept_at
        assert op.human_readable_state.startswith("Reclaimed:")

    async def test_fail_policy_marks_operation_failed(self, database, db, topology):
        await _in_progress(db, topology)

        result = await sweep_once(
            database,
            _config(reclaim_policy=ReclaimPolicy.FAIL),
            now=T0 + timedelta(seconds=THRESHOLD + 1),
        )

        assert result == SweepResult(failed=1)
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.FAILED
        assert op.human_readable_state.startswith("Failed: abandoned")

    async def test_fresh_operation_untouched(self, database, db, topology):
        before = await _in_progress(db, topology, claimed_at=T0 + timedelta(seconds=200))

        result = await sweep_once(database, _config(), now=T0 + timedelta(seconds=THRESHOLD + 1))

        assert result == SweepResult()
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.IN_PROGRESS
        assert op.seq_id == before.seq_id

    async def test_heartbeat_keeps_operation(self, database, db, topology):
        await _in_progress(db, topology)
        await operation_service.heartbeat_operation(db, "op-1", now=T0 + timedelta(seconds=290))
        await db.commit()

        result = await sweep_once(database, _config(), now=T0 + timedelta(seconds=THRESHOLD + 1))

        assert result.reclaimed == 0
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.IN_PROGRESS

    async def test_waiting_operations_never_reclaimed(self, database, db, topology):
        await operation_service.create_operation(
            db,
            "op-1",
            OperationTarget.of(ResourceType.APPLICATION, "app-1"),
            topology.user_id,
            now=T0,
        )
        await db.commit()

        result = await sweep_once(database, _config(), now=T0 + timedelta(days=30))

        assert result == SweepResult()
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.WAITING

    async def test_same_abandonment_reclaimed_once(self, database, db, topology):
        await _in_progress(db, topology)

        first = await sweep_once(database, _config(), now=T0 + timedelta(seconds=THRESHOLD + 1))
        second = await sweep_once(database, _config(), now=T0 + timedelta(seconds=THRESHOLD + 2))

        assert first.reclaimed == 1
        assert second.reclaimed == 0
        op = await operation_service.get_operation(db, "op-1")
        assert op.seq_id == 3

    async def test_concurrent_sweeps_reclaim_once(self, database, db, topology):
        await _in_progress(db, topology)
        swept_at = T0 + timedelta(seconds=THRESHOLD + 1)

        results = await asyncio.gather(
            sweep_once(database, _config(), now=swept_at),
            sweep_once(database, _config(), now=swept_at),
        )

        assert sum(r.reclaimed for r in results) == 1
        op = await operation_service.get_operation(db, "op-1")
        assert op.state == OperationState.WAITING
        assert op.seq_id == 3

    async def test_reclaim_is_guarded_on_staleness(self, db, topology):
        await _in_progress(db, topology)

        reclaimed = await operation_service.reclaim_stale_operations(
            db, stale_before=T0, policy=ReclaimPolicy.RETRY
        )

        # last_state_update == stale_before is not older than the threshold
        assert reclaimed == []


class TestGarbageCollection:
    async def test_expired_terminal_operations_deleted(self, database, db, topology):
        claimed = await _in_progress(db, topology)
        await operation_service.finalize_operation(
            db, "op-1", OperationState.COMPLETED, expected_seq_id=claimed.seq_id, now=T0
        )
        await db.commit()

        result = await sweep_once(
            database, _config(retention_seconds=3600), now=T0 + timedelta(seconds=3601)
        )

        assert result == SweepResult(deleted=1)
        assert await operation_service.list_operations_by_state(db, "Completed") == []

    async def test_recent_terminal_operations_kept(self, database, db, topology):
        claimed = await _in_progress(db, topology)
        await operation_service.finalize_operation(
            db, "op-1", OperationState.FAILED, expected_seq_id=claimed.seq_id, now=T0
        )
        await db.commit()

        result = await sweep_once(
            database, _config(retention_seconds=3600), now=T0 + timedelta(seconds=60)
        )

        assert result.deleted == 0
        assert (await operation_service.get_operation(db, "op-1")).state == OperationState.FAILED

    async def test_running_operations_never_deleted(self, database, db, topology):
        await _in_progress(db, topology, claimed_at=T0 + timedelta(days=2))

        result = await sweep_once(
            database, _config(retention_seconds=60), now=T0 + timedelta(days=2, seconds=1)
        )

        assert result.deleted == 0


class TestRunReclaimer:
    async def test_failed_sweep_does_not_stop_loop(self, database, monkeypatch):
        stop = asyncio.Event()
        calls = []

        async def flaky_sweep(database, config):
            calls.append(config)
            if len(calls) == 1:
                raise RuntimeError("store hiccup")
            stop.set()
            return SweepResult()

        monkeypatch.setattr(reclaimer, "sweep_once", flaky_sweep)

        await asyncio.wait_for(
            run_reclaimer(database, _config(sweep_interval_seconds=0), stop=stop), timeout=5
        )

        assert len(calls) == 2

    async def test_cancellation_propagates(self, database):
        task = asyncio.create_task(run_reclaimer(database, _config(sweep_interval_seconds=3600)))
        await asyncio.sleep(0.1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestWorkerCrash:
    async def test_abandoned_operation_is_picked_up_by_another_worker(
        self, database, db, topology
    ):
        """Worker A claims and dies; the sweep returns the operation; worker B finishes it."""
        dead = await _in_progress(db, topology)

        result = await sweep_once(database, _config(), now=T0 + timedelta(seconds=THRESHOLD + 5))
        assert result.reclaimed == 1

        async with database.session() as worker_b:
            claimed = await operation_service.claim_next_operation(
                worker_b, now=T0 + timedelta(seconds=THRESHOLD + 6)
            )
            assert claimed.operation_id == "op-1"
            seq_id = claimed.seq_id

        async with database.session() as worker_b:
            await operation_service.finalize_operation(
                worker_b, "op-1", OperationState.COMPLETED, message="ok", expected_seq_id=seq_id
            )

        op = await operation_service.wait_for_operation(database, "op-1", interval=0.01, timeout=1)
        assert op.state == OperationState.COMPLETED
        assert op.seq_id > dead.seq_id
