"""Operation state machine and lifecycle management service.

Every state change is a compare-and-swap UPDATE guarded on the row's current
state (and, where the caller knows it, its seq_id). Processes sharing the
database never take in-memory locks; losing a race shows up as an UPDATE
that matched no rows.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import ColumnElement, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gitopsplane.config import ReclaimPolicy
from gitopsplane.db.models import (
    HUMAN_READABLE_STATE_MAX,
    Operation,
    OperationState,
    ResourceType,
    utc_now,
)
from gitopsplane.db.repositories import OperationRepository
from gitopsplane.db.session import Database, translate_db_errors
from gitopsplane.errors import (
    ConstraintViolationError,
    InvalidTransitionError,
    WaitTimeoutError,
)
from gitopsplane.logging_config import get_logger

logger = get_logger(__name__)

# Valid state transitions for callers. In_Progress → Waiting is not listed:
# only reclaim_stale_operations takes that edge.
VALID_TRANSITIONS: dict[str, set[str]] = {
    OperationState.WAITING: {OperationState.IN_PROGRESS},
    OperationState.IN_PROGRESS: {OperationState.COMPLETED, OperationState.FAILED},
}

TERMINAL_STATES = {OperationState.COMPLETED, OperationState.FAILED}

# How many Waiting rows claim_next_operation tries before giving up
CLAIM_CANDIDATES = 10


def can_transition(current: str, target: str) -> bool:
    """Check if a state transition is valid."""
    if current in TERMINAL_STATES:
        return False
    return target in VALID_TRANSITIONS.get(current, set())


def _truncate(message: str) -> str:
    return message[:HUMAN_READABLE_STATE_MAX]


@dataclass(frozen=True)
class OperationTarget:
    """The entity an operation mutates: a closed resource type plus its id."""

    resource_type: ResourceType
    resource_id: str

    @classmethod
    def of(cls, resource_type: ResourceType | str, resource_id: str) -> "OperationTarget":
        """Validate a (type, id) pair coming from outside the process."""
        try:
            rtype = ResourceType(resource_type)
        except ValueError:
            raise ConstraintViolationError(
                f"Unknown operation resource type: {resource_type!r}"
            ) from None
        if not resource_id:
            raise ConstraintViolationError("Operation target requires a resource id")
        return cls(resource_type=rtype, resource_id=resource_id)


async def create_operation(
    db: AsyncSession,
    operation_id: str,
    target: OperationTarget,
    owner_user_id: str,
    human_readable_state: str = "",
    instance_id: str | None = None,
    now: datetime | None = None,
) -> Operation:
    """Create a new operation in 'Waiting' state.

    The target row is not required to exist: a caller may record the
    operation before, or instead of, a successful write to the target.
    """
    target = OperationTarget.of(target.resource_type, target.resource_id)
    now = now or utc_now()

    op = await OperationRepository.create(
        db,
        Operation(
            operation_id=operation_id,
            instance_id=instance_id,
            resource_id=target.resource_id,
            resource_type=target.resource_type.value,
            operation_owner_user_id=owner_user_id,
            created_on=now,
            last_state_update=now,
            state=OperationState.WAITING.value,
            human_readable_state=_truncate(human_readable_state),
        ),
    )

    logger.info(
        "Operation created",
        operation_id=operation_id,
        resource_type=target.resource_type.value,
        resource_id=target.resource_id,
        owner=owner_user_id,
    )
    return op


@translate_db_errors
async def _compare_and_swap(
    db: AsyncSession,
    operation_id: str,
    expected: str,
    target: str,
    now: datetime,
    message: str | None = None,
    conditions: Iterable[ColumnElement[bool]] = (),
) -> Operation | None:
    """Move one row from `expected` to `target` iff it is still in `expected`.

    Returns the refreshed row, or None if the guard matched nothing.
    """
    values: dict = {
        "state": str(target),
        "last_state_update": now,
        "seq_id": Operation.seq_id + 1,
    }
    if message is not None:
        values["human_readable_state"] = _truncate(message)

    result = await db.execute(
        update(Operation)
        .where(
            Operation.operation_id == operation_id,
            Operation.state == str(expected),
            *conditions,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await OperationRepository.get(db, operation_id)


async def get_operation(db: AsyncSession, operation_id: str) -> Operation:
    """Observe an operation. No side effects."""
    return await OperationRepository.get(db, operation_id)


async def transition_operation(
    db: AsyncSession,
    operation_id: str,
    target_state: OperationState | str,
    message: str | None = None,
    expected_seq_id: int | None = None,
    now: datetime | None = None,
) -> Operation:
    """Transition an operation to a new state.

    Raises InvalidTransitionError when the move is not allowed from the
    row's current state, including when another process changed the row
    between our read and our write.
    """
    target_state = OperationState(target_state)
    op = await OperationRepository.get(db, operation_id)
    old_state = op.state

    if not can_transition(old_state, target_state):
        raise InvalidTransitionError("Operation", operation_id, old_state, target_state)

    conditions = []
    if expected_seq_id is not None:
        conditions.append(Operation.seq_id == expected_seq_id)

    swapped = await _compare_and_swap(
        db,
        operation_id,
        expected=old_state,
        target=target_state,
        now=now or utc_now(),
        message=message,
        conditions=conditions,
    )
    if swapped is None:
        current = await OperationRepository.get(db, operation_id)
        raise InvalidTransitionError("Operation", operation_id, current.state, target_state)

    logger.info(
        "Operation transitioned",
        operation_id=operation_id,
        from_state=old_state,
        to_state=target_state.value,
    )
    return swapped


async def claim_operation(
    db: AsyncSession,
    operation_id: str,
    now: datetime | None = None,
) -> Operation | None:
    """Claim a 'Waiting' operation for this worker.

    Returns the claimed row, or None if the operation is no longer claimable
    (another worker got there first, or it already finished). Raises
    NotFoundError if the operation does not exist.
    """
    op = await _compare_and_swap(
        db,
        operation_id,
        expected=OperationState.WAITING,
        target=OperationState.IN_PROGRESS,
        now=now or utc_now(),
    )
    if op is None:
        current = await OperationRepository.get(db, operation_id)
        logger.debug(
            "Operation not claimable",
            operation_id=operation_id,
            state=current.state,
        )
        return None

    logger.info("Operation claimed", operation_id=operation_id, seq_id=op.seq_id)
    return op


@translate_db_errors
async def claim_next_operation(
    db: AsyncSession,
    instance_id: str | None = None,
    now: datetime | None = None,
) -> Operation | None:
    """Claim the oldest 'Waiting' operation, optionally for one engine instance.

    Uses SELECT ... FOR UPDATE SKIP LOCKED on Postgres so concurrent workers
    see disjoint candidates; the claim itself is still a compare-and-swap.
    """
    query = select(Operation.operation_id).where(Operation.state == OperationState.WAITING)
    if instance_id is not None:
        query = query.where(Operation.instance_id == instance_id)
    query = (
        query.order_by(Operation.created_on.asc(), Operation.operation_id.asc())
        .limit(CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True)
    )

    candidates = (await db.execute(query)).scalars().all()
    for operation_id in candidates:
        op = await claim_operation(db, operation_id, now=now)
        if op is not None:
            return op
    return None


async def heartbeat_operation(
    db: AsyncSession,
    operation_id: str,
    expected_seq_id: int | None = None,
    now: datetime | None = None,
) -> Operation:
    """Refresh last_state_update of an 'In_Progress' operation held by a live worker.

    Raises InvalidTransitionError if the operation is no longer in progress
    (or no longer at expected_seq_id), which tells the worker it lost the
    operation to reclamation.
    """
    conditions = []
    if expected_seq_id is not None:
        conditions.append(Operation.seq_id == expected_seq_id)

    op = await _compare_and_swap(
        db,
        operation_id,
        expected=OperationState.IN_PROGRESS,
        target=OperationState.IN_PROGRESS,
        now=now or utc_now(),
        conditions=conditions,
    )
    if op is None:
        current = await OperationRepository.get(db, operation_id)
        raise InvalidTransitionError(
            "Operation", operation_id, current.state, OperationState.IN_PROGRESS
        )
    return op


async def finalize_operation(
    db: AsyncSession,
    operation_id: str,
    target_state: OperationState | str,
    message: str = "",
    expected_seq_id: int | None = None,
    now: datetime | None = None,
) -> Operation:
    """Finish an 'In_Progress' operation as 'Completed' or 'Failed'.

    Pass the seq_id of the row returned by claim (or the last heartbeat) as
    expected_seq_id so a worker whose operation was reclaimed and re-claimed
    by someone else cannot overwrite the new owner's result.
    """
    target_state = OperationState(target_state)
    if target_state not in TERMINAL_STATES:
        op = await OperationRepository.get(db, operation_id)
        raise InvalidTransitionError("Operation", operation_id, op.state, target_state)

    op = await OperationRepository.get(db, operation_id)
    if op.state != OperationState.IN_PROGRESS:
        raise InvalidTransitionError("Operation", operation_id, op.state, target_state)

    return await transition_operation(
        db,
        operation_id,
        target_state,
        message=message,
        expected_seq_id=expected_seq_id,
        now=now,
    )


@translate_db_errors
async def list_operations_for_resource(
    db: AsyncSession, target: OperationTarget
) -> list[Operation]:
    """All operations against one entity, oldest first."""
    result = await db.execute(
        select(Operation)
        .where(
            Operation.resource_type == target.resource_type.value,
            Operation.resource_id == target.resource_id,
        )
        .order_by(Operation.created_on.asc())
    )
    return list(result.scalars().all())


@translate_db_errors
async def list_operations_by_state(
    db: AsyncSession,
    state: OperationState | str,
    limit: int = 100,
) -> list[Operation]:
    """Operations currently in one state, oldest first."""
    result = await db.execute(
        select(Operation)
        .where(Operation.state == OperationState(state).value)
        .order_by(Operation.created_on.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def wait_for_operation(
    database: Database,
    operation_id: str,
    interval: float = 1.0,
    timeout: float = 60.0,
) -> Operation:
    """Poll an operation until it reaches a terminal state.

    Each poll reads through a fresh session. Raises WaitTimeoutError if the
    operation is still running after `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        async with database.session() as db:
            op = await get_operation(db, operation_id)
        if op.is_terminal:
            return op
        if loop.time() >= deadline:
            raise WaitTimeoutError(
                f"Operation {operation_id} still {op.state} after {timeout:g}s"
            )
        await asyncio.sleep(interval)


# --- Reclamation ---


@translate_db_errors
async def reclaim_stale_operations(
    db: AsyncSession,
    stale_before: datetime,
    policy: ReclaimPolicy,
    now: datetime | None = None,
) -> list[Operation]:
    """Recover 'In_Progress' operations whose worker stopped reporting before stale_before.

    Each row is swapped on its observed seq_id, so a worker that heartbeats
    or finalizes in the meantime wins and the row is left alone. A reclaimed
    row has a fresh last_state_update and cannot be reclaimed again for the
    same abandonment.
    """
    now = now or utc_now()
    target = OperationState.WAITING if policy is ReclaimPolicy.RETRY else OperationState.FAILED

    result = await db.execute(
        select(Operation.operation_id, Operation.seq_id, Operation.last_state_update)
        .where(
            Operation.state == OperationState.IN_PROGRESS,
            Operation.last_state_update < stale_before,
        )
        .order_by(Operation.last_state_update.asc())
    )
    candidates = result.all()

    reclaimed: list[Operation] = []
    for operation_id, seq_id, last_update in candidates:
        if target is OperationState.WAITING:
            message = f"Reclaimed: no progress reported since {last_update.isoformat()}, waiting for retry"
        else:
            message = f"Failed: abandoned by worker, no progress reported since {last_update.isoformat()}"

        op = await _compare_and_swap(
            db,
            operation_id,
            expected=OperationState.IN_PROGRESS,
            target=target,
            now=now,
            message=message,
            conditions=[
                Operation.seq_id == seq_id,
                Operation.last_state_update < stale_before,
            ],
        )
        if op is None:
            # The worker was alive after all
            logger.debug("Reclaim lost race", operation_id=operation_id)
            continue

        logger.warning(
            "Stale operation reclaimed",
            operation_id=operation_id,
            to_state=target.value,
            last_state_update=last_update.isoformat(),
        )
        reclaimed.append(op)

    return reclaimed


@translate_db_errors
async def delete_expired_operations(db: AsyncSession, expire_before: datetime) -> int:
    """Delete terminal operations whose last state change is older than expire_before."""
    result = await db.execute(
        delete(Operation)
        .where(
            Operation.state.in_([s.value for s in TERMINAL_STATES]),
            Operation.last_state_update < expire_before,
        )
        .execution_options(synchronize_session=False)
    )
    deleted = result.rowcount or 0
    if deleted:
        logger.info("Expired operations deleted", count=deleted)
    return deleted
