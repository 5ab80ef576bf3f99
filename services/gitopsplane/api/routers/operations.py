"""Operation observation endpoints.

Endpoints:
    GET /api/v1/operations/{operation_id}
    GET /api/v1/operations?resource_type=...&resource_id=...
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gitopsplane.api.dependencies import get_db
from gitopsplane.db.models import Operation, ResourceType
from gitopsplane.services import operation_service

router = APIRouter(tags=["operations"])


class OperationOut(BaseModel):
    operation_id: str
    instance_id: str | None
    resource_id: str
    resource_type: str
    operation_owner_user_id: str
    created_on: datetime
    last_state_update: datetime
    state: str
    human_readable_state: str
    seq_id: int

    @classmethod
    def from_row(cls, op: Operation) -> "OperationOut":
        return cls(
            operation_id=op.operation_id,
            instance_id=op.instance_id,
            resource_id=op.resource_id,
            resource_type=op.resource_type,
            operation_owner_user_id=op.operation_owner_user_id,
            created_on=op.created_on,
            last_state_update=op.last_state_update,
            state=op.state,
            human_readable_state=op.human_readable_state,
            seq_id=op.seq_id,
        )


@router.get("/operations/{operation_id}", response_model=OperationOut)
async def show_operation(operation_id: str, db: AsyncSession = Depends(get_db)) -> OperationOut:
    op = await operation_service.get_operation(db, operation_id)
    return OperationOut.from_row(op)


@router.get("/operations", response_model=list[OperationOut])
async def list_operations(
    resource_type: ResourceType = Query(...),
    resource_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> list[OperationOut]:
    target = operation_service.OperationTarget.of(resource_type, resource_id)
    ops = await operation_service.list_operations_for_resource(db, target)
    return [OperationOut.from_row(op) for op in ops]
