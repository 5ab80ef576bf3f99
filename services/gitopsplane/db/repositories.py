"""
Repository classes for every persisted entity.

Each repository is stateless and operates on an ``AsyncSession`` passed by
the caller, so transaction boundaries stay with the caller. Primary keys are
always supplied by the caller. Lookups of a missing key raise
``NotFoundError``; uniqueness and foreign-key breaches raise
``ConstraintViolationError``. After a ``ConstraintViolationError`` the
session must be rolled back before reuse.
"""

from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from gitopsplane.db.models import (
    Application,
    ApplicationState,
    Base,
    ClusterAccess,
    ClusterCredentials,
    ClusterUser,
    GitopsEngineCluster,
    GitopsEngineInstance,
    ManagedEnvironment,
    Operation,
)
from gitopsplane.db.session import translate_db_errors
from gitopsplane.errors import ConstraintViolationError, NotFoundError

ModelT = TypeVar("ModelT", bound=Base)


class EntityRepository(Generic[ModelT]):
    """Create/get/update/delete keyed by primary key, plus list-by-column."""

    model: ClassVar[type[Base]]

    @classmethod
    def entity_name(cls) -> str:
        return cls.model.__name__

    @classmethod
    def primary_key_names(cls) -> list[str]:
        return [col.key for col in inspect(cls.model).primary_key]

    @classmethod
    def key_of(cls, row: ModelT) -> tuple[str, ...]:
        return tuple(getattr(row, name) for name in cls.primary_key_names())

    @classmethod
    @translate_db_errors
    async def create(cls, db: AsyncSession, row: ModelT) -> ModelT:
        """Insert a new row. The caller must have set every primary-key column."""
        key = cls.key_of(row)
        if not all(key):
            raise ConstraintViolationError(
                f"{cls.entity_name()} requires a caller-supplied primary key, got {key}"
            )
        if await db.get(cls.model, key) is not None:
            raise ConstraintViolationError(f"{cls.entity_name()} already exists: {key}")

        row.seq_id = 1
        db.add(row)
        await db.flush()
        return row

    @classmethod
    @translate_db_errors
    async def find(cls, db: AsyncSession, *key: str) -> ModelT | None:
        """Get a row by primary key, or None. Always re-reads the database."""
        return await db.get(cls.model, key, populate_existing=True)  # type: ignore[return-value]

    @classmethod
    async def get(cls, db: AsyncSession, *key: str) -> ModelT:
        """Get a row by primary key."""
        row = await cls.find(db, *key)
        if row is None:
            raise NotFoundError(cls.entity_name(), key if len(key) > 1 else key[0])
        return row

    @classmethod
    @translate_db_errors
    async def update(cls, db: AsyncSession, *key: str, **fields: Any) -> ModelT:
        """Update columns of an existing row in place and bump its seq_id."""
        row = await cls.get(db, *key)
        pk_names = set(cls.primary_key_names())
        for name, value in fields.items():
            if name in pk_names or name == "seq_id":
                raise ValueError(f"{cls.entity_name()}.{name} cannot be updated")
            if not isinstance(getattr(cls.model, name, None), InstrumentedAttribute):
                raise ValueError(f"{cls.entity_name()} has no column {name!r}")
            setattr(row, name, value)
        row.seq_id += 1
        await db.flush()
        return row

    @classmethod
    @translate_db_errors
    async def delete(cls, db: AsyncSession, *key: str) -> None:
        """Delete a row. Fails with ConstraintViolationError while other rows reference it."""
        row = await cls.get(db, *key)
        await db.delete(row)
        await db.flush()

    @classmethod
    @translate_db_errors
    async def list_all(cls, db: AsyncSession) -> list[ModelT]:
        result = await db.execute(select(cls.model).order_by(*inspect(cls.model).primary_key))
        return list(result.scalars().all())

    @classmethod
    @translate_db_errors
    async def _list_by(
        cls, db: AsyncSession, column: InstrumentedAttribute, value: str
    ) -> list[ModelT]:
        result = await db.execute(
            select(cls.model).where(column == value).order_by(*inspect(cls.model).primary_key)
        )
        return list(result.scalars().all())


# --- Credentials and Topology ---


class ClusterCredentialsRepository(EntityRepository[ClusterCredentials]):
    model = ClusterCredentials


class GitopsEngineClusterRepository(EntityRepository[GitopsEngineCluster]):
    model = GitopsEngineCluster

    @classmethod
    async def list_by_credentials(
        cls, db: AsyncSession, clustercredentials_id: str
    ) -> list[GitopsEngineCluster]:
        return await cls._list_by(
            db, GitopsEngineCluster.clustercredentials_id, clustercredentials_id
        )


class GitopsEngineInstanceRepository(EntityRepository[GitopsEngineInstance]):
    model = GitopsEngineInstance

    @classmethod
    async def list_by_engine_cluster(
        cls, db: AsyncSession, enginecluster_id: str
    ) -> list[GitopsEngineInstance]:
        return await cls._list_by(db, GitopsEngineInstance.enginecluster_id, enginecluster_id)


class ManagedEnvironmentRepository(EntityRepository[ManagedEnvironment]):
    model = ManagedEnvironment

    @classmethod
    async def list_by_credentials(
        cls, db: AsyncSession, clustercredentials_id: str
    ) -> list[ManagedEnvironment]:
        return await cls._list_by(
            db, ManagedEnvironment.clustercredentials_id, clustercredentials_id
        )


class ClusterUserRepository(EntityRepository[ClusterUser]):
    model = ClusterUser


class ClusterAccessRepository(EntityRepository[ClusterAccess]):
    model = ClusterAccess

    @classmethod
    async def list_by_user(cls, db: AsyncSession, user_id: str) -> list[ClusterAccess]:
        return await cls._list_by(db, ClusterAccess.clusteraccess_user_id, user_id)

    @classmethod
    async def list_by_managed_environment(
        cls, db: AsyncSession, managed_environment_id: str
    ) -> list[ClusterAccess]:
        return await cls._list_by(
            db, ClusterAccess.clusteraccess_managed_environment_id, managed_environment_id
        )

    @classmethod
    async def list_by_engine_instance(
        cls, db: AsyncSession, gitops_engine_instance_id: str
    ) -> list[ClusterAccess]:
        return await cls._list_by(
            db, ClusterAccess.clusteraccess_gitops_engine_instance_id, gitops_engine_instance_id
        )


# --- Applications ---


class ApplicationRepository(EntityRepository[Application]):
    model = Application

    @classmethod
    async def list_by_engine_instance(
        cls, db: AsyncSession, engine_instance_inst_id: str
    ) -> list[Application]:
        return await cls._list_by(db, Application.engine_instance_inst_id, engine_instance_inst_id)

    @classmethod
    async def list_by_managed_environment(
        cls, db: AsyncSession, managed_environment_id: str
    ) -> list[Application]:
        return await cls._list_by(db, Application.managed_environment_id, managed_environment_id)


class ApplicationStateRepository(EntityRepository[ApplicationState]):
    model = ApplicationState


# --- Operations ---


class OperationRepository(EntityRepository[Operation]):
    """Plain row access for operations.

    State changes go through gitopsplane.services.operation_service, never
    through update().
    """

    model = Operation

    @classmethod
    async def list_by_engine_instance(cls, db: AsyncSession, instance_id: str) -> list[Operation]:
        return await cls._list_by(db, Operation.instance_id, instance_id)

    @classmethod
    async def list_by_owner(cls, db: AsyncSession, user_id: str) -> list[Operation]:
        return await cls._list_by(db, Operation.operation_owner_user_id, user_id)
