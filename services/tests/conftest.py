"""
Top-level test configuration for gitopsplane.

Every test gets its own SQLite file database (aiosqlite), so no Postgres
instance is required.
"""

import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass

# Ensure test-friendly defaults
os.environ.setdefault("GITOPSPLANE_JSON_LOGS", "false")
os.environ.setdefault("GITOPSPLANE_LOG_LEVEL", "DEBUG")

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from gitopsplane.db.models import (  # noqa: E402
    ClusterUser,
    GitopsEngineCluster,
    GitopsEngineInstance,
    KubeconfigCredentials,
    ManagedEnvironment,
)
from gitopsplane.db.repositories import (  # noqa: E402
    ClusterUserRepository,
    GitopsEngineClusterRepository,
    GitopsEngineInstanceRepository,
    ManagedEnvironmentRepository,
)
from gitopsplane.db.session import Database  # noqa: E402
from gitopsplane.services import topology_service  # noqa: E402


@dataclass(frozen=True)
class Topology:
    """Ids of a minimal, fully-linked topology."""

    engine_credentials_id: str = "creds-engine"
    env_credentials_id: str = "creds-env"
    engine_cluster_id: str = "engine-cluster-1"
    engine_instance_id: str = "engine-instance-1"
    managed_environment_id: str = "env-1"
    user_id: str = "user-1"


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[Database]:
    """A Database backed by a fresh SQLite file with all tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'gitopsplane.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def db(database: Database) -> AsyncGenerator[AsyncSession]:
    """A bare session; tests commit explicitly when other sessions must see their writes."""
    async with database.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def topology(db: AsyncSession) -> Topology:
    """Credentials, an engine cluster + instance, a managed environment and a user."""
    t = Topology()
    for cred_id in (t.engine_credentials_id, t.env_credentials_id):
        await topology_service.create_cluster_credentials(
            db,
            cred_id,
            KubeconfigCredentials(
                host="https://api.example.com:6443",
                kube_config="apiVersion: v1\nkind: Config\n",
                kube_config_context="admin",
            ),
        )
    await GitopsEngineClusterRepository.create(
        db,
        GitopsEngineCluster(
            gitopsenginecluster_id=t.engine_cluster_id,
            clustercredentials_id=t.engine_credentials_id,
        ),
    )
    await GitopsEngineInstanceRepository.create(
        db,
        GitopsEngineInstance(
            gitopsengineinstance_id=t.engine_instance_id,
            namespace_name="argocd",
            namespace_uid="ns-uid-1",
            enginecluster_id=t.engine_cluster_id,
        ),
    )
    await ManagedEnvironmentRepository.create(
        db,
        ManagedEnvironment(
            managedenvironment_id=t.managed_environment_id,
            name="staging",
            clustercredentials_id=t.env_credentials_id,
        ),
    )
    await ClusterUserRepository.create(
        db, ClusterUser(clusteruser_id=t.user_id, user_name="jane")
    )
    await db.commit()
    return t
