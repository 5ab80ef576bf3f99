"""Tests for the per-entity repositories against a SQLite database."""

import pytest

from gitopsplane.db.models import (
    Application,
    ClusterAccess,
    ClusterUser,
    GitopsEngineCluster,
    GitopsEngineInstance,
    ManagedEnvironment,
)
from gitopsplane.db.repositories import (
    ApplicationRepository,
    ClusterAccessRepository,
    ClusterCredentialsRepository,
    ClusterUserRepository,
    GitopsEngineClusterRepository,
    GitopsEngineInstanceRepository,
    ManagedEnvironmentRepository,
)
from gitopsplane.errors import ConstraintViolationError, NotFoundError


class TestRoundTrip:
    async def test_engine_instance_round_trip(self, database, db, topology):
        async with database.session_factory() as other:
            row = await GitopsEngineInstanceRepository.get(other, topology.engine_instance_id)

        assert row.gitopsengineinstance_id == topology.engine_instance_id
        assert row.namespace_name == "argocd"
        assert row.namespace_uid == "ns-uid-1"
        assert row.enginecluster_id == topology.engine_cluster_id
        assert row.seq_id == 1

    async def test_application_round_trip_keeps_spec_verbatim(self, database, db, topology):
        spec = '{"source": {"repoURL": "https://github.com/org/repo", "path": "."}}'
        await ApplicationRepository.create(
            db,
            Application(
                application_id="app-1",
                name="guestbook",
                spec_field=spec,
                engine_instance_inst_id=topology.engine_instance_id,
                managed_environment_id=topology.managed_environment_id,
            ),
        )
        await db.commit()

        async with database.session_factory() as other:
            app = await ApplicationRepository.get(other, "app-1")

        assert app.name == "guestbook"
        assert app.spec_field == spec
        assert app.engine_instance_inst_id == topology.engine_instance_id
        assert app.managed_environment_id == topology.managed_environment_id

    async def test_cluster_access_composite_key_lookup(self, db, topology):
        await ClusterAccessRepository.create(
            db,
            ClusterAccess(
                clusteraccess_user_id=topology.user_id,
                clusteraccess_managed_environment_id=topology.managed_environment_id,
                clusteraccess_gitops_engine_instance_id=topology.engine_instance_id,
            ),
        )
        row = await ClusterAccessRepository.get(
            db, topology.user_id, topology.managed_environment_id, topology.engine_instance_id
        )
        assert row.clusteraccess_user_id == topology.user_id


class TestNotFound:
    async def test_get_missing_raises(self, db):
        with pytest.raises(NotFoundError) as exc_info:
            await ClusterUserRepository.get(db, "nobody")
        assert exc_info.value.entity == "ClusterUser"
        assert exc_info.value.key == "nobody"

    async def test_find_missing_returns_none(self, db):
        assert await ClusterUserRepository.find(db, "nobody") is None

    async def test_update_missing_raises(self, db):
        with pytest.raises(NotFoundError):
            await ClusterUserRepository.update(db, "nobody", user_name="x")

    async def test_delete_missing_raises(self, db):
        with pytest.raises(NotFoundError):
            await ClusterUserRepository.delete(db, "nobody")


class TestConstraints:
    async def test_duplicate_primary_key(self, db, topology):
        with pytest.raises(ConstraintViolationError):
            await ClusterUserRepository.create(
                db, ClusterUser(clusteruser_id=topology.user_id, user_name="again")
            )

    async def test_missing_primary_key(self, db):
        with pytest.raises(ConstraintViolationError):
            await ClusterUserRepository.create(db, ClusterUser(clusteruser_id="", user_name="x"))

    async def test_dangling_foreign_key_rejected(self, db):
        with pytest.raises(ConstraintViolationError):
            await GitopsEngineClusterRepository.create(
                db,
                GitopsEngineCluster(
                    gitopsenginecluster_id="cluster-x",
                    clustercredentials_id="no-such-credentials",
                ),
            )
        await db.rollback()

    async def test_delete_referenced_row_rejected(self, db, topology):
        # The engine cluster still has an instance: no cascade, the delete fails
        with pytest.raises(ConstraintViolationError):
            await GitopsEngineClusterRepository.delete(db, topology.engine_cluster_id)
        await db.rollback()

        assert await GitopsEngineClusterRepository.find(db, topology.engine_cluster_id)
        assert await GitopsEngineInstanceRepository.find(db, topology.engine_instance_id)

    async def test_delete_after_caller_cleanup(self, db, topology):
        await GitopsEngineInstanceRepository.delete(db, topology.engine_instance_id)
        await GitopsEngineClusterRepository.delete(db, topology.engine_cluster_id)
        await db.commit()

        assert await GitopsEngineClusterRepository.find(db, topology.engine_cluster_id) is None


class TestUpdate:
    async def test_update_in_place_bumps_seq_id(self, database, db, topology):
        row = await ManagedEnvironmentRepository.update(
            db, topology.managed_environment_id, name="production"
        )
        assert row.seq_id == 2
        await db.commit()

        async with database.session_factory() as other:
            fresh = await ManagedEnvironmentRepository.get(other, topology.managed_environment_id)
        assert fresh.name == "production"
        assert fresh.seq_id == 2

    async def test_primary_key_is_immutable(self, db, topology):
        with pytest.raises(ValueError, match="cannot be updated"):
            await ClusterUserRepository.update(db, topology.user_id, clusteruser_id="other")

    async def test_unknown_column_rejected(self, db, topology):
        with pytest.raises(ValueError, match="no column"):
            await ClusterUserRepository.update(db, topology.user_id, email="x@example.com")


class TestListByForeignKey:
    async def test_instances_by_engine_cluster(self, db, topology):
        await GitopsEngineInstanceRepository.create(
            db,
            GitopsEngineInstance(
                gitopsengineinstance_id="engine-instance-2",
                namespace_name="argocd-2",
                enginecluster_id=topology.engine_cluster_id,
            ),
        )

        rows = await GitopsEngineInstanceRepository.list_by_engine_cluster(
            db, topology.engine_cluster_id
        )
        assert [r.gitopsengineinstance_id for r in rows] == [
            "engine-instance-1",
            "engine-instance-2",
        ]
        assert await GitopsEngineInstanceRepository.list_by_engine_cluster(db, "other") == []

    async def test_credentials_shared_by_reference(self, db, topology):
        await ManagedEnvironmentRepository.create(
            db,
            ManagedEnvironment(
                managedenvironment_id="env-2",
                name="dev",
                clustercredentials_id=topology.env_credentials_id,
            ),
        )

        envs = await ManagedEnvironmentRepository.list_by_credentials(
            db, topology.env_credentials_id
        )
        clusters = await GitopsEngineClusterRepository.list_by_credentials(
            db, topology.engine_credentials_id
        )
        assert {e.managedenvironment_id for e in envs} == {"env-1", "env-2"}
        assert [c.gitopsenginecluster_id for c in clusters] == [topology.engine_cluster_id]

    async def test_list_all_credentials(self, db, topology):
        rows = await ClusterCredentialsRepository.list_all(db)
        assert [r.clustercredentials_cred_id for r in rows] == ["creds-engine", "creds-env"]
