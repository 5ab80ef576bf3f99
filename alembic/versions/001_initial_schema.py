"""Initial schema: credentials, engine topology, applications and operations.

Adds tables:
- clustercredentials: kubeconfig or service-account credentials for a cluster
- gitopsenginecluster / gitopsengineinstance: where Argo CD runs
- managedenvironment: deployment targets on user clusters
- clusteruser / clusteraccess: identities and access grants
- application / applicationstate: deployed apps and their observed status
- operation: asynchronous work items and their lifecycle state

No foreign key cascades: deleting a referenced row fails.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _seq_id() -> sa.Column:
    return sa.Column("seq_id", sa.BigInteger(), nullable=False, server_default="1")


def upgrade() -> None:
    op.create_table(
        "clustercredentials",
        sa.Column("clustercredentials_cred_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column("host", sa.Text(), nullable=False, server_default=""),
        sa.Column("kube_config", sa.Text(), nullable=False, server_default=""),
        sa.Column("kube_config_context", sa.String(256), nullable=False, server_default=""),
        sa.Column("serviceaccount_bearer_token", sa.Text(), nullable=False, server_default=""),
        sa.Column("serviceaccount_ns", sa.String(256), nullable=False, server_default=""),
    )

    op.create_table(
        "gitopsenginecluster",
        sa.Column("gitopsenginecluster_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column(
            "clustercredentials_id",
            sa.String(48),
            sa.ForeignKey("clustercredentials.clustercredentials_cred_id"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_gitopsenginecluster_clustercredentials_id",
        "gitopsenginecluster",
        ["clustercredentials_id"],
    )

    op.create_table(
        "gitopsengineinstance",
        sa.Column("gitopsengineinstance_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column("namespace_name", sa.String(256), nullable=False, server_default=""),
        sa.Column("namespace_uid", sa.String(48), nullable=False, server_default=""),
        sa.Column(
            "enginecluster_id",
            sa.String(48),
            sa.ForeignKey("gitopsenginecluster.gitopsenginecluster_id"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_gitopsengineinstance_enginecluster_id",
        "gitopsengineinstance",
        ["enginecluster_id"],
    )

    op.create_table(
        "managedenvironment",
        sa.Column("managedenvironment_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column(
            "clustercredentials_id",
            sa.String(48),
            sa.ForeignKey("clustercredentials.clustercredentials_cred_id"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_managedenvironment_clustercredentials_id",
        "managedenvironment",
        ["clustercredentials_id"],
    )

    op.create_table(
        "clusteruser",
        sa.Column("clusteruser_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column("user_name", sa.String(256), nullable=False),
    )

    op.create_table(
        "clusteraccess",
        sa.Column(
            "clusteraccess_user_id",
            sa.String(48),
            sa.ForeignKey("clusteruser.clusteruser_id"),
            primary_key=True,
        ),
        sa.Column(
            "clusteraccess_managed_environment_id",
            sa.String(48),
            sa.ForeignKey("managedenvironment.managedenvironment_id"),
            primary_key=True,
        ),
        sa.Column(
            "clusteraccess_gitops_engine_instance_id",
            sa.String(48),
            sa.ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
            primary_key=True,
        ),
        _seq_id(),
    )
    op.create_index(
        "ix_clusteraccess_managed_environment_id",
        "clusteraccess",
        ["clusteraccess_managed_environment_id"],
    )
    op.create_index(
        "ix_clusteraccess_gitops_engine_instance_id",
        "clusteraccess",
        ["clusteraccess_gitops_engine_instance_id"],
    )

    op.create_table(
        "application",
        sa.Column("application_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("spec_field", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "engine_instance_inst_id",
            sa.String(48),
            sa.ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
            nullable=False,
        ),
        sa.Column(
            "managed_environment_id",
            sa.String(48),
            sa.ForeignKey("managedenvironment.managedenvironment_id"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_application_engine_instance_inst_id", "application", ["engine_instance_inst_id"]
    )
    op.create_index(
        "ix_application_managed_environment_id", "application", ["managed_environment_id"]
    )

    op.create_table(
        "applicationstate",
        sa.Column(
            "applicationstate_application_id",
            sa.String(48),
            sa.ForeignKey("application.application_id"),
            primary_key=True,
        ),
        _seq_id(),
        sa.Column("health", sa.String(30), nullable=False),
        sa.Column("sync_status", sa.String(30), nullable=False),
    )

    op.create_table(
        "operation",
        sa.Column("operation_id", sa.String(48), primary_key=True),
        _seq_id(),
        sa.Column(
            "instance_id",
            sa.String(48),
            sa.ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
            nullable=True,
        ),
        sa.Column("resource_id", sa.String(48), nullable=False),
        sa.Column("resource_type", sa.String(64), nullable=False),
        sa.Column(
            "operation_owner_user_id",
            sa.String(48),
            sa.ForeignKey("clusteruser.clusteruser_id"),
            nullable=False,
        ),
        sa.Column(
            "created_on",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "last_state_update",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("state", sa.String(30), nullable=False, server_default="Waiting"),
        sa.Column("human_readable_state", sa.String(1024), nullable=False, server_default=""),
    )
    op.create_index(
        "ix_operation_state_last_state_update", "operation", ["state", "last_state_update"]
    )
    op.create_index("ix_operation_resource", "operation", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_table("operation")
    op.drop_table("applicationstate")
    op.drop_table("application")
    op.drop_table("clusteraccess")
    op.drop_table("clusteruser")
    op.drop_table("managedenvironment")
    op.drop_table("gitopsengineinstance")
    op.drop_table("gitopsenginecluster")
    op.drop_table("clustercredentials")
