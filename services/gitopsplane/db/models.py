"""
SQLAlchemy database models for gitopsplane.

All models use:
- Caller-supplied string UIDs as primary keys (generated upstream, never here)
- seq_id on every row, bumped on each write, used for change ordering and
  compare-and-swap guards
- TIMESTAMPTZ with UTC for all timestamps
- Plain foreign keys with no ON DELETE action: deleting a referenced row
  fails, referential cleanup is the caller's job
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

UID_LENGTH = 48
HUMAN_READABLE_STATE_MAX = 1024


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on the way out; PostgreSQL returns the session zone.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime not allowed: {value!r}")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    seq_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=1)


# --- Credentials and Topology ---


class CredentialMode(StrEnum):
    """Which authentication representation a ClusterCredentials row holds."""

    KUBECONFIG = "kubeconfig"
    SERVICE_ACCOUNT = "service_account"


@dataclass(frozen=True)
class KubeconfigCredentials:
    """Kubeconfig state: what the user supplies before the cluster agent converts it."""

    host: str
    kube_config: str
    kube_config_context: str


@dataclass(frozen=True)
class ServiceAccountCredentials:
    """Service-account state: bearer token for a ServiceAccount on the target cluster."""

    host: str
    bearer_token: str
    namespace: str


class ClusterCredentials(Base):
    """Credentials required to access a Kubernetes cluster.

    A row is in exactly one of two states, told apart by whether
    serviceaccount_bearer_token is set:

    1) Kubeconfig state: kube_config plus the name of a context within it.
    2) ServiceAccount state: a bearer token and the ServiceAccount's namespace.

    The cluster agent converts state 1 into state 2 at most once (the same
    exchange as `argocd cluster add`); the reverse never happens.
    """

    __tablename__ = "clustercredentials"

    clustercredentials_cred_id: Mapped[str] = mapped_column(
        String(UID_LENGTH), primary_key=True
    )
    # e.g. https://api.cluster.example.com:6443
    host: Mapped[str] = mapped_column(Text, nullable=False, default="")
    kube_config: Mapped[str] = mapped_column(Text, nullable=False, default="")
    kube_config_context: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    serviceaccount_bearer_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    serviceaccount_ns: Mapped[str] = mapped_column(String(256), nullable=False, default="")

    @property
    def mode(self) -> CredentialMode:
        if self.serviceaccount_bearer_token:
            return CredentialMode.SERVICE_ACCOUNT
        return CredentialMode.KUBECONFIG

    def as_variant(self) -> KubeconfigCredentials | ServiceAccountCredentials:
        """Return only the fields that are meaningful for the current mode."""
        if self.mode is CredentialMode.SERVICE_ACCOUNT:
            return ServiceAccountCredentials(
                host=self.host,
                bearer_token=self.serviceaccount_bearer_token,
                namespace=self.serviceaccount_ns,
            )
        return KubeconfigCredentials(
            host=self.host,
            kube_config=self.kube_config,
            kube_config_context=self.kube_config_context,
        )


class GitopsEngineCluster(Base):
    """A cluster that hosts one or more Argo CD instances."""

    __tablename__ = "gitopsenginecluster"

    gitopsenginecluster_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    clustercredentials_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("clustercredentials.clustercredentials_cred_id"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_gitopsenginecluster_clustercredentials_id", "clustercredentials_id"),
    )


class GitopsEngineInstance(Base):
    """An Argo CD instance, living in one namespace of a GitopsEngineCluster."""

    __tablename__ = "gitopsengineinstance"

    gitopsengineinstance_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    namespace_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    namespace_uid: Mapped[str] = mapped_column(String(UID_LENGTH), nullable=False, default="")
    enginecluster_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("gitopsenginecluster.gitopsenginecluster_id"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_gitopsengineinstance_enginecluster_id", "enginecluster_id"),
    )


class ManagedEnvironment(Base):
    """Namespace(s) on a user's cluster that they want to deploy to."""

    __tablename__ = "managedenvironment"

    managedenvironment_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    clustercredentials_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("clustercredentials.clustercredentials_cred_id"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_managedenvironment_clustercredentials_id", "clustercredentials_id"),
    )


class ClusterUser(Base):
    """An individual user/customer. Placeholder identity: UID and display name."""

    __tablename__ = "clusteruser"

    clusteruser_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    user_name: Mapped[str] = mapped_column(String(256), nullable=False)


class ClusterAccess(Base):
    """Grant of a user's access to a managed environment, through one Argo CD instance.

    The (user, environment, instance) triple is the primary key.
    """

    __tablename__ = "clusteraccess"

    clusteraccess_user_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("clusteruser.clusteruser_id"),
        primary_key=True,
    )
    clusteraccess_managed_environment_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("managedenvironment.managedenvironment_id"),
        primary_key=True,
    )
    clusteraccess_gitops_engine_instance_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
        primary_key=True,
    )

    __table_args__ = (
        Index("ix_clusteraccess_managed_environment_id", "clusteraccess_managed_environment_id"),
        Index(
            "ix_clusteraccess_gitops_engine_instance_id",
            "clusteraccess_gitops_engine_instance_id",
        ),
    )


# --- Applications ---


class HealthStatus(StrEnum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


class SyncStatus(StrEnum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"


class Application(Base):
    """An Argo CD Application, targeting a managed environment."""

    __tablename__ = "application"

    application_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    # Name of the Application CR within the Argo CD namespace
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    # '.spec' of the Application CR, stored whole rather than decomposed into columns
    spec_field: Mapped[str] = mapped_column(Text, nullable=False, default="")
    engine_instance_inst_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
        nullable=False,
    )
    managed_environment_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("managedenvironment.managedenvironment_id"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_application_engine_instance_inst_id", "engine_instance_inst_id"),
        Index("ix_application_managed_environment_id", "managed_environment_id"),
    )


class ApplicationState(Base):
    """Observed health and sync status of an Application. Written only by observation."""

    __tablename__ = "applicationstate"

    applicationstate_application_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("application.application_id"),
        primary_key=True,
    )
    health: Mapped[str] = mapped_column(String(30), nullable=False)
    sync_status: Mapped[str] = mapped_column(String(30), nullable=False)


# --- Operations ---


class OperationState(StrEnum):
    WAITING = "Waiting"
    IN_PROGRESS = "In_Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ResourceType(StrEnum):
    """Which table an Operation's resource_id points into."""

    # Argo CD should C/R/U/D a user's cluster credentials
    MANAGED_ENVIRONMENT = "ManagedEnvironment"
    # e.g. create a namespace, install Argo CD into it, signal when done
    GITOPS_ENGINE_INSTANCE = "GitopsEngineInstance"
    APPLICATION = "Application"


class Operation(Base):
    """A unit of asynchronous work against another entity.

    State machine: Waiting → In_Progress → Completed | Failed. Operations are
    short lived bookkeeping; terminal rows are garbage collected.
    """

    __tablename__ = "operation"

    operation_id: Mapped[str] = mapped_column(String(UID_LENGTH), primary_key=True)
    instance_id: Mapped[str | None] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("gitopsengineinstance.gitopsengineinstance_id"),
        nullable=True,
    )
    resource_id: Mapped[str] = mapped_column(String(UID_LENGTH), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    operation_owner_user_id: Mapped[str] = mapped_column(
        String(UID_LENGTH),
        ForeignKey("clusteruser.clusteruser_id"),
        nullable=False,
    )
    created_on: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    last_state_update: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, nullable=False
    )
    state: Mapped[str] = mapped_column(String(30), nullable=False, default=OperationState.WAITING)
    human_readable_state: Mapped[str] = mapped_column(
        String(HUMAN_READABLE_STATE_MAX), nullable=False, default=""
    )

    __table_args__ = (
        Index("ix_operation_state_last_state_update", "state", "last_state_update"),
        Index("ix_operation_resource", "resource_type", "resource_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in (OperationState.COMPLETED, OperationState.FAILED)
