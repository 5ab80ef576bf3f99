"""Cluster credentials, engine topology and access-grant management service."""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from gitopsplane.db.models import (
    ClusterAccess,
    ClusterCredentials,
    CredentialMode,
    KubeconfigCredentials,
    ServiceAccountCredentials,
)
from gitopsplane.db.repositories import (
    ClusterAccessRepository,
    ClusterCredentialsRepository,
)
from gitopsplane.db.session import translate_db_errors
from gitopsplane.errors import ConstraintViolationError, InvalidTransitionError, NotFoundError
from gitopsplane.logging_config import get_logger

logger = get_logger(__name__)


# --- Cluster Credentials ---


async def create_cluster_credentials(
    db: AsyncSession,
    credentials_id: str,
    credentials: KubeconfigCredentials | ServiceAccountCredentials,
) -> ClusterCredentials:
    """Store credentials in whichever mode the caller has them in."""
    if isinstance(credentials, ServiceAccountCredentials):
        if not credentials.bearer_token:
            raise ConstraintViolationError("service-account credentials require a bearer token")
        row = ClusterCredentials(
            clustercredentials_cred_id=credentials_id,
            host=credentials.host,
            serviceaccount_bearer_token=credentials.bearer_token,
            serviceaccount_ns=credentials.namespace,
        )
    else:
        if not credentials.kube_config:
            raise ConstraintViolationError("kubeconfig credentials require a kube_config")
        row = ClusterCredentials(
            clustercredentials_cred_id=credentials_id,
            host=credentials.host,
            kube_config=credentials.kube_config,
            kube_config_context=credentials.kube_config_context,
        )

    row = await ClusterCredentialsRepository.create(db, row)
    logger.info(
        "Cluster credentials created",
        credentials_id=credentials_id,
        host=row.host,
        mode=row.mode.value,
    )
    return row


@translate_db_errors
async def _swap_to_service_account(
    db: AsyncSession, credentials_id: str, bearer_token: str, namespace: str
) -> bool:
    """Replace kubeconfig fields with a token iff the row holds no token yet."""
    result = await db.execute(
        update(ClusterCredentials)
        .where(
            ClusterCredentials.clustercredentials_cred_id == credentials_id,
            ClusterCredentials.serviceaccount_bearer_token == "",
        )
        .values(
            kube_config="",
            kube_config_context="",
            serviceaccount_bearer_token=bearer_token,
            serviceaccount_ns=namespace,
            seq_id=ClusterCredentials.seq_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def promote_to_service_account(
    db: AsyncSession,
    credentials_id: str,
    bearer_token: str,
    namespace: str,
) -> ClusterCredentials:
    """Record the result of converting kubeconfig credentials into a ServiceAccount token.

    The conversion itself happens on the target cluster, outside this package.
    Kubeconfig fields are cleared so the row holds exactly one form.
    """
    if not bearer_token:
        raise ConstraintViolationError("service-account credentials require a bearer token")

    row = await ClusterCredentialsRepository.get(db, credentials_id)
    if row.mode is CredentialMode.SERVICE_ACCOUNT:
        raise InvalidTransitionError(
            "ClusterCredentials",
            credentials_id,
            CredentialMode.SERVICE_ACCOUNT.value,
            CredentialMode.SERVICE_ACCOUNT.value,
        )

    if not await _swap_to_service_account(db, credentials_id, bearer_token, namespace):
        current = await ClusterCredentialsRepository.find(db, credentials_id)
        if current is None:
            raise NotFoundError("ClusterCredentials", credentials_id)
        # Another caller promoted the row between our read and our write
        raise InvalidTransitionError(
            "ClusterCredentials",
            credentials_id,
            current.mode.value,
            CredentialMode.SERVICE_ACCOUNT.value,
        )

    row = await ClusterCredentialsRepository.get(db, credentials_id)
    logger.info(
        "Cluster credentials promoted to service account",
        credentials_id=credentials_id,
        namespace=namespace,
    )
    return row


# --- Cluster Access ---


async def grant_cluster_access(
    db: AsyncSession,
    user_id: str,
    managed_environment_id: str,
    gitops_engine_instance_id: str,
) -> ClusterAccess:
    """Grant a user access to a managed environment through one engine instance.

    A second grant for the same triple fails with ConstraintViolationError.
    """
    access = await ClusterAccessRepository.create(
        db,
        ClusterAccess(
            clusteraccess_user_id=user_id,
            clusteraccess_managed_environment_id=managed_environment_id,
            clusteraccess_gitops_engine_instance_id=gitops_engine_instance_id,
        ),
    )
    logger.info(
        "Cluster access granted",
        user_id=user_id,
        managed_environment_id=managed_environment_id,
        gitops_engine_instance_id=gitops_engine_instance_id,
    )
    return access


async def revoke_cluster_access(
    db: AsyncSession,
    user_id: str,
    managed_environment_id: str,
    gitops_engine_instance_id: str,
) -> None:
    """Remove an access grant."""
    await ClusterAccessRepository.delete(
        db, user_id, managed_environment_id, gitops_engine_instance_id
    )
    logger.info(
        "Cluster access revoked",
        user_id=user_id,
        managed_environment_id=managed_environment_id,
        gitops_engine_instance_id=gitops_engine_instance_id,
    )


async def has_cluster_access(
    db: AsyncSession,
    user_id: str,
    managed_environment_id: str,
    gitops_engine_instance_id: str,
) -> bool:
    """Check whether the exact (user, environment, instance) grant exists."""
    grant = await ClusterAccessRepository.find(
        db, user_id, managed_environment_id, gitops_engine_instance_id
    )
    return grant is not None
