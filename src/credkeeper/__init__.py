"""credkeeper: lifecycle store for OAuth credentials keyed by (email, project_id)."""

from credkeeper.credential_store import CredentialRecordStore, CredentialRepository
from credkeeper.errors import (
    CredentialError,
    IncompatibleSchema,
    NotFound,
    OAuthClientMisconfigured,
    RequiresReauthorization,
    StorageUnavailable,
    TransientAuthFailure,
)
from credkeeper.models import CredentialRecord, CredentialStatus, Identity, TokenGrant
from credkeeper.refresh import TokenRefreshCoordinator, TokenState

__all__ = [
    "CredentialError",
    "CredentialRecord",
    "CredentialRecordStore",
    "CredentialRepository",
    "CredentialStatus",
    "Identity",
    "IncompatibleSchema",
    "NotFound",
    "OAuthClientMisconfigured",
    "RequiresReauthorization",
    "StorageUnavailable",
    "TokenGrant",
    "TokenRefreshCoordinator",
    "TokenState",
    "TransientAuthFailure",
]
