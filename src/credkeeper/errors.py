"""Error taxonomy for the credential lifecycle store.

Every error message is safe to log: identities (email, project_id) may
appear, token material never does.

- :class:`NotFound`: unknown identity; the caller decides what to do.
- :class:`IncompatibleSchema`: fatal at startup, needs operator action.
- :class:`StorageUnavailable`: the database could not be reached or written.
- :class:`TransientAuthFailure`: retryable; stored state was not touched.
- :class:`RequiresReauthorization`: terminal for the identity until it is
  re-authorized externally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from credkeeper.models import CredentialStatus


class CredentialError(Exception):
    """Base class for credential store errors."""


class ConfigError(CredentialError):
    """Raised when environment configuration is missing or malformed."""


class NotFound(CredentialError):
    """Raised when no credential record exists for an identity."""

    def __init__(self, email: str | None, project_id: str) -> None:
        self.email = email
        self.project_id = project_id
        if email is None:
            super().__init__(f"No credential stored for project_id={project_id!r}")
        else:
            super().__init__(
                f"No credential stored for email={email!r} project_id={project_id!r}"
            )


class IncompatibleSchema(CredentialError):
    """Raised when the persisted ``credentials`` table has an unsupported shape.

    The store never migrates this table automatically. ``remediation``
    carries the operator instructions.
    """

    def __init__(
        self,
        message: str,
        *,
        found_columns: frozenset[str],
        legacy_columns: frozenset[str],
        remediation: str,
    ) -> None:
        self.found_columns = found_columns
        self.legacy_columns = legacy_columns
        self.remediation = remediation
        super().__init__(message)


class StorageUnavailable(CredentialError):
    """Raised when the persistence layer fails for a single operation."""


class TransientAuthFailure(CredentialError):
    """Raised when a token refresh failed in a way that may succeed later.

    Covers network errors, timeouts, rate limiting, 5xx responses and
    malformed token responses.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class OAuthClientMisconfigured(CredentialError):
    """Raised when the authorization server rejects the configured OAuth client.

    This is process-wide (``invalid_client`` and friends), so no identity's
    stored status is changed.
    """


class GrantRevokedError(CredentialError):
    """Raised by the token client when a refresh token is definitively rejected.

    ``status`` is the credential status the coordinator should persist.
    """

    def __init__(self, message: str, *, status: CredentialStatus, error_code: str) -> None:
        self.status = status
        self.error_code = error_code
        super().__init__(message)


class RequiresReauthorization(CredentialError):
    """Raised when an identity cannot obtain tokens until it is re-authorized."""

    def __init__(self, email: str, project_id: str, status: CredentialStatus) -> None:
        self.email = email
        self.project_id = project_id
        self.status = status
        super().__init__(
            f"Credential for email={email!r} project_id={project_id!r} is {status.value}; "
            "re-run the OAuth authorization for this identity and import it again."
        )
