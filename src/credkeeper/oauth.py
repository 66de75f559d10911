"""Refresh-token exchange against the OAuth authorization server.

Failure classification:

- ``invalid_grant`` (HTTP 400/401): the refresh token is revoked or expired
  → :class:`~credkeeper.errors.GrantRevokedError` with status ``revoked``.
- ``unauthorized_client`` (HTTP 400/401): the refresh token was issued to a
  different OAuth client than the configured one
  → :class:`~credkeeper.errors.GrantRevokedError` with status ``invalid``.
- ``invalid_client`` / ``unsupported_grant_type`` (HTTP 400/401): the
  configured client itself is rejected
  → :class:`~credkeeper.errors.OAuthClientMisconfigured`.
- Everything else (network errors, timeouts, 408, 429, 5xx, other statuses,
  unparseable or incomplete bodies)
  → :class:`~credkeeper.errors.TransientAuthFailure`.

Neither tokens nor the client secret appear in log lines or error messages.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from credkeeper.config import OAuthClientConfig
from credkeeper.errors import GrantRevokedError, OAuthClientMisconfigured, TransientAuthFailure
from credkeeper.models import CredentialStatus, TokenGrant, coerce_expires_in

logger = logging.getLogger(__name__)

_DEFINITIVE_HTTP_STATUSES = frozenset({400, 401})

# OAuth error code -> status persisted for the identity
_GRANT_ERRORS: dict[str, CredentialStatus] = {
    "invalid_grant": CredentialStatus.REVOKED,
    "unauthorized_client": CredentialStatus.INVALID,
}
_CLIENT_ERRORS = frozenset({"invalid_client", "unsupported_grant_type"})


class OAuthTokenClient:
    """Exchanges refresh tokens for access tokens.

    Parameters
    ----------
    config:
        Process-wide OAuth client registration.
    http_client:
        Optional shared ``httpx.AsyncClient``. When omitted, the client
        creates and owns one bounded by ``config.request_timeout_s``.
    clock:
        Returns the current UTC time; used to turn ``expires_in`` into an
        absolute expiry.
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_s)
        )
        self._clock = clock or _utcnow

    @property
    def config(self) -> OAuthClientConfig:
        return self._config

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new access token.

        Raises
        ------
        GrantRevokedError
            The server definitively rejected the refresh token.
        OAuthClientMisconfigured
            The server rejected the configured OAuth client.
        TransientAuthFailure
            Any failure that may succeed on a later attempt.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        if self._config.scope:
            data["scope"] = self._config.scope

        issued_at = self._clock()
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self._config.request_timeout_s,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "OAuth token refresh timed out after %.1fs", self._config.request_timeout_s
            )
            raise TransientAuthFailure("OAuth token refresh timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("OAuth token refresh request failed: %s", exc.__class__.__name__)
            raise TransientAuthFailure(
                f"OAuth token refresh request failed: {exc.__class__.__name__}"
            ) from exc

        if response.is_error:
            raise _classify_error(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientAuthFailure(
                "OAuth token endpoint returned invalid JSON", status_code=response.status_code
            ) from exc

        return _grant_from_payload(payload, issued_at=issued_at, status_code=response.status_code)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self._http_client.aclose()

    def __repr__(self) -> str:
        return f"OAuthTokenClient(config={self._config!r})"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _oauth_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """Return ``(error, error_description)`` from an OAuth error body."""
    try:
        payload = response.json()
    except ValueError:
        return None, None
    if not isinstance(payload, dict):
        return None, None

    # {"error": "invalid_grant", "error_description": "..."}
    error = payload.get("error")
    if isinstance(error, dict):
        # Google API shape: {"error": {"status": "...", "message": "..."}}
        status = error.get("status")
        message = error.get("message")
        return (
            status.lower() if isinstance(status, str) and status else None,
            message if isinstance(message, str) else None,
        )
    description = payload.get("error_description")
    return (
        error if isinstance(error, str) and error else None,
        " ".join(description.split())[:200] if isinstance(description, str) else None,
    )


def _classify_error(response: httpx.Response) -> Exception:
    status_code = response.status_code
    error_code, description = _oauth_error_fields(response)
    logger.warning(
        "OAuth token refresh failed HTTP %d error=%s",
        status_code,
        error_code or "unknown",
    )
    summary = f"HTTP {status_code}: {error_code or 'unknown'}"
    if description:
        summary = f"{summary} ({description})"

    if status_code in _DEFINITIVE_HTTP_STATUSES and error_code is not None:
        status = _GRANT_ERRORS.get(error_code)
        if status is not None:
            return GrantRevokedError(
                f"Authorization server rejected the refresh token: {summary}",
                status=status,
                error_code=error_code,
            )
        if error_code in _CLIENT_ERRORS:
            return OAuthClientMisconfigured(
                f"Authorization server rejected the configured OAuth client: {summary}. "
                "Check OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET."
            )

    return TransientAuthFailure(f"OAuth token refresh failed: {summary}", status_code=status_code)


def _grant_from_payload(payload: Any, *, issued_at: datetime, status_code: int) -> TokenGrant:
    if not isinstance(payload, dict):
        raise TransientAuthFailure(
            "OAuth token response is not a JSON object", status_code=status_code
        )

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise TransientAuthFailure(
            "OAuth token response is missing a non-empty access_token", status_code=status_code
        )

    expires_in = coerce_expires_in(payload.get("expires_in"))
    rotated = payload.get("refresh_token")
    scope = payload.get("scope")

    logger.debug("Refreshed OAuth access token (expires in %ds)", expires_in)
    return TokenGrant(
        access_token=access_token.strip(),
        expiry=issued_at + timedelta(seconds=expires_in),
        refresh_token=rotated.strip() if isinstance(rotated, str) and rotated.strip() else None,
        scope=scope if isinstance(scope, str) and scope else None,
    )
