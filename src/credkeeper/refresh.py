"""Lazy access-token refresh with per-identity coalescing.

Per identity the coordinator moves between four states:

- ``FRESH``: an access token is cached and ``now < expiry - skew``; callers
  get it straight from the store, no network call.
- ``STALE``: expired, near expiry, or never issued.
- ``REFRESHING``: one token exchange is in flight; every concurrent caller
  awaits that same task instead of issuing its own.
- ``FAILED_TERMINAL``: the stored status is ``invalid`` or ``revoked``;
  callers fail with :class:`~credkeeper.errors.RequiresReauthorization`
  without contacting the authorization server.

A transient failure leaves the stored record untouched, so the identity stays
``STALE`` and the next request retries. No background retry loop is started;
:meth:`TokenRefreshCoordinator.refresh_due` runs one sweep on demand.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from credkeeper.credential_store import CredentialRepository
from credkeeper.errors import CredentialError, GrantRevokedError, RequiresReauthorization
from credkeeper.models import CredentialRecord, CredentialStatus, Identity, TokenGrant

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SKEW = timedelta(seconds=60)


class TokenState(enum.StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"
    FAILED_TERMINAL = "failed_terminal"


class TokenExchanger(Protocol):
    """Authorization-endpoint contract (see :class:`credkeeper.oauth.OAuthTokenClient`)."""

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        ...


@dataclass
class RefreshSweepResult:
    """Per-identity outcome of :meth:`TokenRefreshCoordinator.refresh_due`."""

    refreshed: list[Identity] = field(default_factory=list)
    reauthorization_required: list[Identity] = field(default_factory=list)
    failed: dict[Identity, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.refreshed) + len(self.reauthorization_required) + len(self.failed)


class TokenRefreshCoordinator:
    """Hands out usable access tokens, refreshing them lazily.

    Parameters
    ----------
    store:
        The credential repository; every state change goes through it.
    client:
        Token exchanger for the authorization server. It carries the
        process-wide OAuth client configuration.
    refresh_skew:
        Tokens within this margin of their expiry count as stale.
    clock:
        Returns the current UTC time. Injected by tests.
    """

    def __init__(
        self,
        store: CredentialRepository,
        client: TokenExchanger,
        *,
        refresh_skew: timedelta = DEFAULT_REFRESH_SKEW,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if refresh_skew < timedelta(0):
            raise ValueError("refresh_skew must not be negative")
        self._store = store
        self._client = client
        self._refresh_skew = refresh_skew
        self._clock = clock or (lambda: datetime.now(UTC))
        self._inflight: dict[Identity, asyncio.Task[CredentialRecord]] = {}

    async def get_access_token(self, email: str, project_id: str) -> str:
        """Return a usable access token for the identity.

        Raises
        ------
        NotFound
            Unknown identity.
        RequiresReauthorization
            The identity is ``invalid``/``revoked``, or the server just
            rejected its refresh token.
        TransientAuthFailure
            The refresh failed but may succeed later; nothing was stored.
        OAuthClientMisconfigured
            The configured OAuth client was rejected; nothing was stored.
        StorageUnavailable
            The store could not be read or written.
        """
        record = await self._store.get(email, project_id)
        if record.status is not CredentialStatus.ACTIVE:
            raise RequiresReauthorization(record.email, record.project_id, record.status)
        if record.is_fresh(self._clock(), self._refresh_skew):
            assert record.access_token is not None
            return record.access_token

        refreshed = await self._join_refresh(record.identity, force=False)
        assert refreshed.access_token is not None
        return refreshed.access_token

    async def refresh(
        self, email: str, project_id: str, *, force: bool = False
    ) -> CredentialRecord:
        """Refresh the identity now (or join the refresh already in flight).

        Without *force*, a token that is still fresh is returned as-is.
        """
        return await self._join_refresh(Identity(email, project_id), force=force)

    async def token_state(self, email: str, project_id: str) -> TokenState:
        identity = Identity(email, project_id)
        if identity in self._inflight:
            return TokenState.REFRESHING
        record = await self._store.get(email, project_id)
        if record.status is not CredentialStatus.ACTIVE:
            return TokenState.FAILED_TERMINAL
        if record.is_fresh(self._clock(), self._refresh_skew):
            return TokenState.FRESH
        return TokenState.STALE

    def is_refreshing(self, email: str, project_id: str) -> bool:
        return Identity(email, project_id) in self._inflight

    async def drain(self) -> None:
        """Wait for every in-flight refresh to settle. Failures are left to their callers."""
        await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def refresh_due(self, *, concurrency: int = 4) -> RefreshSweepResult:
        """Refresh every ACTIVE identity whose token is not fresh.

        Failures are collected per identity instead of raised.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        now = self._clock()
        due = [
            record.identity
            for record in await self._store.list_active()
            if not record.is_fresh(now, self._refresh_skew)
        ]
        result = RefreshSweepResult()
        if not due:
            return result

        semaphore = asyncio.Semaphore(concurrency)

        async def _refresh_one(identity: Identity) -> None:
            async with semaphore:
                try:
                    await self._join_refresh(identity, force=False)
                except RequiresReauthorization:
                    result.reauthorization_required.append(identity)
                except CredentialError as exc:
                    result.failed[identity] = f"{exc.__class__.__name__}: {exc}"
                else:
                    result.refreshed.append(identity)

        await asyncio.gather(*(_refresh_one(identity) for identity in due))
        logger.info(
            "Refresh sweep finished: due=%d refreshed=%d reauthorization_required=%d failed=%d",
            len(due),
            len(result.refreshed),
            len(result.reauthorization_required),
            len(result.failed),
        )
        return result

    # ------------------------------------------------------------------
    # Coalescing
    # ------------------------------------------------------------------

    async def _join_refresh(self, identity: Identity, *, force: bool) -> CredentialRecord:
        # No await between lookup and insert: one task per identity.
        task = self._inflight.get(identity)
        if task is None:
            task = asyncio.create_task(
                self._refresh(identity, force=force),
                name=f"credential-refresh:{identity}",
            )
            self._inflight[identity] = task
            task.add_done_callback(functools.partial(self._refresh_finished, identity))
        else:
            logger.debug("Joining in-flight refresh for %s", identity)
        # A cancelled caller must not cancel the refresh other callers await.
        return await asyncio.shield(task)

    def _refresh_finished(self, identity: Identity, task: asyncio.Task[CredentialRecord]) -> None:
        if self._inflight.get(identity) is task:
            del self._inflight[identity]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter went away.
            task.exception()

    async def _refresh(self, identity: Identity, *, force: bool) -> CredentialRecord:
        email, project_id = identity
        record = await self._store.get(email, project_id)

        if record.status is not CredentialStatus.ACTIVE:
            raise RequiresReauthorization(email, project_id, record.status)
        if not force and record.is_fresh(self._clock(), self._refresh_skew):
            return record
        if not record.refresh_token:
            logger.warning("Credential %s has no refresh token; marking invalid", identity)
            await self._store.update_status(email, project_id, CredentialStatus.INVALID)
            raise RequiresReauthorization(email, project_id, CredentialStatus.INVALID)

        logger.info("Refreshing access token for %s", identity)
        try:
            grant = await self._client.refresh(record.refresh_token)
        except GrantRevokedError as exc:
            logger.warning(
                "Refresh token for %s rejected (%s); marking %s",
                identity,
                exc.error_code,
                exc.status.value,
            )
            await self._store.update_status(email, project_id, exc.status)
            raise RequiresReauthorization(email, project_id, exc.status) from exc

        return await self._store.update_tokens(
            email,
            project_id,
            grant.access_token,
            grant.expiry,
            CredentialStatus.ACTIVE,
            refresh_token=grant.refresh_token,
        )
