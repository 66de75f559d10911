"""Runtime wiring: database pool, record store, token client and coordinator."""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Self

import httpx

from credkeeper.config import ServiceSettings
from credkeeper.credential_store import CredentialRecordStore
from credkeeper.db import Database, storage_errors
from credkeeper.oauth import OAuthTokenClient
from credkeeper.refresh import TokenRefreshCoordinator
from credkeeper.startup_guard import bootstrap

logger = logging.getLogger(__name__)


class CredentialService:
    """Owns every long-lived resource of the credential lifecycle store.

    ``start()`` fails fast: an unreachable database or an incompatible
    ``credentials`` table raises before any request is served.

    Usage::

        async with CredentialService.from_env() as service:
            token = await service.get_access_token("a@x.com", "p1")
    """

    def __init__(
        self,
        settings: ServiceSettings,
        *,
        database: Database | None = None,
        http_client: httpx.AsyncClient | None = None,
        provision: bool = True,
    ) -> None:
        self.settings = settings
        self.database = database or Database.from_params(settings.db_name, settings.db_params)
        self._http_client = http_client
        self._provision = provision
        self._store: CredentialRecordStore | None = None
        self._token_client: OAuthTokenClient | None = None
        self._coordinator: TokenRefreshCoordinator | None = None

    @classmethod
    def from_env(cls) -> CredentialService:
        return cls(ServiceSettings.from_env())

    @property
    def store(self) -> CredentialRecordStore:
        if self._store is None:
            raise RuntimeError("CredentialService is not started")
        return self._store

    @property
    def coordinator(self) -> TokenRefreshCoordinator:
        if self._coordinator is None:
            raise RuntimeError("CredentialService is not started")
        return self._coordinator

    async def start(self) -> None:
        with storage_errors("connect"):
            if self._provision:
                await self.database.provision()
            pool = await self.database.connect()
        try:
            self._store = await bootstrap(pool)
        except Exception:
            await self.database.close()
            raise
        self._token_client = OAuthTokenClient(self.settings.oauth, self._http_client)
        self._coordinator = TokenRefreshCoordinator(
            self._store,
            self._token_client,
            refresh_skew=self.settings.refresh_skew,
        )
        logger.info(
            "Credential service started (db=%s, client_id=%s, refresh_skew=%ss)",
            self.settings.db_name,
            self.settings.oauth.client_id,
            self.settings.refresh_skew_s,
        )

    async def stop(self) -> None:
        if self._coordinator is not None:
            await self._coordinator.drain()
        if self._token_client is not None:
            await self._token_client.aclose()
            self._token_client = None
        self._coordinator = None
        self._store = None
        await self.database.close()
        logger.info("Credential service stopped")

    async def get_access_token(self, email: str, project_id: str) -> str:
        return await self.coordinator.get_access_token(email, project_id)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
