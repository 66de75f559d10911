"""Test doubles for code that depends on the credential store.

:class:`InMemoryCredentialStore` implements
:class:`~credkeeper.credential_store.CredentialRepository` with the same
error behaviour as the asyncpg store, so coordinator tests and downstream
consumers can run without a database.
"""

from __future__ import annotations

from datetime import datetime

from credkeeper.errors import NotFound, StorageUnavailable
from credkeeper.models import CredentialRecord, CredentialStatus, Identity


class InMemoryCredentialStore:
    """Dict-backed credential repository.

    Set ``fail_with`` to an exception to make every operation raise it
    (wrapped in ``StorageUnavailable`` unless it already is one). ``writes``
    records the name of every mutating call in order.
    """

    def __init__(self, records: list[CredentialRecord] | None = None) -> None:
        self.records: dict[Identity, CredentialRecord] = {
            record.identity: record for record in records or ()
        }
        self.writes: list[tuple[str, Identity]] = []
        self.fail_with: Exception | None = None

    async def get(self, email: str, project_id: str) -> CredentialRecord:
        self._maybe_fail()
        try:
            return self.records[Identity(email, project_id)]
        except KeyError:
            raise NotFound(email, project_id) from None

    async def get_by_project_id(self, project_id: str) -> CredentialRecord:
        self._maybe_fail()
        for identity in sorted(self.records):
            if identity.project_id == project_id:
                return self.records[identity]
        raise NotFound(None, project_id)

    async def upsert(self, record: CredentialRecord) -> None:
        self._maybe_fail()
        self.records[record.identity] = record
        self.writes.append(("upsert", record.identity))

    async def update_tokens(
        self,
        email: str,
        project_id: str,
        access_token: str,
        expiry: datetime,
        status: CredentialStatus = CredentialStatus.ACTIVE,
        *,
        refresh_token: str | None = None,
    ) -> CredentialRecord:
        if not access_token:
            raise ValueError("access_token must be a non-empty string")
        if expiry is None:
            raise ValueError("expiry is required together with access_token")
        current = await self.get(email, project_id)
        updated = CredentialRecord(
            **{
                **current.model_dump(),
                "access_token": access_token,
                "expiry": expiry,
                "status": CredentialStatus(status),
                "refresh_token": refresh_token or current.refresh_token,
            }
        )
        self.records[updated.identity] = updated
        self.writes.append(("update_tokens", updated.identity))
        return updated

    async def update_status(self, email: str, project_id: str, status: CredentialStatus) -> None:
        current = await self.get(email, project_id)
        updated = current.model_copy(update={"status": CredentialStatus(status)})
        self.records[updated.identity] = updated
        self.writes.append(("update_status", updated.identity))

    async def delete(self, email: str, project_id: str) -> None:
        await self.get(email, project_id)
        identity = Identity(email, project_id)
        del self.records[identity]
        self.writes.append(("delete", identity))

    async def list_all(self) -> list[CredentialRecord]:
        self._maybe_fail()
        return [self.records[key] for key in sorted(self.records)]

    async def list_active(self) -> list[CredentialRecord]:
        return [
            record
            for record in await self.list_all()
            if record.status is CredentialStatus.ACTIVE
        ]

    def _maybe_fail(self) -> None:
        if self.fail_with is None:
            return
        if isinstance(self.fail_with, StorageUnavailable):
            raise self.fail_with
        raise StorageUnavailable(str(self.fail_with)) from self.fail_with


__all__ = ["InMemoryCredentialStore"]
