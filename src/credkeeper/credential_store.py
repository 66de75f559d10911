"""Credential record store backed by the ``credentials`` table.

Single source of truth for token material and authorization status of every
``(email, project_id)`` identity.

Usage: importing a credential::

    store = CredentialRecordStore(pool)
    await store.upsert(CredentialRecord(email="a@x.com", project_id="p1", refresh_token="..."))

Usage: recording a refresh (the refresh token is left untouched)::

    await store.update_tokens("a@x.com", "p1", access_token, expiry)

Writes for one identity are serialized by a per-identity ``asyncio.Lock``;
every write is a single statement, so readers see the row either before or
after it. Reads take no lock.

Note: token values are NEVER logged. Log lines name the identity only.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from credkeeper.db import storage_errors
from credkeeper.errors import NotFound
from credkeeper.models import CredentialRecord, CredentialStatus, Identity, ensure_utc
from credkeeper.schema import TABLE

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_COLUMNS = "email, project_id, refresh_token, access_token, expiry, status"


class CredentialRepository(Protocol):
    """Persistence contract used by the token refresh coordinator."""

    async def get(self, email: str, project_id: str) -> CredentialRecord:
        """Return the record for an identity or raise ``NotFound``."""
        ...

    async def upsert(self, record: CredentialRecord) -> None:
        """Insert or fully replace the record for its identity."""
        ...

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
        """Replace the access token/expiry pair and status."""
        ...

    async def update_status(self, email: str, project_id: str, status: CredentialStatus) -> None:
        """Replace the status only."""
        ...

    async def delete(self, email: str, project_id: str) -> None:
        """Remove the record for an identity."""
        ...

    async def get_by_project_id(self, project_id: str) -> CredentialRecord:
        """Return the first record (by email) for a project or raise ``NotFound``."""
        ...

    async def list_all(self) -> list[CredentialRecord]:
        """Return every record."""
        ...

    async def list_active(self) -> list[CredentialRecord]:
        """Return every ACTIVE record."""
        ...


class CredentialRecordStore:
    """Async CRUD over the ``credentials`` table.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each operation acquires a connection for
        the duration of the call. Construct after the schema has been
        verified (see :func:`credkeeper.startup_guard.bootstrap`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool
        self._write_locks: dict[Identity, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, email: str, project_id: str) -> CredentialRecord:
        """Return the record for ``(email, project_id)``.

        Raises
        ------
        NotFound
            If no record exists for the identity.
        StorageUnavailable
            If the database cannot be reached.
        """
        with storage_errors("read"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {TABLE} WHERE email = $1 AND project_id = $2",
                    email,
                    project_id,
                )
        if row is None:
            raise NotFound(email, project_id)
        logger.debug("Loaded credential for %s/%s", email, project_id)
        return _record_from_row(row)

    async def get_by_project_id(self, project_id: str) -> CredentialRecord:
        """Return the record for *project_id*.

        When several emails share the project, the lowest email wins.

        Raises
        ------
        NotFound
            If no record exists for the project.
        """
        with storage_errors("read"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {TABLE} WHERE project_id = $1 "
                    "ORDER BY email LIMIT 1",
                    project_id,
                )
        if row is None:
            raise NotFound(None, project_id)
        return _record_from_row(row)

    async def list_all(self) -> list[CredentialRecord]:
        """Return every record ordered by ``(email, project_id)``.

        A single statement, so the result is consistent as of the call.
        """
        with storage_errors("list"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM {TABLE} ORDER BY email, project_id"
                )
        return [_record_from_row(row) for row in rows]

    async def list_active(self) -> list[CredentialRecord]:
        """Return ACTIVE records ordered by ``(email, project_id)``."""
        with storage_errors("list"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {_COLUMNS} FROM {TABLE} WHERE status = $1 "
                    "ORDER BY email, project_id",
                    CredentialStatus.ACTIVE.value,
                )
        return [_record_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def upsert(self, record: CredentialRecord) -> None:
        """Insert *record* or fully replace the stored row for its identity."""
        async with self._lock_for(record.identity):
            with storage_errors("upsert"):
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        f"""
                        INSERT INTO {TABLE} ({_COLUMNS})
                        VALUES ($1, $2, $3, $4, $5, $6)
                        ON CONFLICT (email, project_id) DO UPDATE SET
                            refresh_token = EXCLUDED.refresh_token,
                            access_token  = EXCLUDED.access_token,
                            expiry        = EXCLUDED.expiry,
                            status        = EXCLUDED.status
                        """,
                        record.email,
                        record.project_id,
                        record.refresh_token,
                        record.access_token,
                        record.expiry,
                        record.status.value,
                    )
        logger.info(
            "Credential stored: %s/%s status=%s",
            record.email,
            record.project_id,
            record.status.value,
        )

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
        """Replace the access token, its expiry and the status in one statement.

        The stored refresh token is kept unless a rotated *refresh_token* is
        given.

        Raises
        ------
        ValueError
            If *access_token* is empty or *expiry* is missing.
        NotFound
            If no record exists for the identity.
        """
        if not access_token:
            raise ValueError("access_token must be a non-empty string")
        if expiry is None:
            raise ValueError("expiry is required together with access_token")

        async with self._lock_for(Identity(email, project_id)):
            with storage_errors("token update"):
                async with self.pool.acquire() as conn:
                    row = await conn.fetchrow(
                        f"""
                        UPDATE {TABLE} SET
                            access_token  = $3,
                            expiry        = $4,
                            status        = $5,
                            refresh_token = COALESCE($6, refresh_token)
                        WHERE email = $1 AND project_id = $2
                        RETURNING {_COLUMNS}
                        """,
                        email,
                        project_id,
                        access_token,
                        ensure_utc(expiry),
                        CredentialStatus(status).value,
                        refresh_token or None,
                    )
        if row is None:
            raise NotFound(email, project_id)
        logger.info(
            "Credential tokens updated: %s/%s status=%s expiry=%s rotated_refresh_token=%s",
            email,
            project_id,
            CredentialStatus(status).value,
            row["expiry"],
            bool(refresh_token),
        )
        return _record_from_row(row)

    async def update_status(self, email: str, project_id: str, status: CredentialStatus) -> None:
        """Set the status of an identity without touching its tokens.

        Raises
        ------
        NotFound
            If no record exists for the identity.
        """
        async with self._lock_for(Identity(email, project_id)):
            with storage_errors("status update"):
                async with self.pool.acquire() as conn:
                    result = await conn.execute(
                        f"UPDATE {TABLE} SET status = $3 WHERE email = $1 AND project_id = $2",
                        email,
                        project_id,
                        CredentialStatus(status).value,
                    )
        if not _affected(result):
            raise NotFound(email, project_id)
        logger.info(
            "Credential status changed: %s/%s status=%s",
            email,
            project_id,
            CredentialStatus(status).value,
        )

    async def delete(self, email: str, project_id: str) -> None:
        """Remove the record for an identity.

        Raises
        ------
        NotFound
            If no record exists for the identity.
        """
        async with self._lock_for(Identity(email, project_id)):
            with storage_errors("delete"):
                async with self.pool.acquire() as conn:
                    result = await conn.execute(
                        f"DELETE FROM {TABLE} WHERE email = $1 AND project_id = $2",
                        email,
                        project_id,
                    )
        if not _affected(result):
            raise NotFound(email, project_id)
        logger.info("Credential deleted: %s/%s", email, project_id)

    # ------------------------------------------------------------------
    # Repr: never expose pool details or secrets
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        return f"CredentialRecordStore(table={TABLE!r}, locks={len(self._write_locks)})"

    def _lock_for(self, identity: Identity) -> asyncio.Lock:
        lock = self._write_locks.get(identity)
        if lock is None:
            lock = self._write_locks[identity] = asyncio.Lock()
        return lock


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _record_from_row(row: Any) -> CredentialRecord:
    return CredentialRecord(
        email=row["email"],
        project_id=row["project_id"],
        refresh_token=row["refresh_token"],
        access_token=row["access_token"],
        expiry=row["expiry"],
        status=CredentialStatus(row["status"]),
    )


def _affected(result: str | None) -> bool:
    # asyncpg returns a command tag such as "UPDATE 1" or "DELETE 0"
    return bool(result) and result.split()[-1] != "0"
