"""Layout versioning for the ``credentials`` table.

The table shape is the schema marker. On open:

- no table: create the current layout;
- current layout: proceed untouched;
- anything else (notably the legacy layout that stored ``client_id``,
  ``client_secret`` and ``scopes`` per row): raise
  :class:`~credkeeper.errors.IncompatibleSchema`.

Legacy secret columns are never migrated. The operator drops the table and
the next start bootstraps an empty current-layout table.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from credkeeper.db import storage_errors
from credkeeper.errors import IncompatibleSchema
from credkeeper.models import CredentialStatus

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

TABLE = "credentials"
SCHEMA_VERSION = 2

CURRENT_COLUMNS = frozenset(
    {"email", "project_id", "refresh_token", "access_token", "expiry", "status"}
)
LEGACY_COLUMNS = frozenset({"client_id", "client_secret", "scopes"})

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in CredentialStatus)

CREDENTIALS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    email         TEXT NOT NULL,
    project_id    TEXT NOT NULL,
    refresh_token TEXT,
    access_token  TEXT,
    expiry        TIMESTAMPTZ,
    status        TEXT NOT NULL DEFAULT 'active'
                  CHECK (status IN ({_STATUS_VALUES})),
    CONSTRAINT credentials_token_pair
        CHECK ((access_token IS NULL) = (expiry IS NULL)),
    PRIMARY KEY (email, project_id)
)
"""

_COLUMNS_QUERY = """
SELECT column_name
FROM information_schema.columns
WHERE table_schema = current_schema() AND table_name = $1
"""

REMEDIATION = (
    "The credentials table was written by an older release and cannot be "
    "migrated automatically.\n"
    "  1. Stop the service.\n"
    f"  2. Drop the table:  DROP TABLE {TABLE};  (or run: credkeeper reset --yes)\n"
    "  3. Restart the service; the current schema is created on startup.\n"
    "  4. Re-import every credential (OAuth client settings now come from "
    "OAUTH_CLIENT_ID / OAUTH_CLIENT_SECRET / OAUTH_SCOPES)."
)


class SchemaState(enum.StrEnum):
    """Outcome of a successful schema verification."""

    CREATED = "created"
    CURRENT = "current"


@dataclass(frozen=True)
class SchemaInspection:
    """Column names found for the ``credentials`` table (empty if absent)."""

    columns: frozenset[str]

    @property
    def exists(self) -> bool:
        return bool(self.columns)

    @property
    def is_current(self) -> bool:
        return self.columns == CURRENT_COLUMNS

    @property
    def legacy_columns(self) -> frozenset[str]:
        return self.columns & LEGACY_COLUMNS


async def inspect_schema(pool: asyncpg.Pool) -> SchemaInspection:
    """Read the shape of the ``credentials`` table in the current schema."""
    with storage_errors("schema inspection"):
        async with pool.acquire() as conn:
            rows = await conn.fetch(_COLUMNS_QUERY, TABLE)
    return SchemaInspection(columns=frozenset(row["column_name"] for row in rows))


async def verify_schema(pool: asyncpg.Pool) -> SchemaState:
    """Ensure the ``credentials`` table has the current layout.

    Creates the table when it is absent. Never alters an existing table.

    Raises
    ------
    IncompatibleSchema
        If the table exists with any other layout.
    """
    inspection = await inspect_schema(pool)

    if not inspection.exists:
        with storage_errors("schema creation"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(CREDENTIALS_TABLE_DDL)
        logger.info("Created %s table (schema version %d)", TABLE, SCHEMA_VERSION)
        return SchemaState.CREATED

    if inspection.is_current:
        logger.debug("%s table matches schema version %d", TABLE, SCHEMA_VERSION)
        return SchemaState.CURRENT

    raise _incompatible(inspection)


async def reset_schema(pool: asyncpg.Pool) -> None:
    """Drop the ``credentials`` table and every record in it.

    Operator action only; nothing in the service calls this implicitly.
    """
    with storage_errors("schema reset"):
        async with pool.acquire() as conn:
            await conn.execute(f"DROP TABLE IF EXISTS {TABLE}")
    logger.warning("Dropped %s table; all stored credentials were removed", TABLE)


def _incompatible(inspection: SchemaInspection) -> IncompatibleSchema:
    legacy = inspection.legacy_columns
    if legacy:
        detail = (
            f"legacy per-record OAuth client column(s) present: {', '.join(sorted(legacy))}"
        )
    else:
        missing = CURRENT_COLUMNS - inspection.columns
        unexpected = inspection.columns - CURRENT_COLUMNS
        parts = []
        if missing:
            parts.append(f"missing column(s): {', '.join(sorted(missing))}")
        if unexpected:
            parts.append(f"unexpected column(s): {', '.join(sorted(unexpected))}")
        detail = "; ".join(parts)
    return IncompatibleSchema(
        f"Incompatible {TABLE} table (expected schema version {SCHEMA_VERSION}): {detail}",
        found_columns=inspection.columns,
        legacy_columns=legacy,
        remediation=REMEDIATION,
    )
