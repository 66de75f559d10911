"""Startup gating for the credential store.

Schema incompatibility is surfaced when the process starts, not on the first
credential access. A stale ``credentials`` table blocks startup with
remediation instructions; nothing is created or altered over the old data.

Typical usage in a service entrypoint::

    from credkeeper.startup_guard import require_compatible_schema_or_exit

    store = await require_compatible_schema_or_exit(pool, caller="token-service")

Typical usage to get a status without exiting::

    result = await check_credential_schema(pool)
    if not result.ok:
        print(result.message)
        print(result.remediation)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from credkeeper.credential_store import CredentialRecordStore
from credkeeper.errors import IncompatibleSchema
from credkeeper.schema import SchemaState, verify_schema

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema check result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchemaCheckResult:
    """Result of a credential schema check.

    Attributes
    ----------
    ok:
        True if the store is ready to serve requests.
    state:
        ``created`` or ``current`` when ok, ``None`` otherwise.
    message:
        Human-readable status message. Safe to log and display.
    remediation:
        Operator instructions when ok is False, empty otherwise.
    """

    ok: bool
    state: SchemaState | None
    message: str
    remediation: str


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


async def bootstrap(pool: asyncpg.Pool) -> CredentialRecordStore:
    """Verify the schema and return a ready record store.

    Raises
    ------
    IncompatibleSchema
        The ``credentials`` table has an older or unknown layout.
    StorageUnavailable
        The database could not be reached.
    """
    state = await verify_schema(pool)
    logger.info("Credential store ready (schema %s)", state.value)
    return CredentialRecordStore(pool)


async def check_credential_schema(pool: asyncpg.Pool) -> SchemaCheckResult:
    """Verify the schema, reporting incompatibility as a result instead of raising."""
    try:
        state = await verify_schema(pool)
    except IncompatibleSchema as exc:
        return SchemaCheckResult(
            ok=False,
            state=None,
            message=str(exc),
            remediation=exc.remediation,
        )
    if state is SchemaState.CREATED:
        message = "Credential table created with the current schema."
    else:
        message = "Credential table matches the current schema."
    return SchemaCheckResult(ok=True, state=state, message=message, remediation="")


# ---------------------------------------------------------------------------
# Hard-exit guard (for service entrypoints)
# ---------------------------------------------------------------------------


async def require_compatible_schema_or_exit(
    pool: asyncpg.Pool,
    *,
    caller: str = "credkeeper",
    exit_code: int = 1,
) -> CredentialRecordStore:
    """Bootstrap the store, or exit the process with remediation if the schema is stale.

    Parameters
    ----------
    pool:
        asyncpg pool for the credential database.
    caller:
        Name of the calling component (used in log and error messages).
    exit_code:
        Exit code to use when the schema is incompatible (default: 1).
    """
    try:
        return await bootstrap(pool)
    except IncompatibleSchema as exc:
        logger.error("[%s] %s", caller, exc)
        _print_schema_error(caller=caller, exc=exc)
        sys.exit(exit_code)


def _print_schema_error(*, caller: str, exc: IncompatibleSchema) -> None:
    """Print a formatted schema error to stderr."""
    separator = "=" * 70
    print(f"\n{separator}", file=sys.stderr)
    print(f"  STARTUP BLOCKED: {caller}", file=sys.stderr)
    print(separator, file=sys.stderr)
    print(f"\n  {exc}\n", file=sys.stderr)
    if exc.legacy_columns:
        print(
            "  The table still stores OAuth client settings per credential. Those now come",
            file=sys.stderr,
        )
        print("  from the environment and are not migrated.\n", file=sys.stderr)
    print("  How to fix:", file=sys.stderr)
    for line in exc.remediation.splitlines()[1:]:
        print(f"  {line}", file=sys.stderr)
    print(f"\n{separator}\n", file=sys.stderr)
