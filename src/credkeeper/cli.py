"""Operator CLI for the credential store."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

import asyncpg
import click

from credkeeper.config import DEFAULT_DB_NAME, ServiceSettings
from credkeeper.core.logging import configure_logging
from credkeeper.db import Database, storage_errors
from credkeeper.errors import ConfigError, CredentialError
from credkeeper.schema import reset_schema
from credkeeper.service import CredentialService
from credkeeper.startup_guard import check_credential_schema, require_compatible_schema_or_exit

logger = logging.getLogger(__name__)

T = TypeVar("T")


@click.group()
@click.version_option(version="0.2.0")
@click.option("--log-level", default="INFO", show_default=True, help="Root log level")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
def cli(log_level: str, log_format: str) -> None:
    """credkeeper: OAuth credential lifecycle store."""
    configure_logging(level=log_level, fmt=log_format)


@cli.command()
def check() -> None:
    """Verify the credentials table, creating it if absent."""

    async def _check(pool: asyncpg.Pool) -> bool:
        result = await check_credential_schema(pool)
        click.echo(result.message)
        if not result.ok:
            click.echo(result.remediation, err=True)
        return result.ok

    if not _run_with_pool(_check):
        sys.exit(1)


@cli.command()
@click.option("--yes", is_flag=True, help="Confirm dropping every stored credential")
def reset(yes: bool) -> None:
    """Drop the credentials table. The next start recreates it empty."""
    if not yes:
        click.echo("Refusing to drop the credentials table without --yes.", err=True)
        sys.exit(2)
    _run_with_pool(reset_schema)
    click.echo("Dropped the credentials table. Restart the service and re-import credentials.")


@cli.command("list")
def list_credentials() -> None:
    """List stored identities with status and expiry (never tokens)."""

    async def _list(pool: asyncpg.Pool) -> None:
        store = await require_compatible_schema_or_exit(pool, caller="credkeeper list")
        records = await store.list_all()
        if not records:
            click.echo("No credentials stored.")
            return
        for record in records:
            expiry = record.expiry.isoformat() if record.expiry else "-"
            refresh = "yes" if record.refresh_token else "no"
            click.echo(
                f"{record.email}\t{record.project_id}\t{record.status.value}\t"
                f"expiry={expiry}\trefresh_token={refresh}"
            )

    _run_with_pool(_list)


@cli.command()
@click.argument("email")
@click.argument("project_id")
def delete(email: str, project_id: str) -> None:
    """Remove one identity."""

    async def _delete(pool: asyncpg.Pool) -> None:
        store = await require_compatible_schema_or_exit(pool, caller="credkeeper delete")
        await store.delete(email, project_id)

    _run_with_pool(_delete)
    click.echo(f"Deleted credential {email}/{project_id}")


@cli.command()
@click.argument("email")
@click.argument("project_id")
@click.option("--force", is_flag=True, help="Refresh even if the access token is still fresh")
def refresh(email: str, project_id: str, force: bool) -> None:
    """Refresh one identity's access token and print the new expiry."""

    async def _refresh(service: CredentialService) -> None:
        record = await service.coordinator.refresh(email, project_id, force=force)
        click.echo(
            f"{record.email}/{record.project_id}: status={record.status.value} "
            f"expiry={record.expiry.isoformat() if record.expiry else '-'}"
        )

    _run_with_service(_refresh)


@cli.command("refresh-due")
@click.option("--concurrency", default=4, show_default=True, type=click.IntRange(min=1))
def refresh_due(concurrency: int) -> None:
    """Refresh every active identity whose access token is not fresh."""

    async def _sweep(service: CredentialService) -> None:
        result = await service.coordinator.refresh_due(concurrency=concurrency)
        click.echo(
            f"refreshed={len(result.refreshed)} "
            f"reauthorization_required={len(result.reauthorization_required)} "
            f"failed={len(result.failed)}"
        )
        for identity in result.reauthorization_required:
            click.echo(f"  needs re-authorization: {identity}")
        for identity, reason in result.failed.items():
            click.echo(f"  failed: {identity}: {reason}")
        if result.failed:
            sys.exit(1)

    _run_with_service(_sweep)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_with_pool(fn: Callable[[asyncpg.Pool], Awaitable[T]]) -> T:
    db_name = os.environ.get("CREDENTIAL_DB_NAME", "").strip() or DEFAULT_DB_NAME
    database = Database.from_env(db_name)

    async def _main() -> T:
        with storage_errors("connect"):
            pool = await database.connect()
        try:
            return await fn(pool)
        finally:
            await database.close()

    return _run(_main())


def _run_with_service(fn: Callable[[CredentialService], Awaitable[None]]) -> None:
    try:
        settings = ServiceSettings.from_env()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    async def _main() -> None:
        async with CredentialService(settings, provision=False) as service:
            await fn(service)

    _run(_main())


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except CredentialError as exc:
        logger.error("%s", exc)
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

