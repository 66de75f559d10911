"""Process-wide configuration loaded once from the environment.

OAuth client settings (client id, secret, scopes, token endpoint) used to be
stored on every credential row. They now come only from the environment and
are held in an immutable :class:`OAuthClientConfig` that is passed
explicitly to the token client.
"""

from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from credkeeper.db import db_params_from_env
from credkeeper.errors import ConfigError

DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_DB_NAME = "credkeeper"
DEFAULT_REQUEST_TIMEOUT_S = 30.0
DEFAULT_REFRESH_SKEW_S = 60

_SCOPE_SEPARATOR = re.compile(r"[\s,]+")


class OAuthClientConfig(BaseModel):
    """Immutable OAuth client registration used for every token exchange."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    scopes: tuple[str, ...] = ()
    token_url: str = DEFAULT_TOKEN_URL
    request_timeout_s: float = Field(default=DEFAULT_REQUEST_TIMEOUT_S, gt=0)

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @property
    def scope(self) -> str | None:
        """Space-separated scope string for the token request, if any."""
        return " ".join(self.scopes) or None

    @classmethod
    def from_env(cls) -> OAuthClientConfig:
        """Load the OAuth client registration from ``OAUTH_*`` variables.

        Raises
        ------
        ConfigError
            If required variables are missing or a numeric value is malformed.
            The message names variables, never their values.
        """
        client_id = os.environ.get("OAUTH_CLIENT_ID", "").strip()
        client_secret = os.environ.get("OAUTH_CLIENT_SECRET", "").strip()
        missing = [
            name
            for name, value in (
                ("OAUTH_CLIENT_ID", client_id),
                ("OAUTH_CLIENT_SECRET", client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigError(
                f"Missing required OAuth client configuration: {', '.join(missing)}. "
                "Set them in the service environment and restart."
            )

        timeout = _float_from_env("OAUTH_REQUEST_TIMEOUT_S", DEFAULT_REQUEST_TIMEOUT_S)
        if timeout <= 0:
            raise ConfigError(f"OAUTH_REQUEST_TIMEOUT_S must be positive, got: {timeout}")

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            scopes=parse_scopes(os.environ.get("OAUTH_SCOPES")),
            token_url=os.environ.get("OAUTH_TOKEN_URL", "").strip() or DEFAULT_TOKEN_URL,
            request_timeout_s=timeout,
        )

    def __repr__(self) -> str:
        return (
            f"OAuthClientConfig("
            f"client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, "
            f"scopes={self.scopes!r}, "
            f"token_url={self.token_url!r})"
        )

    __str__ = __repr__


class ServiceSettings(BaseModel):
    """Everything the credential service needs to start."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    db_name: str = DEFAULT_DB_NAME
    db_params: dict[str, Any] = Field(default_factory=dict, repr=False)
    refresh_skew_s: int = Field(default=DEFAULT_REFRESH_SKEW_S, ge=0)
    oauth: OAuthClientConfig

    @property
    def refresh_skew(self) -> timedelta:
        return timedelta(seconds=self.refresh_skew_s)

    @classmethod
    def from_env(cls) -> ServiceSettings:
        skew_str = os.environ.get("CREDENTIAL_REFRESH_SKEW_S", str(DEFAULT_REFRESH_SKEW_S))
        try:
            refresh_skew_s = int(skew_str)
        except ValueError as exc:
            raise ConfigError(
                f"CREDENTIAL_REFRESH_SKEW_S must be an integer, got: {skew_str}"
            ) from exc
        if refresh_skew_s < 0:
            raise ConfigError(f"CREDENTIAL_REFRESH_SKEW_S must be >= 0, got: {refresh_skew_s}")

        return cls(
            db_name=os.environ.get("CREDENTIAL_DB_NAME", "").strip() or DEFAULT_DB_NAME,
            db_params=db_params_from_env(),
            refresh_skew_s=refresh_skew_s,
            oauth=OAuthClientConfig.from_env(),
        )


def parse_scopes(raw: str | None) -> tuple[str, ...]:
    """Split a space- or comma-separated scope list, dropping duplicates."""
    if not raw:
        return ()
    scopes: list[str] = []
    for scope in _SCOPE_SEPARATOR.split(raw.strip()):
        if scope and scope not in scopes:
            scopes.append(scope)
    return tuple(scopes)


def _float_from_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got: {raw}") from exc
