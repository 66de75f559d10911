"""Credential data model.

One :class:`CredentialRecord` per ``(email, project_id)`` identity. Token
material is redacted from ``repr()``/``str()`` so records can be passed to
log calls safely.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from typing import Any, NamedTuple, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

DEFAULT_EXPIRES_IN_SECONDS = 3600


class CredentialStatus(enum.StrEnum):
    """Persisted authorization status of an identity."""

    ACTIVE = "active"
    INVALID = "invalid"
    REVOKED = "revoked"


class Identity(NamedTuple):
    email: str
    project_id: str

    def __str__(self) -> str:
        return f"{self.email}/{self.project_id}"


class CredentialRecord(BaseModel):
    """A stored OAuth credential for one identity."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    email: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    refresh_token: str | None = None
    access_token: str | None = None
    expiry: datetime | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE

    @field_validator("email", "project_id")
    @classmethod
    def _non_blank_identity(cls, value: str, info: ValidationInfo) -> str:
        if not value.strip():
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return value

    @field_validator("refresh_token", "access_token")
    @classmethod
    def _empty_token_is_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value or None

    @field_validator("expiry")
    @classmethod
    def _expiry_is_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode="after")
    def _token_pair(self) -> Self:
        if (self.access_token is None) != (self.expiry is None):
            raise ValueError("access_token and expiry must be set together")
        return self

    @property
    def identity(self) -> Identity:
        return Identity(self.email, self.project_id)

    def is_fresh(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        """True when the cached access token is usable at *now* minus *skew*."""
        if self.access_token is None or self.expiry is None:
            return False
        return now < self.expiry - skew

    @classmethod
    def from_token_payload(
        cls,
        payload: dict[str, Any],
        *,
        email: str,
        project_id: str,
        now: datetime | None = None,
    ) -> CredentialRecord:
        """Build an ACTIVE record from an OAuth token-endpoint JSON payload.

        Accepts either ``expires_in`` (seconds) or an absolute ``expiry``.
        Raises ``ValueError`` when the payload has no refresh token.
        """
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise ValueError("token payload is missing refresh_token (check access_type=offline)")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            return cls(email=email, project_id=project_id, refresh_token=refresh_token.strip())

        expiry: datetime | None
        raw_expiry = payload.get("expiry")
        if isinstance(raw_expiry, datetime):
            expiry = raw_expiry
        elif isinstance(raw_expiry, str) and raw_expiry.strip():
            expiry = datetime.fromisoformat(raw_expiry.strip())
        else:
            issued_at = now or datetime.now(UTC)
            expiry = issued_at + timedelta(seconds=coerce_expires_in(payload.get("expires_in")))

        return cls(
            email=email,
            project_id=project_id,
            refresh_token=refresh_token.strip(),
            access_token=access_token.strip(),
            expiry=expiry,
        )

    def __repr__(self) -> str:
        return (
            f"CredentialRecord("
            f"email={self.email!r}, "
            f"project_id={self.project_id!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"expiry={self.expiry!r}, "
            f"status={self.status.value!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


class TokenGrant(BaseModel):
    """A successful refresh-token exchange."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str = Field(min_length=1)
    expiry: datetime
    refresh_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token=<REDACTED>, expiry={self.expiry!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def coerce_expires_in(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS
