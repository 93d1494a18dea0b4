"""Helpers for issuing and managing JWT access/refresh tokens."""

from __future__ import annotations

import dataclasses
import datetime as dt
import hashlib
import os
import secrets
from functools import lru_cache
from typing import Any

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.models import RefreshToken, User


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Runtime configuration for issuing authentication tokens."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 60 * 60 * 8  # one shift
    refresh_token_ttl_seconds: int = 60 * 60 * 24 * 14  # two weeks


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Load settings from the environment."""

    secret = os.getenv("SESSION_TOKEN_SECRET")
    issuer = os.getenv("SESSION_TOKEN_ISSUER")
    audience = os.getenv("SESSION_TOKEN_AUDIENCE")
    algorithm = os.getenv("SESSION_TOKEN_ALGORITHM", "HS256")
    if not secret or not issuer or not audience:
        raise RuntimeError(
            "SESSION_TOKEN_SECRET, SESSION_TOKEN_ISSUER and SESSION_TOKEN_AUDIENCE must be set.",
        )
    access_ttl = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(60 * 60 * 8)))
    refresh_ttl = int(os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(60 * 60 * 24 * 14)))
    return JWTSettings(
        secret=secret,
        issuer=issuer,
        audience=audience,
        algorithm=algorithm,
        access_token_ttl_seconds=access_ttl,
        refresh_token_ttl_seconds=refresh_ttl,
    )


def reset_jwt_settings_cache() -> None:
    """Clear cached JWT settings; useful in tests when env vars change."""

    get_jwt_settings.cache_clear()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a secret token."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def as_utc(value: dt.datetime) -> dt.datetime:
    """Normalise ``value`` to an aware UTC datetime (SQLite drops tzinfo)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def create_access_token(
    user: User, *, settings: JWTSettings | None = None
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token for ``user``."""

    settings = settings or get_jwt_settings()
    now = _utcnow()
    expires_at = now + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "user_id": str(user.id),
        "organization_id": str(user.organization_id) if user.organization_id else None,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return str(token), expires_at


def create_refresh_token(
    session: Session,
    user: User,
    *,
    user_agent: str | None = None,
    settings: JWTSettings | None = None,
) -> tuple[str, RefreshToken]:
    """Persist a refresh token bound to ``user`` and return the raw secret."""

    settings = settings or get_jwt_settings()
    raw_token = secrets.token_urlsafe(48)
    now = _utcnow()
    expires_at = now + dt.timedelta(seconds=settings.refresh_token_ttl_seconds)
    record = RefreshToken(
        user_id=user.id,
        token_hash=hash_token(raw_token),
        issued_at=now,
        expires_at=expires_at,
        user_agent=(user_agent or "")[:255] or None,
    )
    session.add(record)
    session.flush()
    return raw_token, record


def verify_refresh_token(session: Session, raw_token: str) -> RefreshToken | None:
    """Return the refresh token row matching ``raw_token`` if valid."""

    if not raw_token:
        return None
    token = session.execute(
        select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_token))
    ).scalar_one_or_none()
    if token is None:
        return None
    if token.revoked_at is not None:
        return None
    if as_utc(token.expires_at) <= _utcnow():
        return None
    return token


def revoke_refresh_token(
    token: RefreshToken, *, when: dt.datetime | None = None
) -> None:
    """Mark ``token`` as revoked."""

    token.revoked_at = when or _utcnow()


__all__ = [
    "JWTSettings",
    "as_utc",
    "create_access_token",
    "create_refresh_token",
    "get_jwt_settings",
    "hash_token",
    "reset_jwt_settings_cache",
    "revoke_refresh_token",
    "verify_refresh_token",
]
