"""API key issuance and authentication for machine clients.

The geometry processor and the printer desktop client authenticate with an
``Authorization: Bearer <api-key>`` header.  Endpoints they share with the
browser also accept a user session token; :func:`require_principal` resolves
whichever credential was sent.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
import secrets
from typing import Callable, Iterable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.core.auth import decode_or_http_error, extract_bearer_token, looks_like_jwt
from splint_factory.models import ApiKey, User

from .auth import get_db_session, load_user_from_payload
from .tokens import hash_token

logger = logging.getLogger(__name__)

WILDCARD_PERMISSION = "*"
GEOMETRY_QUEUE_READ = "geometry-queue:read"
GEOMETRY_QUEUE_WRITE = "geometry-queue:write"
PRINT_QUEUE_WRITE = "print-queue:write"


def generate_api_key() -> str:
    """Return a new 64 character hex API key."""

    return secrets.token_hex(32)


def has_permission(permissions: Iterable[str], required: str) -> bool:
    """Return ``True`` if ``permissions`` grants ``required`` or the wildcard."""

    granted = set(permissions)
    return required in granted or WILDCARD_PERMISSION in granted


def serialize_permissions(permissions: Iterable[str]) -> str:
    return json.dumps(sorted({p.strip() for p in permissions if p and p.strip()}))


def authenticate_api_key(session: Session, raw_key: str) -> ApiKey | None:
    """Return the active key matching ``raw_key`` and stamp ``last_used_at``."""

    if not raw_key:
        return None
    api_key = session.execute(
        select(ApiKey).where(
            ApiKey.key_hash == hash_token(raw_key),
            ApiKey.is_active.is_(True),
        )
    ).scalar_one_or_none()
    if api_key is None:
        logger.warning("Invalid API key attempted")
        return None
    api_key.last_used_at = dt.datetime.now(dt.timezone.utc)
    session.commit()
    logger.info("API key authenticated: %s (%s)", api_key.name, api_key.id)
    return api_key


@dataclasses.dataclass
class Principal:
    """The authenticated caller: a user session or an API key."""

    user: User | None = None
    api_key: ApiKey | None = None

    @property
    def label(self) -> str:
        if self.api_key is not None:
            return f"api-key:{self.api_key.name}"
        if self.user is not None:
            return f"user:{self.user.email}"
        return "anonymous"


def require_principal(permission: str) -> Callable[..., Principal]:
    """Create a dependency accepting a session user or an API key with ``permission``.

    Users authenticate with any role; API keys must carry ``permission`` or the
    wildcard, otherwise the request fails with ``403``.
    """

    async def dependency(
        request: Request,
        session: Session = Depends(get_db_session),
    ) -> Principal:
        credential = extract_bearer_token(request)
        if looks_like_jwt(credential):
            payload = decode_or_http_error(credential)
            return Principal(user=load_user_from_payload(session, payload))

        api_key = authenticate_api_key(session, credential)
        if api_key is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key.",
            )
        if not has_permission(api_key.permission_list, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions.",
            )
        return Principal(api_key=api_key)

    return dependency


__all__ = [
    "GEOMETRY_QUEUE_READ",
    "GEOMETRY_QUEUE_WRITE",
    "PRINT_QUEUE_WRITE",
    "Principal",
    "WILDCARD_PERMISSION",
    "authenticate_api_key",
    "generate_api_key",
    "has_permission",
    "require_principal",
    "serialize_permissions",
]
