"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from splint_factory.core.auth import SessionTokenPayload, get_session_context
from splint_factory.models import User, UserRole
from splint_factory.models.session import get_sessionmaker


_ROLE_LEVELS = {
    UserRole.MEMBER.value: 0,
    UserRole.ORG_ADMIN.value: 1,
    UserRole.SYSTEM_ADMIN.value: 2,
}
_SESSION_FACTORY: sessionmaker[Session] | None = None


def _get_session_factory() -> sessionmaker[Session]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = get_sessionmaker()
    return _SESSION_FACTORY


def reset_session_factory() -> None:
    """Forget the cached session factory; tests call this after changing DATABASE_URL."""

    global _SESSION_FACTORY
    _SESSION_FACTORY = None


def get_db_session() -> Iterator[Session]:
    """Yield a SQLAlchemy session for request-scoped dependencies."""

    session = _get_session_factory()()
    try:
        yield session
    finally:
        session.close()


async def get_current_token_payload(request: Request) -> SessionTokenPayload:
    """Decode and validate the bearer token (or session cookie) from ``request``."""

    payload = await get_session_context(request)
    token_type = payload.get("type")
    if token_type and token_type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required.",
        )
    return payload


def load_user_from_payload(session: Session, payload: SessionTokenPayload) -> User:
    """Resolve the active :class:`~splint_factory.models.User` named by ``payload``."""

    try:
        user_id = uuid.UUID(payload["user_id"])
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identifier in token.",
        ) from exc

    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User is inactive or no longer exists.",
        )
    return user


async def get_current_user(
    payload: SessionTokenPayload = Depends(get_current_token_payload),
    session: Session = Depends(get_db_session),
) -> User:
    """Resolve the authenticated user from the token payload.

    The role and organization are read from the database rather than the token
    so that changes made by an administrator take effect immediately.
    """

    return load_user_from_payload(session, payload)


def role_level(role: str | None) -> int:
    """Return the rank of ``role``; unknown roles rank below MEMBER."""

    if role is None:
        return -1
    return _ROLE_LEVELS.get(role, -1)


def has_role(user: User, min_role: str) -> bool:
    return role_level(user.role) >= _ROLE_LEVELS[min_role]


def require_role(min_role: str) -> Callable[..., User]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges."""

    if min_role not in _ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if role_level(user.role) < 0:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No roles assigned to user.",
            )
        if not has_role(user, min_role):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        return user

    return dependency


async def require_organization_member(user: User = Depends(get_current_user)) -> User:
    """Ensure the caller belongs to an organization."""

    if user.organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User must be part of an organization.",
        )
    return user


def ensure_same_organization(user: User, organization_id: uuid.UUID | None) -> None:
    """Raise ``403`` unless ``user`` belongs to ``organization_id``."""

    if user.organization_id is None or user.organization_id != organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied.",
        )


__all__ = [
    "ensure_same_organization",
    "get_current_token_payload",
    "get_current_user",
    "get_db_session",
    "has_role",
    "load_user_from_payload",
    "require_organization_member",
    "require_role",
    "reset_session_factory",
    "role_level",
]
