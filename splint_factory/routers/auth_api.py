"""Interactive authentication: login, token refresh, logout and registration."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.core.auth import ACCESS_TOKEN_COOKIE
from splint_factory.models import InvitationLink, User, UserRole
from splint_factory.rate_limit import limiter
from splint_factory.schemas import UserPayload, user_payload
from splint_factory.security import (
    create_access_token,
    create_refresh_token,
    get_current_user,
    hash_password,
    revoke_refresh_token,
    verify_password,
    verify_refresh_token,
)
from splint_factory.security.auth import get_db_session
from splint_factory.security.passwords import MIN_PASSWORD_LENGTH
from splint_factory.security.tokens import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
AUTH_SCHEME_BEARER: Literal["bearer"] = "bearer"


class TokenEnvelope(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = AUTH_SCHEME_BEARER
    expires_in: int = Field(..., description="Seconds until the access token expires")
    refresh_expires_in: int = Field(
        ..., description="Seconds until the refresh token expires"
    )


class AuthenticatedResponse(BaseModel):
    user: UserPayload
    tokens: TokenEnvelope


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: str


class RegisterRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH, max_length=128)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _issue_tokens(
    session: Session, request: Request, response: Response, user: User
) -> AuthenticatedResponse:
    """Create an access/refresh pair, set the session cookie and commit."""

    user_agent = request.headers.get("User-Agent")
    refresh_token, refresh_record = create_refresh_token(session, user, user_agent=user_agent)
    access_token, access_expires_at = create_access_token(user)
    session.commit()

    now = _utcnow()
    access_seconds = max(int((as_utc(access_expires_at) - now).total_seconds()), 0)
    refresh_seconds = max(int((as_utc(refresh_record.expires_at) - now).total_seconds()), 0)

    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        access_token,
        max_age=access_seconds,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
    )
    return AuthenticatedResponse(
        user=user_payload(user),
        tokens=TokenEnvelope(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_seconds,
            refresh_expires_in=refresh_seconds,
        ),
    )


@router.post("/login", response_model=AuthenticatedResponse)
@limiter.limit("20/minute")
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Authenticate a user via e-mail and password."""

    email = _normalize_email(payload.email)
    user = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        logger.info("Failed login for %s", email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials."
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive."
        )

    return _issue_tokens(session, request, response, user)


@router.post("/refresh", response_model=AuthenticatedResponse)
def refresh(
    payload: RefreshRequest,
    request: Request,
    response: Response,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Exchange a refresh token for a new access/refresh pair."""

    token = verify_refresh_token(session, payload.refresh_token)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token."
        )

    user = session.get(User, token.user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="User is inactive."
        )

    revoke_refresh_token(token)
    return _issue_tokens(session, request, response, user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    payload: LogoutRequest,
    session: SessionDep,
    current_user: UserDep,
) -> Response:
    """Revoke a single refresh token for the authenticated user."""

    token = verify_refresh_token(session, payload.refresh_token)
    if token is None or token.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid refresh token."
        )

    revoke_refresh_token(token)
    session.commit()
    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    return response


@router.get("/me", response_model=UserPayload)
def me(current_user: UserDep) -> UserPayload:
    return user_payload(current_user)


@router.post(
    "/register",
    response_model=AuthenticatedResponse,
    status_code=status.HTTP_201_CREATED,
)
def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    session: SessionDep,
) -> AuthenticatedResponse:
    """Create a MEMBER account from an invitation token.

    The account joins the inviting organization; an invitation addressed to a
    specific e-mail only accepts that address.
    """

    invitation = session.execute(
        select(InvitationLink).where(InvitationLink.token == payload.token)
    ).scalar_one_or_none()
    if (
        invitation is None
        or invitation.used_at is not None
        or as_utc(invitation.expires_at) <= _utcnow()
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired invitation.",
        )

    email = _normalize_email(payload.email)
    if invitation.email and _normalize_email(invitation.email) != email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email does not match the invitation.",
        )

    existing_user = session.execute(
        select(User).where(User.email == email)
    ).scalar_one_or_none()
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="User already exists."
        )

    now = _utcnow()
    user = User(
        organization_id=invitation.organization_id,
        email=email,
        name=payload.name,
        password_hash=hash_password(payload.password),
        role=UserRole.MEMBER.value,
        invited_by_user_id=invitation.created_by_user_id,
        invitation_accepted_at=now,
    )
    session.add(user)
    session.flush()
    invitation.used_at = now
    invitation.used_by_user_id = user.id
    session.flush()
    session.refresh(user)
    logger.info("Registered %s into organization %s", email, invitation.organization_id)

    return _issue_tokens(session, request, response, user)
