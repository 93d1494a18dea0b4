"""Self-service profile for the signed-in user."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splint_factory.models import User
from splint_factory.schemas import UserPayload, user_payload
from splint_factory.security import get_current_user, hash_password, verify_password
from splint_factory.security.auth import get_db_session
from splint_factory.security.passwords import MIN_PASSWORD_LENGTH

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/profile", tags=["profile"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]

EMAIL_IN_USE = "Email is already in use."


class ProfilePayload(UserPayload):
    updated_at: dt.datetime | None = None


class UpdateProfileRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    # The profile page posts camelCase password fields.
    current_password: str | None = Field(
        default=None, validation_alias=AliasChoices("current_password", "currentPassword")
    )
    new_password: str | None = Field(
        default=None,
        min_length=MIN_PASSWORD_LENGTH,
        max_length=128,
        validation_alias=AliasChoices("new_password", "newPassword"),
    )


def _profile_payload(user: User) -> ProfilePayload:
    return ProfilePayload(**user_payload(user).model_dump(), updated_at=user.updated_at)


@router.get("", response_model=ProfilePayload)
def get_profile(current_user: UserDep) -> ProfilePayload:
    return _profile_payload(current_user)


@router.put("", response_model=ProfilePayload)
def update_profile(
    payload: UpdateProfileRequest,
    session: SessionDep,
    current_user: UserDep,
) -> ProfilePayload:
    """Update name and e-mail; a new password needs the current one."""

    email = payload.email.strip().lower()
    if email != current_user.email:
        taken = session.execute(
            select(User.id).where(User.email == email, User.id != current_user.id)
        ).scalar_one_or_none()
        if taken is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=EMAIL_IN_USE)

    if payload.new_password:
        if not payload.current_password:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Current password is required to set a new password.",
            )
        if not verify_password(payload.current_password, current_user.password_hash):
            logger.warning("Rejected password change for %s: wrong current password", current_user.email)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Current password is incorrect.",
            )
        current_user.password_hash = hash_password(payload.new_password)

    current_user.name = payload.name.strip()
    current_user.email = email
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=EMAIL_IN_USE) from exc
    session.refresh(current_user)
    logger.info(
        "Profile updated for %s%s",
        current_user.email,
        " (password changed)" if payload.new_password else "",
    )
    return _profile_payload(current_user)


__all__ = ["router"]
