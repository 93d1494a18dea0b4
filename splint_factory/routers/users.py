"""User listing and role/organization administration."""

from __future__ import annotations

import logging
import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.models import Organization, User, UserRole
from splint_factory.schemas import CreatorSummary, UserPayload, creator_summary, user_payload
from splint_factory.security import get_current_user
from splint_factory.security.auth import get_db_session, has_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]

RoleName = Literal["SYSTEM_ADMIN", "ORG_ADMIN", "MEMBER"]


class UserListItem(UserPayload):
    invited_by: CreatorSummary | None = None


class UpdateUserRequest(BaseModel):
    role: RoleName | None = None
    organization_id: uuid.UUID | None = None


def _list_item(user: User) -> UserListItem:
    return UserListItem(
        **user_payload(user).model_dump(),
        invited_by=creator_summary(user.invited_by),
    )


@router.get("", response_model=list[UserListItem])
def list_users(session: SessionDep, current_user: UserDep) -> list[UserListItem]:
    """List users: everyone for system administrators, otherwise the caller's organization."""

    if has_role(current_user, UserRole.SYSTEM_ADMIN.value):
        stmt = (
            select(User)
            .outerjoin(Organization, User.organization_id == Organization.id)
            .order_by(Organization.name.asc(), User.role.asc(), User.name.asc())
        )
    else:
        if current_user.organization_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="User not assigned to organization.",
            )
        stmt = (
            select(User)
            .where(User.organization_id == current_user.organization_id)
            .order_by(User.role.asc(), User.name.asc())
        )
    return [_list_item(user) for user in session.scalars(stmt).unique().all()]


@router.patch("/{user_id}", response_model=UserListItem)
def update_user(
    user_id: uuid.UUID,
    payload: UpdateUserRequest,
    session: SessionDep,
    current_user: UserDep,
) -> UserListItem:
    """Change a user's role and/or organization.

    Members may not change anyone.  Organization admins may only change users
    of their own organization, may not grant SYSTEM_ADMIN and may not move
    users into another organization.  Sending ``organization_id: null``
    unassigns the user.
    """

    if not has_role(current_user, UserRole.ORG_ADMIN.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions."
        )

    target = session.get(User, user_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")

    fields = payload.model_fields_set
    is_system_admin = has_role(current_user, UserRole.SYSTEM_ADMIN.value)
    if not is_system_admin:
        if current_user.organization_id is None or target.organization_id != current_user.organization_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Cannot modify users from other organizations.",
            )
        if payload.role == UserRole.SYSTEM_ADMIN.value:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Cannot promote users to System Admin role.",
            )
        if (
            "organization_id" in fields
            and payload.organization_id is not None
            and payload.organization_id != current_user.organization_id
        ):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Cannot move users to other organizations.",
            )

    if "role" in fields and payload.role is not None:
        target.role = payload.role
    if "organization_id" in fields:
        if payload.organization_id is not None and session.get(
            Organization, payload.organization_id
        ) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found."
            )
        target.organization_id = payload.organization_id

    session.commit()
    session.refresh(target)
    logger.info(
        "User %s updated by %s (role=%s, organization=%s)",
        target.email,
        current_user.email,
        target.role,
        target.organization_id,
    )
    return _list_item(target)
