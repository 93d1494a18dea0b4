"""Organization management API."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splint_factory.models import Organization, User, UserRole
from splint_factory.security import get_current_user, require_role
from splint_factory.security.auth import get_db_session, has_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/organizations", tags=["organizations"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]


class OrganizationPayload(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    is_active: bool
    created_at: dt.datetime
    user_count: int = 0


class CreateOrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)


def _payload(org: Organization, user_count: int = 0) -> OrganizationPayload:
    return OrganizationPayload(
        id=org.id,
        name=org.name,
        description=org.description,
        is_active=org.is_active,
        created_at=org.created_at,
        user_count=user_count,
    )


@router.get("", response_model=list[OrganizationPayload])
def list_organizations(session: SessionDep, current_user: UserDep) -> list[OrganizationPayload]:
    """List organizations with their user counts.

    System administrators see every organization; everyone else only sees
    their own.
    """

    user_count = (
        select(func.count(User.id))
        .where(User.organization_id == Organization.id)
        .correlate(Organization)
        .scalar_subquery()
    )
    stmt = select(Organization, user_count).order_by(Organization.name.asc())
    if not has_role(current_user, UserRole.SYSTEM_ADMIN.value):
        if current_user.organization_id is None:
            return []
        stmt = stmt.where(Organization.id == current_user.organization_id)
    return [_payload(org, count or 0) for org, count in session.execute(stmt).all()]


@router.post("", response_model=OrganizationPayload, status_code=status.HTTP_201_CREATED)
def create_organization(
    payload: CreateOrganizationRequest,
    session: SessionDep,
    admin: SystemAdminDep,
) -> OrganizationPayload:
    name = payload.name.strip()
    if not name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Organization name is required.",
        )
    existing = session.execute(
        select(Organization).where(Organization.name == name)
    ).scalar_one_or_none()
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Organization name already exists.",
        )

    organization = Organization(name=name, description=payload.description or None)
    session.add(organization)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Organization name already exists.",
        ) from exc
    logger.info("Organization %s created by %s", organization.name, admin.email)
    return _payload(organization)
