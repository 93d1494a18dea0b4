"""Invitation links for onboarding members into an organization."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.config import get_settings
from splint_factory.models import InvitationLink, Organization, User, UserRole
from splint_factory.schemas import (
    CreatorSummary,
    OrganizationSummary,
    creator_summary,
    organization_summary,
)
from splint_factory.security import get_current_user, require_role
from splint_factory.security.auth import get_db_session, has_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invitations", tags=["invitations"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
OrgAdminDep = Annotated[User, Depends(require_role(UserRole.ORG_ADMIN.value))]


class InvitationPayload(BaseModel):
    id: uuid.UUID
    token: str
    email: str | None
    expires_at: dt.datetime
    used_at: dt.datetime | None
    created_at: dt.datetime
    organization: OrganizationSummary | None
    created_by: CreatorSummary | None
    used_by: CreatorSummary | None


class CreateInvitationRequest(BaseModel):
    organization_id: uuid.UUID | None = None
    email: EmailStr | None = None
    expires_in_days: int | None = Field(default=None, ge=1, le=90)


def _payload(invitation: InvitationLink) -> InvitationPayload:
    return InvitationPayload(
        id=invitation.id,
        token=invitation.token,
        email=invitation.email,
        expires_at=invitation.expires_at,
        used_at=invitation.used_at,
        created_at=invitation.created_at,
        organization=organization_summary(invitation.organization),
        created_by=creator_summary(invitation.created_by),
        used_by=creator_summary(invitation.used_by),
    )


@router.get("", response_model=list[InvitationPayload])
def list_invitations(session: SessionDep, current_user: UserDep) -> list[InvitationPayload]:
    """List invitations of the caller's organization, newest first."""

    if current_user.organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User not assigned to organization.",
        )
    invitations = session.scalars(
        select(InvitationLink)
        .where(InvitationLink.organization_id == current_user.organization_id)
        .order_by(InvitationLink.created_at.desc())
    ).all()
    return [_payload(invitation) for invitation in invitations]


@router.post("", response_model=InvitationPayload, status_code=status.HTTP_201_CREATED)
def create_invitation(
    payload: CreateInvitationRequest,
    session: SessionDep,
    current_user: OrgAdminDep,
) -> InvitationPayload:
    """Issue a single-use invitation token.

    Organization admins invite into their own organization; system
    administrators may name any organization.
    """

    organization_id = payload.organization_id or current_user.organization_id
    if organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="organization_id is required.",
        )
    if (
        not has_role(current_user, UserRole.SYSTEM_ADMIN.value)
        and organization_id != current_user.organization_id
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot create invitations for other organizations.",
        )
    if session.get(Organization, organization_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found."
        )

    days = payload.expires_in_days or get_settings().invitation_ttl_days
    invitation = InvitationLink(
        token=secrets.token_hex(32),
        email=payload.email.lower() if payload.email else None,
        expires_at=dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=days),
        organization_id=organization_id,
        created_by_user_id=current_user.id,
    )
    session.add(invitation)
    session.commit()
    session.refresh(invitation)
    logger.info("Invitation created for organization %s by %s", organization_id, current_user.email)
    return _payload(invitation)
