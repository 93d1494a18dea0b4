"""Response models shared by several routers."""

from __future__ import annotations

import datetime as dt
import uuid

from pydantic import BaseModel, ConfigDict

from splint_factory.models import Organization, User


class OrganizationSummary(BaseModel):
    id: uuid.UUID
    name: str


class UserPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    name: str | None
    role: str
    organization_id: uuid.UUID | None
    organization: OrganizationSummary | None = None
    is_active: bool
    created_at: dt.datetime


class CreatorSummary(BaseModel):
    id: uuid.UUID
    name: str | None
    email: str


def organization_summary(org: Organization | None) -> OrganizationSummary | None:
    if org is None:
        return None
    return OrganizationSummary(id=org.id, name=org.name)


def user_payload(user: User) -> UserPayload:
    return UserPayload(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        organization_id=user.organization_id,
        organization=organization_summary(user.organization),
        is_active=user.is_active,
        created_at=user.created_at,
    )


def creator_summary(user: User | None) -> CreatorSummary | None:
    if user is None:
        return None
    return CreatorSummary(id=user.id, name=user.name, email=user.email)


__all__ = [
    "CreatorSummary",
    "OrganizationSummary",
    "UserPayload",
    "creator_summary",
    "organization_summary",
    "user_payload",
]
