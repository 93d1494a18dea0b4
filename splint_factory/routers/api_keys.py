"""System administrator management of machine API keys."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.orm import Session

from splint_factory.models import ApiKey, Organization, User, UserRole
from splint_factory.schemas import (
    CreatorSummary,
    OrganizationSummary,
    creator_summary,
    organization_summary,
)
from splint_factory.security import generate_api_key, require_role
from splint_factory.security.api_keys import WILDCARD_PERMISSION, serialize_permissions
from splint_factory.security.auth import get_db_session
from splint_factory.security.tokens import hash_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])

SessionDep = Annotated[Session, Depends(get_db_session)]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]


def _check_permissions(values: list[str]) -> list[str]:
    cleaned = []
    for value in values:
        value = value.strip()
        if not value:
            continue
        scope, _, action = value.partition(":")
        if value != WILDCARD_PERMISSION and not (scope and action):
            raise ValueError(f"Invalid permission: {value!r} (expected scope:action or *)")
        cleaned.append(value)
    return cleaned


class ApiKeyPayload(BaseModel):
    id: uuid.UUID
    name: str
    permissions: list[str]
    is_active: bool
    last_used_at: dt.datetime | None
    created_at: dt.datetime
    organization: OrganizationSummary | None
    creator: CreatorSummary | None


class CreatedApiKeyPayload(ApiKeyPayload):
    key: str = Field(..., description="Plaintext key; only returned on creation")


class CreateApiKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=250)
    permissions: list[str] = Field(default_factory=list)
    organization_id: uuid.UUID | None = None

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: list[str]) -> list[str]:
        return _check_permissions(value)


class UpdateApiKeyRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=250)
    permissions: list[str] | None = None
    is_active: bool | None = None

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return _check_permissions(value)


def _payload(api_key: ApiKey) -> ApiKeyPayload:
    return ApiKeyPayload(
        id=api_key.id,
        name=api_key.name,
        permissions=api_key.permission_list,
        is_active=api_key.is_active,
        last_used_at=api_key.last_used_at,
        created_at=api_key.created_at,
        organization=organization_summary(api_key.organization),
        creator=creator_summary(api_key.creator),
    )


def _get_or_404(session: Session, key_id: uuid.UUID) -> ApiKey:
    api_key = session.get(ApiKey, key_id)
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found.")
    return api_key


@router.get("", response_model=list[ApiKeyPayload])
def list_api_keys(session: SessionDep, _: SystemAdminDep) -> list[ApiKeyPayload]:
    keys = session.scalars(select(ApiKey).order_by(ApiKey.created_at.desc())).all()
    return [_payload(api_key) for api_key in keys]


@router.get("/{key_id}", response_model=ApiKeyPayload)
def get_api_key(key_id: uuid.UUID, session: SessionDep, _: SystemAdminDep) -> ApiKeyPayload:
    return _payload(_get_or_404(session, key_id))


@router.post("", response_model=CreatedApiKeyPayload, status_code=status.HTTP_201_CREATED)
def create_api_key(
    payload: CreateApiKeyRequest,
    session: SessionDep,
    admin: SystemAdminDep,
) -> CreatedApiKeyPayload:
    """Create a key; the plaintext value is only part of this response."""

    if payload.organization_id is not None and session.get(
        Organization, payload.organization_id
    ) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Organization not found.")

    raw_key = generate_api_key()
    api_key = ApiKey(
        name=payload.name.strip(),
        key_hash=hash_token(raw_key),
        permissions=serialize_permissions(payload.permissions),
        organization_id=payload.organization_id,
        created_by=admin.id,
    )
    session.add(api_key)
    session.commit()
    session.refresh(api_key)
    logger.info("API key %s created by %s", api_key.name, admin.email)
    return CreatedApiKeyPayload(**_payload(api_key).model_dump(), key=raw_key)


@router.patch("/{key_id}", response_model=ApiKeyPayload)
def update_api_key(
    key_id: uuid.UUID,
    payload: UpdateApiKeyRequest,
    session: SessionDep,
    admin: SystemAdminDep,
) -> ApiKeyPayload:
    api_key = _get_or_404(session, key_id)
    if payload.name is not None:
        api_key.name = payload.name.strip()
    if payload.permissions is not None:
        api_key.permissions = serialize_permissions(payload.permissions)
    if payload.is_active is not None:
        api_key.is_active = payload.is_active
    session.commit()
    session.refresh(api_key)
    logger.info("API key %s updated by %s", api_key.id, admin.email)
    return _payload(api_key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_api_key(key_id: uuid.UUID, session: SessionDep, admin: SystemAdminDep) -> Response:
    """Deactivate a key. The row is kept for auditing."""

    api_key = _get_or_404(session, key_id)
    api_key.is_active = False
    session.commit()
    logger.info("API key %s deactivated by %s", api_key.id, admin.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
