"""Named geometry catalogue: parametric algorithms customers can order."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splint_factory.config import get_settings
from splint_factory.geometry.schema import ParameterSchemaError, validate_parameter_schema
from splint_factory.models import GeometryProcessingQueue, NamedGeometry, User, UserRole
from splint_factory.schemas import CreatorSummary, creator_summary
from splint_factory.security import get_current_user, require_role
from splint_factory.security.auth import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/named-geometry", tags=["named-geometry"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]
OptionalImage = Annotated[UploadFile | None, File()]

GEOMETRY_NAME_MAX_LENGTH = 250


class NamedGeometryPayload(BaseModel):
    id: uuid.UUID
    geometry_name: str
    algorithm_name: str
    parameter_schema: str
    short_description: str | None
    is_active: bool
    has_preview_image: bool
    has_measurement_image: bool
    preview_image_updated_at: dt.datetime | None
    measurement_image_updated_at: dt.datetime | None
    created_at: dt.datetime
    updated_at: dt.datetime
    creator: CreatorSummary | None


class CreateNamedGeometryRequest(BaseModel):
    geometry_name: str | None = None
    algorithm_name: str | None = None
    parameter_schema: str | None = None
    short_description: str | None = None
    is_active: bool = True


def _payload(geometry: NamedGeometry) -> NamedGeometryPayload:
    return NamedGeometryPayload(
        id=geometry.id,
        geometry_name=geometry.geometry_name,
        algorithm_name=geometry.algorithm_name,
        parameter_schema=geometry.parameter_schema,
        short_description=geometry.short_description,
        is_active=geometry.is_active,
        has_preview_image=geometry.preview_image_content_type is not None,
        has_measurement_image=geometry.measurement_image_content_type is not None,
        preview_image_updated_at=geometry.preview_image_updated_at,
        measurement_image_updated_at=geometry.measurement_image_updated_at,
        created_at=geometry.created_at,
        updated_at=geometry.updated_at,
        creator=creator_summary(geometry.creator),
    )


def validate_definition(
    geometry_name: str | None,
    algorithm_name: str | None,
    parameter_schema: str | None,
) -> None:
    """Raise ``400`` unless the three defining fields of a geometry are valid."""

    if not geometry_name or not algorithm_name or not parameter_schema:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: geometry_name, algorithm_name, parameter_schema",
        )
    if len(geometry_name) > GEOMETRY_NAME_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"geometry_name must be {GEOMETRY_NAME_MAX_LENGTH} characters or less",
        )
    if " " in algorithm_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="algorithm_name cannot contain spaces",
        )
    try:
        validate_parameter_schema(parameter_schema)
    except ParameterSchemaError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid parameter_schema: {exc}",
        ) from exc


def _duplicate_name() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="A geometry with this name already exists.",
    )


def _name_taken(session: Session, name: str, exclude_id: uuid.UUID | None = None) -> bool:
    stmt = select(NamedGeometry.id).where(NamedGeometry.geometry_name == name)
    if exclude_id is not None:
        stmt = stmt.where(NamedGeometry.id != exclude_id)
    return session.execute(stmt).first() is not None


def _get_or_404(session: Session, geometry_id: uuid.UUID) -> NamedGeometry:
    geometry = session.get(NamedGeometry, geometry_id)
    if geometry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Named geometry not found."
        )
    return geometry


async def _read_image(upload: UploadFile | None) -> tuple[bytes, str] | None:
    if upload is None or not upload.filename:
        return None
    content_type = upload.content_type or "application/octet-stream"
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid image type."
        )
    data = await upload.read()
    if len(data) > get_settings().max_upload_file_size:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Image exceeds size limit."
        )
    return data, content_type


@router.get("", response_model=list[NamedGeometryPayload])
def list_named_geometries(session: SessionDep, _: UserDep) -> list[NamedGeometryPayload]:
    geometries = session.scalars(
        select(NamedGeometry).order_by(NamedGeometry.created_at.desc())
    ).all()
    return [_payload(geometry) for geometry in geometries]


@router.get("/{geometry_id}", response_model=NamedGeometryPayload)
def get_named_geometry(
    geometry_id: uuid.UUID, session: SessionDep, _: UserDep
) -> NamedGeometryPayload:
    return _payload(_get_or_404(session, geometry_id))


@router.post("", response_model=NamedGeometryPayload, status_code=status.HTTP_201_CREATED)
def create_named_geometry(
    payload: CreateNamedGeometryRequest,
    session: SessionDep,
    admin: SystemAdminDep,
) -> NamedGeometryPayload:
    validate_definition(payload.geometry_name, payload.algorithm_name, payload.parameter_schema)
    if _name_taken(session, payload.geometry_name):
        raise _duplicate_name()

    geometry = NamedGeometry(
        geometry_name=payload.geometry_name,
        algorithm_name=payload.algorithm_name,
        parameter_schema=payload.parameter_schema,
        short_description=payload.short_description or None,
        is_active=payload.is_active,
        creator_id=admin.id,
    )
    session.add(geometry)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise _duplicate_name() from exc
    session.refresh(geometry)
    logger.info("Created named geometry %s by %s", geometry.geometry_name, admin.email)
    return _payload(geometry)


@router.put("/{geometry_id}", response_model=NamedGeometryPayload)
async def update_named_geometry(
    geometry_id: uuid.UUID,
    session: SessionDep,
    admin: SystemAdminDep,
    geometry_name: Annotated[str | None, Form()] = None,
    algorithm_name: Annotated[str | None, Form()] = None,
    parameter_schema: Annotated[str | None, Form()] = None,
    short_description: Annotated[str | None, Form()] = None,
    is_active: Annotated[bool, Form()] = True,
    preview_image: OptionalImage = None,
    measurement_image: OptionalImage = None,
) -> NamedGeometryPayload:
    """Replace a geometry's definition from a multipart form.

    Image parts are optional; an omitted image keeps the stored one.
    """

    geometry = _get_or_404(session, geometry_id)
    validate_definition(geometry_name, algorithm_name, parameter_schema)
    if _name_taken(session, geometry_name, exclude_id=geometry.id):
        raise _duplicate_name()

    preview = await _read_image(preview_image)
    measurement = await _read_image(measurement_image)

    now = dt.datetime.now(dt.timezone.utc)
    changes: dict[str, Any] = {
        "geometry_name": geometry_name,
        "algorithm_name": algorithm_name,
        "parameter_schema": parameter_schema,
        "short_description": short_description or None,
        "is_active": is_active,
    }
    if preview is not None:
        changes.update(
            preview_image=preview[0],
            preview_image_content_type=preview[1],
            preview_image_updated_at=now,
        )
    if measurement is not None:
        changes.update(
            measurement_image=measurement[0],
            measurement_image_content_type=measurement[1],
            measurement_image_updated_at=now,
        )
    for field, value in changes.items():
        setattr(geometry, field, value)

    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise _duplicate_name() from exc
    session.refresh(geometry)
    logger.info("Updated named geometry %s by %s", geometry.geometry_name, admin.email)
    return _payload(geometry)


@router.delete("/{geometry_id}")
def delete_named_geometry(
    geometry_id: uuid.UUID, session: SessionDep, admin: SystemAdminDep
) -> dict[str, str]:
    geometry = _get_or_404(session, geometry_id)
    in_use = session.execute(
        select(GeometryProcessingQueue.id).where(
            GeometryProcessingQueue.geometry_id == geometry.id
        )
    ).first()
    if in_use is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Named geometry is referenced by geometry jobs.",
        )
    name = geometry.geometry_name
    session.delete(geometry)
    session.commit()
    logger.info("Deleted named geometry %s by %s", name, admin.email)
    return {"message": "Named geometry deleted successfully."}
