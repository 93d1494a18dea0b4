"""Lightweight geometry listing and image serving for the ordering pages."""

from __future__ import annotations

import datetime as dt
import uuid
from email.utils import format_datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session, undefer

from splint_factory.models import NamedGeometry, User
from splint_factory.security import get_current_user
from splint_factory.security.auth import get_db_session
from splint_factory.security.tokens import as_utc

router = APIRouter(tags=["geometries"])

SessionDep = Annotated[Session, Depends(get_db_session)]
UserDep = Annotated[User, Depends(get_current_user)]

IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class GeometrySummary(BaseModel):
    id: uuid.UUID
    geometry_name: str
    algorithm_name: str
    short_description: str | None
    preview_image_updated_at: dt.datetime | None
    measurement_image_updated_at: dt.datetime | None
    created_at: dt.datetime


@router.get("/api/geometries", response_model=list[GeometrySummary])
def list_geometries(
    session: SessionDep,
    _: UserDep,
    active_only: bool = False,
) -> list[GeometrySummary]:
    """List geometries by name without loading image bytes."""

    stmt = select(NamedGeometry).order_by(NamedGeometry.geometry_name.asc())
    if active_only:
        stmt = stmt.where(NamedGeometry.is_active.is_(True))
    return [
        GeometrySummary(
            id=geometry.id,
            geometry_name=geometry.geometry_name,
            algorithm_name=geometry.algorithm_name,
            short_description=geometry.short_description,
            preview_image_updated_at=geometry.preview_image_updated_at,
            measurement_image_updated_at=geometry.measurement_image_updated_at,
            created_at=geometry.created_at,
        )
        for geometry in session.scalars(stmt).all()
    ]


@router.get("/api/geometry-images/{geometry_id}/{image_type}")
def get_geometry_image(
    geometry_id: uuid.UUID,
    image_type: Literal["preview", "measurement"],
    session: SessionDep,
) -> Response:
    """Serve a geometry image; public so it can back plain ``<img>`` tags."""

    column = (
        NamedGeometry.preview_image
        if image_type == "preview"
        else NamedGeometry.measurement_image
    )
    geometry = session.execute(
        select(NamedGeometry)
        .options(undefer(column))
        .where(NamedGeometry.id == geometry_id)
    ).scalar_one_or_none()
    if geometry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Geometry not found.")

    if image_type == "preview":
        data = geometry.preview_image
        content_type = geometry.preview_image_content_type
        updated_at = geometry.preview_image_updated_at
    else:
        data = geometry.measurement_image
        content_type = geometry.measurement_image_content_type
        updated_at = geometry.measurement_image_updated_at
    if not data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found.")

    last_modified = as_utc(updated_at) if updated_at else dt.datetime.now(dt.timezone.utc)
    return Response(
        content=data,
        media_type=content_type or "image/png",
        headers={
            "Cache-Control": IMAGE_CACHE_CONTROL,
            "Last-Modified": format_datetime(last_modified, usegmt=True),
        },
    )
