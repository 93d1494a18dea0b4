"""Tracked short links: administration and the public ``/l/<shortcode>`` route."""

from __future__ import annotations

import datetime as dt
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splint_factory.config import get_settings
from splint_factory.models import Link, LinkActivity, LinkType, User, UserRole
from splint_factory.rate_limit import get_client_ip
from splint_factory.schemas import CreatorSummary, creator_summary
from splint_factory.security import require_role
from splint_factory.security.auth import get_db_session
from splint_factory.storage.blob import safe_filename

logger = logging.getLogger(__name__)

router = APIRouter(tags=["links"])

SessionDep = Annotated[Session, Depends(get_db_session)]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]

ACTIVITY_LIMIT = 100
SHORTCODE_PATTERN = r"^[A-Za-z0-9_-]+$"


class LinkPayload(BaseModel):
    id: uuid.UUID
    shortcode: str
    link_type: LinkType
    link_target: str
    title: str | None
    is_active: bool
    click_count: int
    activity_count: int = 0
    created_at: dt.datetime
    creator: CreatorSummary | None


class CreateLinkRequest(BaseModel):
    shortcode: str = Field(..., min_length=1, max_length=64, pattern=SHORTCODE_PATTERN)
    link_type: LinkType
    link_target: str = Field(..., min_length=1)
    title: str | None = Field(default=None, max_length=255)


class LinkActivityPayload(BaseModel):
    id: uuid.UUID
    ip_address: str | None
    user_agent: str | None
    referer: str | None
    visit_time: dt.datetime


def _payload(link: Link, activity_count: int = 0) -> LinkPayload:
    return LinkPayload(
        id=link.id,
        shortcode=link.shortcode,
        link_type=LinkType(link.link_type),
        link_target=link.link_target,
        title=link.title,
        is_active=link.is_active,
        click_count=link.click_count,
        activity_count=activity_count,
        created_at=link.created_at,
        creator=creator_summary(link.creator),
    )


def _duplicate_shortcode() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Shortcode already exists. Please choose a different one.",
    )


def resolve_hosted_file(target: str, root: str | Path | None = None) -> Path:
    """Return the path of a hosted file, refusing anything outside the root."""

    base = Path(root or get_settings().hosted_files_dir).resolve()
    candidate = (base / target).resolve()
    if candidate == base or base not in candidate.parents:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file path.")
    return candidate


@router.get("/api/admin/links", response_model=list[LinkPayload])
def list_links(session: SessionDep, _: SystemAdminDep) -> list[LinkPayload]:
    activity_count = (
        select(func.count(LinkActivity.id))
        .where(LinkActivity.link_id == Link.id)
        .correlate(Link)
        .scalar_subquery()
    )
    rows = session.execute(
        select(Link, activity_count).order_by(Link.created_at.desc())
    ).all()
    return [_payload(link, count or 0) for link, count in rows]


@router.post("/api/admin/links", response_model=LinkPayload, status_code=status.HTTP_201_CREATED)
def create_link(payload: CreateLinkRequest, session: SessionDep, admin: SystemAdminDep) -> LinkPayload:
    existing = session.execute(
        select(Link.id).where(Link.shortcode == payload.shortcode)
    ).first()
    if existing is not None:
        raise _duplicate_shortcode()
    if payload.link_type is LinkType.HOSTED_FILE:
        resolve_hosted_file(payload.link_target)

    link = Link(
        shortcode=payload.shortcode,
        link_type=payload.link_type.value,
        link_target=payload.link_target,
        title=payload.title or None,
        created_by=admin.id,
    )
    session.add(link)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise _duplicate_shortcode() from exc
    session.refresh(link)
    logger.info("Link /l/%s created by %s", link.shortcode, admin.email)
    return _payload(link)


@router.get("/api/admin/links/{link_id}/activity", response_model=list[LinkActivityPayload])
def link_activity(link_id: uuid.UUID, session: SessionDep, _: SystemAdminDep) -> list[LinkActivityPayload]:
    if session.get(Link, link_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found.")
    activities = session.scalars(
        select(LinkActivity)
        .where(LinkActivity.link_id == link_id)
        .order_by(LinkActivity.visit_time.desc())
        .limit(ACTIVITY_LIMIT)
    ).all()
    return [
        LinkActivityPayload(
            id=activity.id,
            ip_address=activity.ip_address,
            user_agent=activity.user_agent,
            referer=activity.referer,
            visit_time=activity.visit_time,
        )
        for activity in activities
    ]


@router.get("/l/{shortcode}", include_in_schema=False)
def follow_link(shortcode: str, request: Request, session: SessionDep) -> Response:
    """Record the visit, then redirect or serve the hosted file."""

    link = session.execute(select(Link).where(Link.shortcode == shortcode)).scalar_one_or_none()
    if link is None or not link.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link not found.")

    session.add(
        LinkActivity(
            link_id=link.id,
            ip_address=get_client_ip(request)[:64],
            user_agent=request.headers.get("User-Agent"),
            referer=request.headers.get("Referer"),
        )
    )
    session.execute(
        update(Link).where(Link.id == link.id).values(click_count=Link.click_count + 1)
    )
    session.commit()

    if link.link_type == LinkType.EXTERNAL_URL.value:
        return RedirectResponse(link.link_target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    path = resolve_hosted_file(link.link_target)
    if not path.is_file():
        logger.error("Hosted file %s for /l/%s is missing", path, shortcode)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found.")
    content_type, _ = mimetypes.guess_type(path.name)
    return FileResponse(
        path,
        media_type=content_type or "application/octet-stream",
        filename=safe_filename(path.name),
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
