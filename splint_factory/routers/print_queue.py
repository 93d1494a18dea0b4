"""Print queue API and the live progress relay.

The desktop client at the printer pushes progress and logs; browsers follow
along through ``GET /api/print-queue/events`` and poll the list endpoint as a
fallback.  Entry status is derived from timestamps (see
:mod:`splint_factory.printing.status`) and a last write wins on every field.
"""

from __future__ import annotations

import base64
import datetime as dt
import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, StrictBool
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from splint_factory.models import GeometryProcessingQueue, PrintQueue, User
from splint_factory.printing.events import SSE_HEADERS, get_broadcaster
from splint_factory.printing.status import (
    ALREADY_DECIDED_MESSAGE,
    AcceptanceError,
    derive_acceptance,
    derive_print_status,
    ensure_acceptance_allowed,
)
from splint_factory.schemas import CreatorSummary, creator_summary
from splint_factory.security import (
    Principal,
    ensure_same_organization,
    require_organization_member,
    require_principal,
)
from splint_factory.security.api_keys import PRINT_QUEUE_WRITE
from splint_factory.security.auth import get_db_session

from .geometry_processing import decode_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/print-queue", tags=["print-queue"])

SessionDep = Annotated[Session, Depends(get_db_session)]
MemberDep = Annotated[User, Depends(require_organization_member)]
PrinterDep = Annotated[Principal, Depends(require_principal(PRINT_QUEUE_WRITE))]


class PrintQueuePayload(BaseModel):
    id: uuid.UUID
    geometry_job_id: uuid.UUID
    status: str
    acceptance: str | None
    print_started_at: dt.datetime | None
    print_completed_at: dt.datetime | None
    is_print_successful: bool | None
    print_note: str | None
    print_acceptance: bool | None
    is_enabled: bool
    created_at: dt.datetime
    progress: float | None
    progress_last_report_time: dt.datetime | None
    logs: str | None
    object_id: str | None
    customer_id: str | None
    customer_note: str | None
    geometry_name: str | None
    algorithm_name: str | None
    organization_name: str | None
    creator: CreatorSummary | None
    geometry_file_name: str | None
    print_file_name: str | None
    has_geometry_file: bool
    has_print_file: bool
    geometry_file_contents: str | None = None
    print_file_contents: str | None = None


class CreatePrintQueueRequest(BaseModel):
    geometry_job_id: uuid.UUID
    geometry_file_contents: str | None = None
    geometry_file_name: str | None = Field(default=None, max_length=255)
    print_file_contents: str | None = None
    print_file_name: str | None = Field(default=None, max_length=255)


class UpdatePrintQueueRequest(BaseModel):
    print_started_at: dt.datetime | None = None
    print_completed_at: dt.datetime | None = None
    is_print_successful: bool | None = None
    print_note: str | None = None
    is_enabled: bool | None = None
    geometry_file_contents: str | None = None
    geometry_file_name: str | None = Field(default=None, max_length=255)
    print_file_contents: str | None = None
    print_file_name: str | None = Field(default=None, max_length=255)


class ProgressRequest(BaseModel):
    # Strict: JSON booleans and numeric strings are not progress values.
    progress: float = Field(..., ge=0, le=100, strict=True)
    filename: str | None = None


class LogsRequest(BaseModel):
    logs: str


class AcceptanceRequest(BaseModel):
    print_acceptance: StrictBool
    print_note: str | None = None


def entry_payload(entry: PrintQueue, *, include_files: bool = False) -> PrintQueuePayload:
    job = entry.geometry_job
    status_value = derive_print_status(entry)
    acceptance = derive_acceptance(entry)
    payload = PrintQueuePayload(
        id=entry.id,
        geometry_job_id=entry.geometry_job_id,
        status=status_value.value,
        acceptance=acceptance.value if acceptance else None,
        print_started_at=entry.print_started_at,
        print_completed_at=entry.print_completed_at,
        is_print_successful=entry.is_print_successful,
        print_note=entry.print_note,
        print_acceptance=entry.print_acceptance,
        is_enabled=entry.is_enabled,
        created_at=entry.created_at,
        progress=entry.progress,
        progress_last_report_time=entry.progress_last_report_time,
        logs=entry.logs,
        object_id=job.object_id,
        customer_id=job.customer_id,
        customer_note=job.customer_note,
        geometry_name=job.geometry.geometry_name if job.geometry else None,
        algorithm_name=job.geometry.algorithm_name if job.geometry else None,
        organization_name=job.organization.name if job.organization else None,
        creator=creator_summary(job.creator),
        geometry_file_name=job.geometry_file_name,
        print_file_name=job.print_file_name,
        has_geometry_file=bool(
            job.geometry_file_url or job.geometry_file_pathname or job.geometry_file_name
        ),
        has_print_file=bool(job.print_file_url or job.print_file_pathname or job.print_file_name),
    )
    if include_files:
        if job.geometry_file_contents is not None:
            payload.geometry_file_contents = base64.b64encode(job.geometry_file_contents).decode("ascii")
        if job.print_file_contents is not None:
            payload.print_file_contents = base64.b64encode(job.print_file_contents).decode("ascii")
    return payload


def _get_entry(session: Session, entry_id: uuid.UUID) -> PrintQueue:
    entry = session.get(PrintQueue, entry_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Print queue entry not found."
        )
    return entry


def _get_entry_for_user(session: Session, entry_id: uuid.UUID, user: User) -> PrintQueue:
    entry = _get_entry(session, entry_id)
    ensure_same_organization(user, entry.geometry_job.organization_id)
    return entry


def _get_entry_for_principal(
    session: Session, entry_id: uuid.UUID, principal: Principal
) -> PrintQueue:
    """Users are limited to their organization; org-bound API keys likewise."""

    entry = _get_entry(session, entry_id)
    organization_id = entry.geometry_job.organization_id
    if principal.user is not None:
        ensure_same_organization(principal.user, organization_id)
    elif principal.api_key is not None and principal.api_key.organization_id is not None:
        if principal.api_key.organization_id != organization_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied.")
    return entry


def _store_files(
    job: GeometryProcessingQueue,
    payload: CreatePrintQueueRequest | UpdatePrintQueueRequest,
) -> None:
    """Copy provided file contents and names onto the geometry job."""

    fields = payload.model_fields_set
    for kind in ("geometry", "print"):
        contents_field = f"{kind}_file_contents"
        name_field = f"{kind}_file_name"
        if contents_field in fields:
            setattr(job, contents_field, decode_file(getattr(payload, contents_field), kind))
        if name_field in fields:
            setattr(job, name_field, getattr(payload, name_field) or None)


@router.get("", response_model=list[PrintQueuePayload])
def list_print_queue(session: SessionDep, user: MemberDep) -> list[PrintQueuePayload]:
    """Enabled entries of the caller's organization.

    Failed prints come first, then successful ones, then prints that have not
    finished, each group by start time with unstarted entries first.
    """

    entries = session.scalars(
        select(PrintQueue)
        .join(GeometryProcessingQueue, PrintQueue.geometry_job_id == GeometryProcessingQueue.id)
        .where(
            PrintQueue.is_enabled.is_(True),
            GeometryProcessingQueue.organization_id == user.organization_id,
        )
        .order_by(
            PrintQueue.is_print_successful.asc().nulls_last(),
            PrintQueue.print_started_at.asc().nulls_first(),
            PrintQueue.created_at.asc(),
        )
    ).unique().all()
    return [entry_payload(entry) for entry in entries]


@router.post("", response_model=PrintQueuePayload, status_code=status.HTTP_201_CREATED)
def create_print_queue_entry(
    payload: CreatePrintQueueRequest,
    session: SessionDep,
    user: MemberDep,
) -> PrintQueuePayload:
    job = session.get(GeometryProcessingQueue, payload.geometry_job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Geometry processing queue entry not found.",
        )
    ensure_same_organization(user, job.organization_id)

    _store_files(job, payload)
    entry = PrintQueue(geometry_job_id=job.id)
    session.add(entry)
    session.commit()
    session.refresh(entry)
    logger.info("Created print queue entry %s for geometry job %s", entry.id, job.id)
    return entry_payload(entry)


@router.get("/events")
async def print_queue_events(
    request: Request,
    session: SessionDep,
    user: MemberDep,
) -> StreamingResponse:
    """Stream updates for the caller's organization as Server-Sent Events.

    ``EventSource`` cannot send headers, so the session cookie set at login is
    accepted as well as a bearer token.
    """

    # Release the pooled connection; the stream can stay open for hours.
    session.close()
    logger.info("Print queue event stream opened by %s", user.email)
    return StreamingResponse(
        get_broadcaster().stream(request.is_disconnected, organization_id=user.organization_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/{entry_id}", response_model=PrintQueuePayload)
def get_print_queue_entry(
    entry_id: uuid.UUID,
    session: SessionDep,
    user: MemberDep,
    include_files: bool = False,
) -> PrintQueuePayload:
    entry = _get_entry_for_user(session, entry_id, user)
    return entry_payload(entry, include_files=include_files)


@router.put("/{entry_id}", response_model=PrintQueuePayload)
def update_print_queue_entry(
    entry_id: uuid.UUID,
    payload: UpdatePrintQueueRequest,
    session: SessionDep,
    user: MemberDep,
) -> PrintQueuePayload:
    """Partial update; only fields present in the body are written."""

    entry = _get_entry_for_user(session, entry_id, user)
    fields = payload.model_fields_set
    for field in (
        "print_started_at",
        "print_completed_at",
        "is_print_successful",
        "print_note",
        "is_enabled",
    ):
        if field in fields:
            value = getattr(payload, field)
            if field == "is_enabled" and value is None:
                continue
            setattr(entry, field, value)
    _store_files(entry.geometry_job, payload)
    session.commit()
    session.refresh(entry)
    logger.info("Updated print queue entry %s by %s", entry.id, user.email)

    get_broadcaster().publish(
        {"type": "update", "id": str(entry.id), "status": derive_print_status(entry).value},
        organization_id=entry.geometry_job.organization_id,
    )
    return entry_payload(entry)


@router.put("/{entry_id}/progress")
def report_progress(
    entry_id: uuid.UUID,
    payload: ProgressRequest,
    session: SessionDep,
    principal: PrinterDep,
) -> dict[str, Any]:
    """Store a progress push from the printer client and relay it to browsers."""

    entry = _get_entry_for_principal(session, entry_id, principal)
    entry.progress = payload.progress
    entry.progress_last_report_time = dt.datetime.now(dt.timezone.utc)
    session.commit()

    delivered = get_broadcaster().publish(
        {
            "type": "progress",
            "id": str(entry.id),
            "progress": entry.progress,
            "progressLastReportTime": entry.progress_last_report_time.isoformat(),
        },
        organization_id=entry.geometry_job.organization_id,
    )
    logger.debug(
        "Progress %.1f%% for print %s from %s relayed to %d subscribers",
        payload.progress,
        entry.id,
        principal.label,
        delivered,
    )
    return {"success": True, "id": str(entry.id), "progress": entry.progress}


@router.put("/{entry_id}/logs")
def update_logs(
    entry_id: uuid.UUID,
    payload: LogsRequest,
    session: SessionDep,
    principal: PrinterDep,
) -> dict[str, Any]:
    entry = _get_entry_for_principal(session, entry_id, principal)
    entry.logs = payload.logs
    session.commit()
    return {"success": True, "id": str(entry.id)}


@router.post("/{entry_id}/acceptance", response_model=PrintQueuePayload)
def record_acceptance(
    entry_id: uuid.UUID,
    payload: AcceptanceRequest,
    session: SessionDep,
    user: MemberDep,
) -> PrintQueuePayload:
    """Accept or reject a finished print; the decision is final."""

    entry = _get_entry_for_user(session, entry_id, user)
    try:
        ensure_acceptance_allowed(entry)
    except AcceptanceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    # Only the first of two concurrent decisions matches the IS NULL guard.
    values: dict[str, Any] = {"print_acceptance": payload.print_acceptance}
    if payload.print_note:
        values["print_note"] = payload.print_note
    result = session.execute(
        update(PrintQueue)
        .where(PrintQueue.id == entry.id, PrintQueue.print_acceptance.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        logger.info("Print %s was decided concurrently; rejecting decision by %s", entry.id, user.email)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=ALREADY_DECIDED_MESSAGE
        )
    session.commit()
    session.refresh(entry)
    logger.info(
        "Print %s %s by %s",
        entry.id,
        "accepted" if entry.print_acceptance else "rejected",
        user.email,
    )

    get_broadcaster().publish(
        {
            "type": "acceptance",
            "id": str(entry.id),
            "printAcceptance": entry.print_acceptance,
        },
        organization_id=entry.geometry_job.organization_id,
    )
    return entry_payload(entry)


__all__ = ["entry_payload", "router"]
