"""Organization-scoped geometry processing jobs and their output files."""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session, undefer

from splint_factory.geometry.object_ids import (
    ObjectIdExhaustedError,
    generate_object_id,
    is_valid_object_id,
    normalize_object_id,
)
from splint_factory.geometry.schema import ParameterDataError, validate_parameter_data
from splint_factory.models import GeometryProcessingQueue, NamedGeometry, User
from splint_factory.printing.status import derive_job_status
from splint_factory.schemas import CreatorSummary, creator_summary
from splint_factory.security import ensure_same_organization, require_organization_member
from splint_factory.security.auth import get_db_session
from splint_factory.storage.blob import (
    BlobNotFoundError,
    content_type_for,
    get_blob_storage,
    is_local_blob_url,
    safe_filename,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/geometry-jobs", tags=["geometry-jobs"])

SessionDep = Annotated[Session, Depends(get_db_session)]
MemberDep = Annotated[User, Depends(require_organization_member)]

CUSTOMER_NOTE_MAX_LENGTH = 500
CUSTOMER_ID_MAX_LENGTH = 20


class GeometrySummary(BaseModel):
    id: uuid.UUID
    geometry_name: str
    algorithm_name: str


class GeometryJobPayload(BaseModel):
    id: uuid.UUID
    object_id: str | None
    status: str
    geometry: GeometrySummary
    parameter_data: str
    customer_note: str | None
    customer_id: str | None
    is_enabled: bool
    is_debug_request: bool
    created_at: dt.datetime
    process_started_at: dt.datetime | None
    process_completed_at: dt.datetime | None
    is_process_successful: bool | None
    geometry_file_name: str | None
    print_file_name: str | None
    has_geometry_file: bool
    has_print_file: bool
    processing_log: str | None
    organization_id: uuid.UUID
    organization_name: str | None
    creator: CreatorSummary | None


class GeometryJobRequest(BaseModel):
    geometry_id: uuid.UUID | None = None
    parameter_data: str | None = None
    customer_note: str | None = None
    customer_id: str | None = None
    is_enabled: bool = True


def job_payload(job: GeometryProcessingQueue) -> GeometryJobPayload:
    return GeometryJobPayload(
        id=job.id,
        object_id=job.object_id,
        status=derive_job_status(job).value,
        geometry=GeometrySummary(
            id=job.geometry.id,
            geometry_name=job.geometry.geometry_name,
            algorithm_name=job.geometry.algorithm_name,
        ),
        parameter_data=job.parameter_data,
        customer_note=job.customer_note,
        customer_id=job.customer_id,
        is_enabled=job.is_enabled,
        is_debug_request=job.is_debug_request,
        created_at=job.created_at,
        process_started_at=job.process_started_at,
        process_completed_at=job.process_completed_at,
        is_process_successful=job.is_process_successful,
        geometry_file_name=job.geometry_file_name,
        print_file_name=job.print_file_name,
        has_geometry_file=bool(job.geometry_file_url or job.geometry_file_pathname or job.geometry_file_name),
        has_print_file=bool(job.print_file_url or job.print_file_pathname or job.print_file_name),
        processing_log=job.processing_log,
        organization_id=job.organization_id,
        organization_name=job.organization.name if job.organization else None,
        creator=creator_summary(job.creator),
    )


def _validated_fields(session: Session, payload: GeometryJobRequest) -> NamedGeometry:
    """Check a create/update body and return the referenced geometry."""

    if payload.geometry_id is None or not payload.parameter_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="geometry_id and parameter_data are required.",
        )
    if payload.customer_note and len(payload.customer_note) > CUSTOMER_NOTE_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"customer_note must be {CUSTOMER_NOTE_MAX_LENGTH} characters or less.",
        )
    if payload.customer_id and len(payload.customer_id) > CUSTOMER_ID_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"customer_id must be {CUSTOMER_ID_MAX_LENGTH} characters or less.",
        )

    geometry = session.get(NamedGeometry, payload.geometry_id)
    if geometry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Geometry not found.")
    try:
        validate_parameter_data(geometry.parameter_schema, payload.parameter_data)
    except ParameterDataError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid geometry input parameters: {exc}",
        ) from exc
    return geometry


def get_job_for_user(
    session: Session,
    job_id: uuid.UUID,
    user: User,
    *,
    with_files: tuple[str, ...] = (),
) -> GeometryProcessingQueue:
    """Load a job and enforce that it belongs to ``user``'s organization."""

    stmt = select(GeometryProcessingQueue).where(GeometryProcessingQueue.id == job_id)
    for attribute in with_files:
        stmt = stmt.options(undefer(getattr(GeometryProcessingQueue, attribute)))
    job = session.execute(stmt).unique().scalar_one_or_none()
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Geometry job not found."
        )
    ensure_same_organization(user, job.organization_id)
    return job


def _object_id_exists(session: Session):
    def exists(candidate: str) -> bool:
        return (
            session.execute(
                select(GeometryProcessingQueue.id).where(
                    GeometryProcessingQueue.object_id == candidate
                )
            ).first()
            is not None
        )

    return exists


@router.get("", response_model=list[GeometryJobPayload])
def list_geometry_jobs(session: SessionDep, user: MemberDep) -> list[GeometryJobPayload]:
    jobs = session.scalars(
        select(GeometryProcessingQueue)
        .where(GeometryProcessingQueue.organization_id == user.organization_id)
        .order_by(GeometryProcessingQueue.created_at.desc())
    ).unique().all()
    return [job_payload(job) for job in jobs]


@router.post("", response_model=GeometryJobPayload, status_code=status.HTTP_201_CREATED)
def create_geometry_job(
    payload: GeometryJobRequest,
    session: SessionDep,
    user: MemberDep,
) -> GeometryJobPayload:
    """Queue a geometry for processing and assign its short object id."""

    geometry = _validated_fields(session, payload)
    try:
        object_id = generate_object_id(_object_id_exists(session))
    except ObjectIdExhaustedError as exc:
        logger.error("Object id space exhausted: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not allocate an object ID, please retry.",
        ) from exc

    job = GeometryProcessingQueue(
        geometry_id=geometry.id,
        creator_id=user.id,
        organization_id=user.organization_id,
        parameter_data=payload.parameter_data,
        customer_note=payload.customer_note or None,
        customer_id=payload.customer_id or None,
        is_enabled=payload.is_enabled,
        object_id=object_id,
        object_id_generated_at=dt.datetime.now(dt.timezone.utc),
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info(
        "Created geometry job %s (%s) for %s by %s",
        job.id,
        object_id,
        geometry.geometry_name,
        user.email,
    )
    return job_payload(job)


@router.get("/by-object-id/{object_id}", response_model=GeometryJobPayload)
def get_geometry_job_by_object_id(
    object_id: str, session: SessionDep, user: MemberDep
) -> GeometryJobPayload:
    """Look a job up by the id printed on the part; O/I/L typos are forgiven."""

    if not is_valid_object_id(object_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid object ID format."
        )
    try:
        normalized = normalize_object_id(object_id)
    except ValueError:
        # Alphanumeric but outside the Crockford alphabet (e.g. "U"): never issued.
        normalized = None
    job = None
    if normalized is not None:
        job = session.execute(
            select(GeometryProcessingQueue).where(GeometryProcessingQueue.object_id == normalized)
        ).unique().scalar_one_or_none()
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Geometry job not found."
        )
    ensure_same_organization(user, job.organization_id)
    return job_payload(job)


@router.get("/{job_id}", response_model=GeometryJobPayload)
def get_geometry_job(job_id: uuid.UUID, session: SessionDep, user: MemberDep) -> GeometryJobPayload:
    return job_payload(get_job_for_user(session, job_id, user))


@router.put("/{job_id}", response_model=GeometryJobPayload)
def update_geometry_job(
    job_id: uuid.UUID,
    payload: GeometryJobRequest,
    session: SessionDep,
    user: MemberDep,
) -> GeometryJobPayload:
    job = get_job_for_user(session, job_id, user)
    geometry = _validated_fields(session, payload)
    job.geometry_id = geometry.id
    job.parameter_data = payload.parameter_data
    job.customer_note = payload.customer_note or None
    job.customer_id = payload.customer_id or None
    job.is_enabled = payload.is_enabled
    session.commit()
    session.refresh(job)
    logger.info("Updated geometry job %s by %s", job.id, user.email)
    return job_payload(job)


@router.delete("/{job_id}")
def disable_geometry_job(job_id: uuid.UUID, session: SessionDep, user: MemberDep) -> dict:
    """Soft delete: the job is disabled so processors skip it."""

    job = get_job_for_user(session, job_id, user)
    job.is_enabled = False
    session.commit()
    logger.info("Disabled geometry job %s by %s", job.id, user.email)
    return {
        "message": "Geometry processing job disabled successfully.",
        "job": {"id": str(job.id), "is_enabled": job.is_enabled},
    }


def file_response(
    *,
    name: str | None,
    contents: bytes | None,
    url: str | None,
    pathname: str | None,
    missing_detail: str,
) -> Response:
    """Build the download response for a stored job file.

    Local blobs are read from storage, remote blob URLs are redirected to and
    inline bytes are sent as an attachment.
    """

    if url:
        if not is_local_blob_url(url):
            return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
        try:
            data = get_blob_storage().read(pathname or url.rsplit("/", 1)[-1])
        except BlobNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=missing_detail) from exc
        return Response(
            content=data,
            media_type=content_type_for(name or pathname or ""),
            headers={"Cache-Control": "private, max-age=3600"},
        )

    if contents is None or not name:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=missing_detail)
    return Response(
        content=contents,
        media_type=content_type_for(name),
        headers={
            "Content-Disposition": f'attachment; filename="{safe_filename(name)}"',
            "Cache-Control": "private, no-store",
        },
    )


def _download(
    session: Session, job_id: uuid.UUID, user: User, kind: Literal["geometry", "print"]
) -> Response:
    job = get_job_for_user(session, job_id, user, with_files=(f"{kind}_file_contents",))
    return file_response(
        name=getattr(job, f"{kind}_file_name"),
        contents=getattr(job, f"{kind}_file_contents"),
        url=getattr(job, f"{kind}_file_url"),
        pathname=getattr(job, f"{kind}_file_pathname"),
        missing_detail=f"No {kind} file available for this job.",
    )


@router.get("/{job_id}/geometry-file")
def download_geometry_file(job_id: uuid.UUID, session: SessionDep, user: MemberDep) -> Response:
    return _download(session, job_id, user, "geometry")


@router.get("/{job_id}/print-file")
def download_print_file(job_id: uuid.UUID, session: SessionDep, user: MemberDep) -> Response:
    return _download(session, job_id, user, "print")
