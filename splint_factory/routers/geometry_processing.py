"""Endpoints polled by the external geometry processor.

The processor authenticates with an API key (or, for manual testing, a user
session).  Field names follow the processor's wire contract, so the request
and response models map them with pydantic aliases.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from splint_factory.config import get_settings
from splint_factory.geometry import processor_health
from splint_factory.geometry.object_ids import debug_object_id
from splint_factory.models import GeometryProcessingQueue, PrintQueue, User, UserRole
from splint_factory.schemas import CreatorSummary, OrganizationSummary, creator_summary, organization_summary
from splint_factory.security import Principal, require_principal, require_role
from splint_factory.security.api_keys import GEOMETRY_QUEUE_READ, GEOMETRY_QUEUE_WRITE
from splint_factory.security.auth import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/geometry-processing", tags=["geometry-processing"])

SessionDep = Annotated[Session, Depends(get_db_session)]
ReaderDep = Annotated[Principal, Depends(require_principal(GEOMETRY_QUEUE_READ))]
WriterDep = Annotated[Principal, Depends(require_principal(GEOMETRY_QUEUE_WRITE))]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]

CLAIM_ATTEMPTS = 5


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NextJobPayload(_WireModel):
    id: uuid.UUID
    geometry_id: uuid.UUID = Field(serialization_alias="GeometryID")
    geometry_name: str = Field(serialization_alias="GeometryName")
    algorithm_name: str = Field(serialization_alias="GeometryAlgorithmName")
    parameter_schema: str = Field(serialization_alias="GeometryInputParameterSchema")
    parameter_data: str = Field(serialization_alias="GeometryInputParameterData")
    customer_note: str | None = Field(serialization_alias="CustomerNote")
    customer_id: str | None = Field(serialization_alias="CustomerID")
    object_id: str | None = Field(serialization_alias="objectID")
    is_debug_request: bool = Field(serialization_alias="isDebugRequest")
    created_at: dt.datetime = Field(serialization_alias="CreationTime")
    process_started_at: dt.datetime | None = Field(serialization_alias="ProcessStartedTime")
    creator: CreatorSummary | None
    organization: OrganizationSummary | None = Field(serialization_alias="owningOrganization")


class MarkStartedRequest(_WireModel):
    job_id: uuid.UUID = Field(alias="jobId")


class ProcessingResultRequest(_WireModel):
    job_id: uuid.UUID = Field(alias="GeometryProcessingQueueID")
    is_success: bool = Field(alias="isSuccess")
    error_message: str | None = Field(default=None, alias="errorMessage")
    geometry_file_contents: str | None = Field(default=None, alias="GeometryFileContents")
    geometry_file_name: str | None = Field(default=None, alias="GeometryFileName", max_length=255)
    geometry_file_url: str | None = Field(default=None, alias="GeometryBlobUrl")
    geometry_file_pathname: str | None = Field(default=None, alias="GeometryBlobPathname")
    print_file_contents: str | None = Field(default=None, alias="PrintFileContents")
    print_file_name: str | None = Field(default=None, alias="PrintFileName", max_length=255)
    print_file_url: str | None = Field(default=None, alias="PrintBlobUrl")
    print_file_pathname: str | None = Field(default=None, alias="PrintBlobPathname")
    processing_log: str | None = Field(default=None, alias="ProcessingLog")


class DebugRequest(_WireModel):
    job_id: uuid.UUID = Field(alias="jobId")


def decode_file(contents: str | None, label: str) -> bytes | None:
    """Decode a base64 file from the processor, enforcing the upload size limit."""

    if not contents:
        return None
    try:
        data = base64.b64decode(contents, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid base64 encoding for {label} file",
        ) from exc
    limit = get_settings().max_upload_file_size
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{label.capitalize()} file exceeds {limit // (1024 * 1024)}MB limit",
        )
    return data


def _next_job_payload(job: GeometryProcessingQueue) -> dict[str, Any]:
    payload = NextJobPayload(
        id=job.id,
        geometry_id=job.geometry_id,
        geometry_name=job.geometry.geometry_name,
        algorithm_name=job.geometry.algorithm_name,
        parameter_schema=job.geometry.parameter_schema,
        parameter_data=job.parameter_data,
        customer_note=job.customer_note,
        customer_id=job.customer_id,
        object_id=job.object_id,
        is_debug_request=job.is_debug_request,
        created_at=job.created_at,
        process_started_at=job.process_started_at,
        creator=creator_summary(job.creator),
        organization=organization_summary(job.organization),
    )
    return payload.model_dump(mode="json", by_alias=True)


def claim_next_job(session: Session, *, now: dt.datetime | None = None) -> GeometryProcessingQueue | None:
    """Mark the oldest enabled, unstarted job as started and return it.

    The claim is a conditional update on ``process_started_at IS NULL``; when
    another processor wins the race the next candidate is tried.
    """

    queue = GeometryProcessingQueue
    for _ in range(CLAIM_ATTEMPTS):
        candidate_id = session.execute(
            select(queue.id)
            .where(queue.is_enabled.is_(True), queue.process_started_at.is_(None))
            .order_by(queue.created_at.asc())
            .limit(1)
        ).scalar_one_or_none()
        if candidate_id is None:
            return None

        claimed_at = now or dt.datetime.now(dt.timezone.utc)
        result = session.execute(
            update(queue)
            .where(queue.id == candidate_id, queue.process_started_at.is_(None))
            .values(process_started_at=claimed_at)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount == 1:
            return session.get(queue, candidate_id, populate_existing=True)
        logger.info("Geometry job %s was claimed concurrently, retrying", candidate_id)
    return None


@router.get("/next-job")
def next_job(session: SessionDep, principal: ReaderDep) -> dict[str, Any]:
    """Hand the oldest pending job to the processor."""

    processor_health.record_ping()
    job = claim_next_job(session)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No jobs available for processing",
        )
    logger.info(
        "Started processing geometry job %s (%s) for %s",
        job.id,
        job.geometry.geometry_name,
        principal.label,
    )
    return _next_job_payload(job)


@router.post("/mark-started")
def mark_started(payload: MarkStartedRequest, session: SessionDep, _: WriterDep) -> dict[str, Any]:
    job = session.get(GeometryProcessingQueue, payload.job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Geometry job not found.")
    job.process_started_at = dt.datetime.now(dt.timezone.utc)
    session.commit()
    logger.info(
        "Marked geometry job %s (%s) as started at %s",
        job.id,
        job.geometry.geometry_name,
        job.process_started_at,
    )
    return {"success": True, "jobId": str(job.id), "startedAt": job.process_started_at}


@router.post("/result", status_code=status.HTTP_201_CREATED)
def record_result(
    payload: ProcessingResultRequest,
    session: SessionDep,
    principal: WriterDep,
) -> dict[str, Any]:
    """Record the processor's outcome for a started job.

    A successful result carrying any file also queues the job for printing,
    in the same transaction as the completion update.
    """

    job = session.get(GeometryProcessingQueue, payload.job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Geometry processing queue entry not found",
        )
    if job.process_started_at is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Job has not been started yet"
        )

    geometry_bytes = decode_file(payload.geometry_file_contents, "geometry")
    print_bytes = decode_file(payload.print_file_contents, "print")

    job.process_completed_at = dt.datetime.now(dt.timezone.utc)
    job.is_process_successful = payload.is_success
    if payload.processing_log is not None:
        job.processing_log = payload.processing_log
    elif payload.error_message and not payload.is_success:
        job.processing_log = payload.error_message

    if geometry_bytes is not None:
        job.geometry_file_contents = geometry_bytes
    if print_bytes is not None:
        job.print_file_contents = print_bytes
    for field in (
        "geometry_file_name",
        "geometry_file_url",
        "geometry_file_pathname",
        "print_file_name",
        "print_file_url",
        "print_file_pathname",
    ):
        value = getattr(payload, field)
        if value:
            setattr(job, field, value)

    has_files = any(
        (
            geometry_bytes,
            print_bytes,
            payload.geometry_file_url,
            payload.print_file_url,
            payload.geometry_file_pathname,
            payload.print_file_pathname,
        )
    )
    entry: PrintQueue | None = None
    if payload.is_success and has_files:
        entry = PrintQueue(geometry_job_id=job.id)
        session.add(entry)

    session.commit()

    if payload.is_success:
        logger.info(
            "Successfully processed geometry job %s (%s) reported by %s",
            job.id,
            job.geometry.geometry_name,
            principal.label,
        )
    else:
        logger.error(
            "Failed to process geometry job %s (%s): %s",
            job.id,
            job.geometry.geometry_name,
            payload.error_message or "No error message provided",
        )

    response: dict[str, Any] = {
        "message": "Processing result recorded successfully",
        "geometryJob": {
            "id": str(job.id),
            "ProcessCompletedTime": job.process_completed_at,
            "isProcessSuccessful": job.is_process_successful,
        },
    }
    if entry is not None:
        response["printQueueEntry"] = {
            "id": str(entry.id),
            "hasGeometryFile": job.has_geometry_file,
            "hasPrintFile": job.has_print_file,
            "GeometryFileName": job.geometry_file_name,
            "PrintFileName": job.print_file_name,
        }
    return response


@router.post("/debug")
def create_debug_request(
    payload: DebugRequest, session: SessionDep, admin: SystemAdminDep
) -> dict[str, Any]:
    """Clone a job as a debug request so the processor opens it interactively."""

    original = session.get(GeometryProcessingQueue, payload.job_id)
    if original is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    debug_job = GeometryProcessingQueue(
        object_id=debug_object_id(),
        object_id_generated_at=dt.datetime.now(dt.timezone.utc),
        geometry_id=original.geometry_id,
        parameter_data=original.parameter_data,
        customer_note=f"DEBUG: {original.customer_note or 'Manual debug request'}"[:500],
        customer_id=original.customer_id,
        creator_id=admin.id,
        organization_id=original.organization_id,
        is_enabled=True,
        is_debug_request=True,
    )
    session.add(debug_job)
    session.commit()
    logger.info("Created debug request %s for job %s by %s", debug_job.id, original.id, admin.email)
    return {
        "success": True,
        "debugJobId": str(debug_job.id),
        "message": f"Debug request created for {original.geometry.geometry_name}.",
    }


@router.get("/processor-health")
def processor_health_status(_: SystemAdminDep) -> dict[str, Any]:
    window = get_settings().processor_health_window_seconds
    return processor_health.get_status(window_seconds=window).as_dict()


__all__ = ["claim_next_job", "decode_file", "router"]
