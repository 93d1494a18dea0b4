"""Blob uploads from the geometry processor and serving of local blobs."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from pydantic import BaseModel

from splint_factory.config import get_settings
from splint_factory.models import User
from splint_factory.security import Principal, get_current_user, require_principal
from splint_factory.security.api_keys import GEOMETRY_QUEUE_WRITE
from splint_factory.storage.blob import BlobNotFoundError, content_type_for, get_blob_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["blob"])

WriterDep = Annotated[Principal, Depends(require_principal(GEOMETRY_QUEUE_WRITE))]
UserDep = Annotated[User, Depends(get_current_user)]
RequiredUpload = Annotated[UploadFile, File(...)]


class BlobUploadPayload(BaseModel):
    url: str
    pathname: str
    size: int
    content_type: str


@router.post("/api/blob/upload", response_model=BlobUploadPayload)
async def upload_blob(file: RequiredUpload, principal: WriterDep) -> BlobUploadPayload:
    """Store a processor output file and return the reference to report later."""

    if principal.api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="API key required."
        )
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file.")
    limit = get_settings().max_upload_file_size
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File exceeds {limit // (1024 * 1024)}MB limit",
        )

    result = get_blob_storage().upload(data, file.filename or "upload.bin")
    logger.info("Upload completed: %s (%s) by %s", result.pathname, result.url, principal.label)
    return BlobUploadPayload(
        url=result.url,
        pathname=result.pathname,
        size=result.size,
        content_type=result.content_type,
    )


@router.get("/api/local-blob/{pathname}")
def serve_local_blob(pathname: str, _: UserDep) -> Response:
    if pathname != PurePosixPath(pathname).name or pathname in ("", ".", ".."):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pathname.")
    try:
        data = get_blob_storage().read(pathname)
    except BlobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blob not found.") from exc
    return Response(
        content=data,
        media_type=content_type_for(pathname),
        headers={"Cache-Control": "private, max-age=3600"},
    )
