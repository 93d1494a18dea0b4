"""Blob storage for geometry (3MF/STL) and print (G-code) files.

Large artifacts can be uploaded by the processor ahead of reporting a result;
the job then stores the returned ``url`` and ``pathname`` instead of inline
bytes.  The filesystem backend keeps files under ``BLOB_STORAGE_DIR`` and
serves them through ``/api/local-blob/<pathname>``.  URLs pointing anywhere
else are treated as externally hosted and answered with a redirect.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import os
import re
import secrets
import threading
from pathlib import Path

from splint_factory.config import get_settings

logger = logging.getLogger(__name__)

LOCAL_BLOB_PREFIX = "/api/local-blob/"

_CONTENT_TYPES = {
    ".stl": "model/stl",
    ".3mf": "model/3mf",
    ".obj": "text/plain",
    ".gcode": "text/plain",
}
_UNSAFE_FILENAME_CHARS = re.compile(r"[\r\n\\/\x00-\x1f\"]")


class BlobNotFoundError(FileNotFoundError):
    """Raised when a pathname does not resolve to a stored blob."""


@dataclasses.dataclass(frozen=True)
class BlobUploadResult:
    url: str
    pathname: str
    content_type: str
    size: int


def content_type_for(filename: str) -> str:
    return _CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def safe_filename(filename: str) -> str:
    """Make ``filename`` safe to embed in a ``Content-Disposition`` header."""

    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def is_local_blob_url(url: str | None) -> bool:
    return bool(url) and url.startswith(LOCAL_BLOB_PREFIX)


class BlobStorage(abc.ABC):
    @abc.abstractmethod
    def upload(self, data: bytes, filename: str) -> BlobUploadResult:
        """Store ``data`` and return a reference to it."""

    @abc.abstractmethod
    def read(self, pathname: str) -> bytes:
        """Return the bytes stored under ``pathname``."""

    @abc.abstractmethod
    def signed_url(self, pathname: str, expires_in: int = 3600) -> str:
        """Return a URL the caller may use to fetch ``pathname``."""

    @abc.abstractmethod
    def delete(self, pathname: str) -> None:
        """Remove ``pathname``; missing blobs are ignored."""


class FilesystemBlobStorage(BlobStorage):
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    def _generate_pathname(self, filename: str) -> str:
        name = Path(safe_filename(filename) or "file").name
        suffix = Path(name).suffix
        stem = name[: -len(suffix)] if suffix else name
        return f"{stem}-{secrets.token_hex(8)}{suffix}"

    def _resolve(self, pathname: str) -> Path:
        root = self.root.resolve()
        candidate = (root / pathname).resolve()
        if candidate.parent != root:
            raise BlobNotFoundError(pathname)
        return candidate

    def upload(self, data: bytes, filename: str) -> BlobUploadResult:
        self.root.mkdir(parents=True, exist_ok=True)
        pathname = self._generate_pathname(filename)
        self._resolve(pathname).write_bytes(data)
        logger.info("Stored blob %s (%d bytes)", pathname, len(data))
        return BlobUploadResult(
            url=f"{LOCAL_BLOB_PREFIX}{pathname}",
            pathname=pathname,
            content_type=content_type_for(filename),
            size=len(data),
        )

    def read(self, pathname: str) -> bytes:
        path = self._resolve(pathname)
        if not path.is_file():
            raise BlobNotFoundError(pathname)
        return path.read_bytes()

    def signed_url(self, pathname: str, expires_in: int = 3600) -> str:
        # Access control happens on the serving route.
        return f"{LOCAL_BLOB_PREFIX}{pathname}"

    def delete(self, pathname: str) -> None:
        try:
            self._resolve(pathname).unlink()
        except FileNotFoundError:
            logger.warning("Blob %s already deleted", pathname)


_STORAGE: BlobStorage | None = None
_STORAGE_LOCK = threading.Lock()


def get_blob_storage() -> BlobStorage:
    global _STORAGE
    with _STORAGE_LOCK:
        if _STORAGE is None:
            _STORAGE = FilesystemBlobStorage(get_settings().blob_storage_dir)
        return _STORAGE


def reset_blob_storage() -> None:
    global _STORAGE
    with _STORAGE_LOCK:
        _STORAGE = None


__all__ = [
    "BlobNotFoundError",
    "BlobStorage",
    "BlobUploadResult",
    "FilesystemBlobStorage",
    "LOCAL_BLOB_PREFIX",
    "content_type_for",
    "get_blob_storage",
    "is_local_blob_url",
    "reset_blob_storage",
    "safe_filename",
]
