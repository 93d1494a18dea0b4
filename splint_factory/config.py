"""Runtime settings read from the environment.

Values are cached; tests that change environment variables call
:func:`reset_settings_cache` afterwards.
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


@dataclasses.dataclass(frozen=True)
class AppSettings:
    """Service configuration that is not related to tokens or logging."""

    brand_name: str = "Splint Factory"
    blob_storage_dir: str = ".blob-storage"
    hosted_files_dir: str = "public/files"
    max_upload_file_size: int = 10 * 1024 * 1024
    sse_heartbeat_seconds: float = 30.0
    sse_queue_size: int = 100
    processor_health_window_seconds: int = 60
    invitation_ttl_days: int = 7


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Load settings from the environment with defaults suited to development."""

    defaults = AppSettings()
    return AppSettings(
        brand_name=os.getenv("BRAND_NAME", defaults.brand_name),
        blob_storage_dir=os.getenv("BLOB_STORAGE_DIR", defaults.blob_storage_dir),
        hosted_files_dir=os.getenv("HOSTED_FILES_DIR", defaults.hosted_files_dir),
        max_upload_file_size=int(
            os.getenv("MAX_UPLOAD_FILE_SIZE", str(defaults.max_upload_file_size))
        ),
        sse_heartbeat_seconds=float(
            os.getenv("SSE_HEARTBEAT_SECONDS", str(defaults.sse_heartbeat_seconds))
        ),
        sse_queue_size=int(os.getenv("SSE_QUEUE_SIZE", str(defaults.sse_queue_size))),
        processor_health_window_seconds=int(
            os.getenv(
                "PROCESSOR_HEALTH_WINDOW_SECONDS",
                str(defaults.processor_health_window_seconds),
            )
        ),
        invitation_ttl_days=int(
            os.getenv("INVITATION_TTL_DAYS", str(defaults.invitation_ttl_days))
        ),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["AppSettings", "get_settings", "reset_settings_cache"]
