"""FastAPI application wiring for Splint Factory.

This module bootstraps the HTTP API shared by the browser UI, the geometry
processor and the desktop client attached to the printers:

- Configures logging, CORS (optional for a separately hosted UI), Prometheus
  metrics and rate limiting.
- Mounts the routers for accounts, geometry templates and jobs, the print
  queue (including its Server-Sent Events stream), blobs, links and system
  administration.
- Exposes small health/version/config endpoints for probes and the frontend.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import get_settings
from .rate_limit import limiter
from .routers import (
    api_keys,
    auth_api,
    blob,
    geometries,
    geometry_jobs,
    geometry_processing,
    invitations,
    links,
    named_geometry,
    organizations,
    print_queue,
    profile,
    system,
    users,
)

load_dotenv()

logger = logging.getLogger(__name__)

app = FastAPI(title="Splint Factory", version=__version__)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for a separately hosted UI
admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
if admin_ui_origins:
    origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(auth_api.router)
app.include_router(organizations.router)
app.include_router(users.router)
app.include_router(profile.router)
app.include_router(invitations.router)
app.include_router(api_keys.router)
app.include_router(named_geometry.router)
app.include_router(geometries.router)
app.include_router(geometry_jobs.router)
app.include_router(geometry_processing.router)
app.include_router(print_queue.router)
app.include_router(blob.router)
app.include_router(links.router)
app.include_router(system.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


@app.get("/api/config")
async def config():
    """Expose selected frontend configuration."""
    settings = get_settings()
    return {
        "BRAND_NAME": settings.brand_name,
        "MAX_UPLOAD_FILE_SIZE": settings.max_upload_file_size,
        "SSE_RECONNECT_MS": 5000,
    }
