"""SQLAlchemy declarative base and domain models.

This package hosts the SQLAlchemy models used across the backend.  It exposes a
single declarative ``Base`` class that other modules import when creating
tables.  Individual models live in dedicated modules within this package:
tenancy (organizations, users, invitations, refresh tokens), API keys, named
geometries and their processing queue, the print queue, tracked links and the
system settings singleton.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export models so callers can ``from splint_factory.models import User``
# instead of touching the individual modules.
from .tenant import InvitationLink, Organization, RefreshToken, User, UserRole
from .api_key import ApiKey
from .geometry import GeometryProcessingQueue, NamedGeometry
from .printing import PrintQueue
from .links import Link, LinkActivity, LinkType
from .system import SYSTEM_SETTINGS_ID, SystemSettings


__all__ = [
    "ApiKey",
    "Base",
    "GeometryProcessingQueue",
    "InvitationLink",
    "Link",
    "LinkActivity",
    "LinkType",
    "NamedGeometry",
    "Organization",
    "PrintQueue",
    "RefreshToken",
    "SYSTEM_SETTINGS_ID",
    "SystemSettings",
    "User",
    "UserRole",
]
