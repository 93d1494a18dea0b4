"""Maintenance mode and the administrator system-status dashboard."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from splint_factory.models import SYSTEM_SETTINGS_ID, SystemSettings, User, UserRole
from splint_factory.security import require_role
from splint_factory.security.auth import get_db_session
from splint_factory.services.system_status import collect_system_status

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])

SessionDep = Annotated[Session, Depends(get_db_session)]
SystemAdminDep = Annotated[User, Depends(require_role(UserRole.SYSTEM_ADMIN.value))]


class MaintenanceStatus(BaseModel):
    maintenance_mode_enabled: bool
    maintenance_message: str | None
    maintenance_mode_updated_at: dt.datetime | None = None


class UpdateMaintenanceRequest(BaseModel):
    maintenance_mode_enabled: bool
    maintenance_message: str | None = Field(default=None, max_length=2000)


def get_system_settings(session: Session) -> SystemSettings:
    """Return the settings singleton, creating it on first use."""

    settings = session.get(SystemSettings, SYSTEM_SETTINGS_ID)
    if settings is None:
        settings = SystemSettings(id=SYSTEM_SETTINGS_ID, maintenance_mode_enabled=False)
        session.add(settings)
        session.flush()
    return settings


@router.get("/api/maintenance-status", response_model=MaintenanceStatus)
def maintenance_status(session: SessionDep) -> MaintenanceStatus:
    """Public; reports maintenance as disabled when the settings cannot be read."""

    try:
        settings = session.get(SystemSettings, SYSTEM_SETTINGS_ID)
    except SQLAlchemyError:
        logger.exception("Error getting maintenance status")
        return MaintenanceStatus(maintenance_mode_enabled=False, maintenance_message=None)
    if settings is None:
        return MaintenanceStatus(maintenance_mode_enabled=False, maintenance_message=None)
    return MaintenanceStatus(
        maintenance_mode_enabled=settings.maintenance_mode_enabled,
        maintenance_message=settings.maintenance_message,
        maintenance_mode_updated_at=settings.maintenance_mode_updated_at,
    )


@router.put("/api/admin/maintenance", response_model=MaintenanceStatus)
def update_maintenance(
    payload: UpdateMaintenanceRequest,
    session: SessionDep,
    admin: SystemAdminDep,
) -> MaintenanceStatus:
    settings = get_system_settings(session)
    settings.maintenance_mode_enabled = payload.maintenance_mode_enabled
    settings.maintenance_message = payload.maintenance_message or None
    settings.maintenance_mode_updated_at = dt.datetime.now(dt.timezone.utc)
    session.commit()
    logger.warning(
        "Maintenance mode %s by %s",
        "enabled" if settings.maintenance_mode_enabled else "disabled",
        admin.email,
    )
    return MaintenanceStatus(
        maintenance_mode_enabled=settings.maintenance_mode_enabled,
        maintenance_message=settings.maintenance_message,
        maintenance_mode_updated_at=settings.maintenance_mode_updated_at,
    )


@router.get("/api/admin/system-status")
def system_status(session: SessionDep, _: SystemAdminDep) -> dict[str, Any]:
    return collect_system_status(session)
