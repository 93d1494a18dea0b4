"""Singleton row holding system-wide settings such as maintenance mode."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import DateTime, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from . import Base

SYSTEM_SETTINGS_ID = "system_settings"


class SystemSettings(Base):
    __tablename__ = "system_settings"

    id: Mapped[str] = mapped_column(
        String(length=64),
        primary_key=True,
        default=SYSTEM_SETTINGS_ID,
    )
    maintenance_mode_enabled: Mapped[bool] = mapped_column(
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    maintenance_message: Mapped[str | None] = mapped_column(Text(), nullable=True)
    maintenance_mode_updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


__all__ = ["SYSTEM_SETTINGS_ID", "SystemSettings"]
