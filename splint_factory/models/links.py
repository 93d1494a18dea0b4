"""Tracked short links (``/l/<shortcode>``) and their visit log."""

from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import List

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base
from .tenant import User, _utcnow


class LinkType(str, enum.Enum):
    EXTERNAL_URL = "EXTERNAL_URL"
    HOSTED_FILE = "HOSTED_FILE"


class Link(Base):
    __tablename__ = "links"
    __table_args__ = (
        Index("ix_links_shortcode_unique", "shortcode", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    shortcode: Mapped[str] = mapped_column(String(length=64), nullable=False)
    link_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    link_target: Mapped[str] = mapped_column(Text(), nullable=False)
    title: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    click_count: Mapped[int] = mapped_column(
        Integer(),
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    creator: Mapped[User] = relationship()
    activities: Mapped[List["LinkActivity"]] = relationship(
        back_populates="link",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class LinkActivity(Base):
    """One recorded visit of a :class:`Link`."""

    __tablename__ = "link_activities"
    __table_args__ = (
        Index("ix_link_activities_link_visit", "link_id", "visit_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    link_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("links.id", ondelete="CASCADE"),
        nullable=False,
    )
    ip_address: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text(), nullable=True)
    referer: Mapped[str | None] = mapped_column(Text(), nullable=True)
    visit_time: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    link: Mapped[Link] = relationship(back_populates="activities")


__all__ = ["Link", "LinkActivity", "LinkType"]
