"""Named geometry templates and the geometry processing queue."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import TYPE_CHECKING, List

from sqlalchemy import DateTime, ForeignKey, Index, LargeBinary, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, deferred, mapped_column, relationship

from . import Base
from .tenant import Organization, User, _utcnow

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .printing import PrintQueue


class NamedGeometry(Base):
    """A parametric geometry algorithm exposed to customers.

    Attributes:
        geometry_name: Unique display name (max 250 characters).
        algorithm_name: Identifier consumed by the external processor; no spaces.
        parameter_schema: JSON array describing the inputs the algorithm takes.
        preview_image / measurement_image: Optional images shown when ordering.
    """

    __tablename__ = "named_geometries"
    __table_args__ = (
        Index("ix_named_geometries_name_unique", "geometry_name", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    geometry_name: Mapped[str] = mapped_column(String(length=250), nullable=False)
    algorithm_name: Mapped[str] = mapped_column(String(length=250), nullable=False)
    parameter_schema: Mapped[str] = mapped_column(Text(), nullable=False)
    short_description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    preview_image: Mapped[bytes | None] = deferred(
        mapped_column(LargeBinary(), nullable=True)
    )
    preview_image_content_type: Mapped[str | None] = mapped_column(
        String(length=100), nullable=True
    )
    preview_image_updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    measurement_image: Mapped[bytes | None] = deferred(
        mapped_column(LargeBinary(), nullable=True)
    )
    measurement_image_content_type: Mapped[str | None] = mapped_column(
        String(length=100), nullable=True
    )
    measurement_image_updated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    creator_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    creator: Mapped[User | None] = relationship()
    jobs: Mapped[List["GeometryProcessingQueue"]] = relationship(back_populates="geometry")


class GeometryProcessingQueue(Base):
    """A request to run a named geometry with customer parameters.

    Processing state is carried by timestamps: a job is pending until
    ``process_started_at`` is set and finished once ``process_completed_at`` is
    set, with ``is_process_successful`` recording the outcome.  Output files
    are stored inline or as blob references.
    """

    __tablename__ = "geometry_processing_queue"
    __table_args__ = (
        Index("ix_geometry_queue_object_id_unique", "object_id", unique=True),
        Index("ix_geometry_queue_pending", "is_enabled", "process_started_at", "created_at"),
        Index("ix_geometry_queue_organization", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    geometry_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("named_geometries.id", ondelete="RESTRICT"),
        nullable=False,
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    parameter_data: Mapped[str] = mapped_column(Text(), nullable=False)
    process_started_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    process_completed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_process_successful: Mapped[bool | None] = mapped_column(nullable=True)
    is_enabled: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    is_debug_request: Mapped[bool] = mapped_column(
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    customer_note: Mapped[str | None] = mapped_column(String(length=500), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(length=20), nullable=True)
    object_id: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    object_id_generated_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    geometry_file_contents: Mapped[bytes | None] = deferred(
        mapped_column(LargeBinary(), nullable=True)
    )
    geometry_file_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    geometry_file_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    geometry_file_pathname: Mapped[str | None] = mapped_column(Text(), nullable=True)
    print_file_contents: Mapped[bytes | None] = deferred(
        mapped_column(LargeBinary(), nullable=True)
    )
    print_file_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    print_file_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    print_file_pathname: Mapped[str | None] = mapped_column(Text(), nullable=True)
    processing_log: Mapped[str | None] = mapped_column(Text(), nullable=True)

    geometry: Mapped[NamedGeometry] = relationship(back_populates="jobs", lazy="joined")
    creator: Mapped[User] = relationship()
    organization: Mapped[Organization] = relationship()
    print_entries: Mapped[List["PrintQueue"]] = relationship(back_populates="geometry_job")

    @property
    def has_geometry_file(self) -> bool:
        return bool(self.geometry_file_url or self.geometry_file_pathname) or (
            self.geometry_file_contents is not None
        )

    @property
    def has_print_file(self) -> bool:
        return bool(self.print_file_url or self.print_file_pathname) or (
            self.print_file_contents is not None
        )


__all__ = ["GeometryProcessingQueue", "NamedGeometry"]
