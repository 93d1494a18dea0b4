"""Print queue entries created from successfully processed geometry jobs."""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import DateTime, Float, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base
from .geometry import GeometryProcessingQueue
from .tenant import _utcnow


class PrintQueue(Base):
    """Tracks the physical printing of a geometry job's output.

    The print status is derived from the timestamps and flags (see
    :mod:`splint_factory.printing.status`); ``progress`` and ``logs`` are
    pushed by the desktop client attached to the printer.
    """

    __tablename__ = "print_queue"
    __table_args__ = (
        Index("ix_print_queue_geometry_job", "geometry_job_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    geometry_job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("geometry_processing_queue.id", ondelete="CASCADE"),
        nullable=False,
    )
    print_started_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    print_completed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_print_successful: Mapped[bool | None] = mapped_column(nullable=True)
    print_note: Mapped[str | None] = mapped_column(Text(), nullable=True)
    print_acceptance: Mapped[bool | None] = mapped_column(nullable=True)
    is_enabled: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    progress: Mapped[float | None] = mapped_column(Float(), nullable=True)
    progress_last_report_time: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    logs: Mapped[str | None] = mapped_column(Text(), nullable=True)

    geometry_job: Mapped[GeometryProcessingQueue] = relationship(
        back_populates="print_entries",
        lazy="joined",
    )


__all__ = ["PrintQueue"]
