"""API keys used by the geometry processor and printer clients."""

from __future__ import annotations

import datetime as dt
import json
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base
from .tenant import Organization, User, _utcnow


class ApiKey(Base):
    """Hashed machine credential with a JSON list of permissions.

    ``permissions`` is stored as JSON text, e.g. ``["geometry-queue:read"]``.
    Only the SHA-256 digest of the key is persisted; the plaintext value is
    returned once when the key is created.
    """

    __tablename__ = "api_keys"
    __table_args__ = (
        Index("ix_api_keys_key_hash_unique", "key_hash", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(length=250), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(length=128), nullable=False)
    permissions: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        default="[]",
        server_default=text("'[]'"),
    )
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    last_used_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    organization: Mapped[Organization | None] = relationship()
    creator: Mapped[User] = relationship(back_populates="api_keys")

    @property
    def permission_list(self) -> list[str]:
        try:
            values = json.loads(self.permissions or "[]")
        except ValueError:
            return []
        if not isinstance(values, list):
            return []
        return [str(value) for value in values]


__all__ = ["ApiKey"]
