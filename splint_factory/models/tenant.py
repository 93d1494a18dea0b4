"""Tenant-related SQLAlchemy models.

Organizations own users, geometry jobs and print queue entries.  Users carry a
single role from :class:`UserRole`; invitations let organization admins onboard
new members and refresh tokens back the interactive login flow.
"""

from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import TYPE_CHECKING, List

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .api_key import ApiKey


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class UserRole(str, enum.Enum):
    """Role hierarchy: MEMBER < ORG_ADMIN < SYSTEM_ADMIN."""

    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    ORG_ADMIN = "ORG_ADMIN"
    MEMBER = "MEMBER"


class Organization(Base):
    """Represents a customer organization (clinic, lab or the operator itself).

    Attributes:
        id: Primary key generated via ``gen_random_uuid`` in Postgres.
        name: Unique display name of the organization.
        description: Optional free-form description.
        is_active: Inactive organizations are kept for history only.
        users: Collection of users that belong to this organization.
    """

    __tablename__ = "organizations"
    __table_args__ = (
        Index("ix_organizations_name_unique", "name", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
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

    users: Mapped[List["User"]] = relationship(
        back_populates="organization",
        foreign_keys="User.organization_id",
    )
    invitations: Mapped[List["InvitationLink"]] = relationship(
        back_populates="organization",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class User(Base):
    """Represents a user of the platform.

    Attributes:
        id: Primary key generated via ``gen_random_uuid`` in Postgres.
        organization_id: Owning organization; ``None`` until assigned.
        email: Unique e-mail address used for authentication.
        password_hash: Argon2 hash of the user's password.
        name: Friendly name shown in the UI and logs.
        role: One of :class:`UserRole`.
        invited_by_user_id: User who issued the invitation this account used.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_email_unique", "email", unique=True),
        Index("ix_users_organization_id", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    email: Mapped[str] = mapped_column(String(length=320), nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=UserRole.MEMBER.value,
        server_default=text("'MEMBER'"),
    )
    invited_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    invitation_accepted_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
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

    organization: Mapped[Organization | None] = relationship(
        back_populates="users",
        foreign_keys=[organization_id],
        lazy="joined",
    )
    invited_by: Mapped["User | None"] = relationship(
        remote_side=[id],
        foreign_keys=[invited_by_user_id],
    )
    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    api_keys: Mapped[List["ApiKey"]] = relationship(back_populates="creator")


class InvitationLink(Base):
    """Single-use invitation that registers a MEMBER into an organization."""

    __tablename__ = "invitation_links"
    __table_args__ = (
        Index("ix_invitation_links_token_unique", "token", unique=True),
        Index("ix_invitation_links_used_by_unique", "used_by_user_id", unique=True),
        Index("ix_invitation_links_org", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    token: Mapped[str] = mapped_column(String(length=128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_by_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    used_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
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

    organization: Mapped[Organization] = relationship(back_populates="invitations")
    created_by: Mapped[User] = relationship(foreign_keys=[created_by_user_id])
    used_by: Mapped[User | None] = relationship(foreign_keys=[used_by_user_id])


class RefreshToken(Base):
    """Refresh tokens issued during interactive authentication flows."""

    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("ix_refresh_tokens_user_id", "user_id"),
        Index("ix_refresh_tokens_token_hash", "token_hash", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    token_hash: Mapped[str] = mapped_column(String(length=255), nullable=False)
    issued_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    user_agent: Mapped[str | None] = mapped_column(String(length=255))

    user: Mapped[User] = relationship(back_populates="refresh_tokens")


__all__ = ["InvitationLink", "Organization", "RefreshToken", "User", "UserRole"]
