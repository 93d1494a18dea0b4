"""Utility CLI to create the schema and the base organizations.

Creates the "System Administration" and "Default Organization" organizations,
optionally a SYSTEM_ADMIN account (``BOOTSTRAP_ADMIN_EMAIL`` /
``BOOTSTRAP_ADMIN_PASSWORD``), and moves users without an organization into
the default one.
"""

from __future__ import annotations

import argparse
import logging
import os

from dotenv import load_dotenv
from sqlalchemy import select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session

from splint_factory.models import Organization, User, UserRole
from splint_factory.models.session import create_schema, get_engine, get_sessionmaker
from splint_factory.security import hash_password

logger = logging.getLogger("tools.bootstrap")

SYSTEM_ORG_NAME = "System Administration"
DEFAULT_ORG_NAME = "Default Organization"
DEFAULT_ADMIN_NAME = "System Administrator"


def _as_sqlalchemy_url(db_url: str) -> str:
    """Return a SQLAlchemy URL that uses the ``psycopg`` driver."""

    if db_url.startswith("postgresql+psycopg://"):
        return db_url
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return db_url


def _safe_url(db_url: str) -> str:
    """Return ``db_url`` with any password redacted for logging."""

    try:
        parsed = make_url(db_url)
    except ArgumentError:
        return db_url
    if parsed.password is None:
        return db_url
    return parsed.set(password="***").render_as_string(hide_password=False)


def ensure_organization(session: Session, name: str, description: str) -> tuple[Organization, bool]:
    org = session.execute(
        select(Organization).where(Organization.name == name)
    ).scalar_one_or_none()
    if org is not None:
        logger.info("Organization %s already exists (id=%s)", name, org.id)
        return org, False
    org = Organization(name=name, description=description)
    session.add(org)
    session.flush()
    logger.info("Created organization %s (id=%s)", name, org.id)
    return org, True


def ensure_system_admin(
    session: Session,
    organization: Organization,
    *,
    email: str,
    password: str,
    name: str = DEFAULT_ADMIN_NAME,
) -> tuple[User, bool]:
    """Create the admin account, or promote an existing user with that e-mail."""

    normalized_email = email.strip().lower()
    user = session.execute(
        select(User).where(User.email == normalized_email)
    ).scalar_one_or_none()
    if user is not None:
        if user.role != UserRole.SYSTEM_ADMIN.value:
            user.role = UserRole.SYSTEM_ADMIN.value
            logger.info("Promoted %s to SYSTEM_ADMIN", user.email)
        else:
            logger.info("User %s already exists (id=%s)", user.email, user.id)
        return user, False

    user = User(
        organization_id=organization.id,
        email=normalized_email,
        name=name,
        password_hash=hash_password(password),
        role=UserRole.SYSTEM_ADMIN.value,
    )
    session.add(user)
    session.flush()
    logger.info("Created user %s (id=%s)", user.email, user.id)
    return user, True


def assign_orphan_users(session: Session, organization: Organization) -> int:
    result = session.execute(
        update(User)
        .where(User.organization_id.is_(None))
        .values(organization_id=organization.id)
        .execution_options(synchronize_session="fetch")
    )
    count = int(result.rowcount or 0)
    if count:
        logger.info("Assigned %d users without an organization to %s", count, organization.name)
    return count


def bootstrap(
    session: Session,
    *,
    admin_email: str | None = None,
    admin_password: str | None = None,
) -> dict[str, object]:
    system_org, created_system = ensure_organization(
        session, SYSTEM_ORG_NAME, "Platform operators and system administrators"
    )
    default_org, created_default = ensure_organization(
        session, DEFAULT_ORG_NAME, "Organization for users without an explicit assignment"
    )
    admin_created = False
    if admin_email and admin_password:
        _, admin_created = ensure_system_admin(
            session, system_org, email=admin_email, password=admin_password
        )
    elif admin_email:
        logger.warning("BOOTSTRAP_ADMIN_PASSWORD not set; skipping admin account")
    orphans = assign_orphan_users(session, default_org)
    return {
        "system_organization_created": created_system,
        "default_organization_created": created_default,
        "admin_created": admin_created,
        "orphans_assigned": orphans,
    }


def main(argv: list[str] | None = None) -> None:
    """Script entrypoint for creating the schema and base records."""

    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--admin-email", default=os.getenv("BOOTSTRAP_ADMIN_EMAIL"))
    parser.add_argument("--skip-schema", action="store_true", help="Do not create tables")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    sqlalchemy_url = _as_sqlalchemy_url(db_url)

    if not args.skip_schema:
        logger.info("Ensuring schema on %s", _safe_url(db_url))
        create_schema(get_engine(sqlalchemy_url))

    SessionLocal = get_sessionmaker(database_url=sqlalchemy_url)
    with SessionLocal() as session:
        summary = bootstrap(
            session,
            admin_email=args.admin_email,
            admin_password=os.getenv("BOOTSTRAP_ADMIN_PASSWORD"),
        )
        session.commit()
    logger.info("Bootstrap complete: %s", summary)


if __name__ == "__main__":  # pragma: no cover - CLI execution
    main()
