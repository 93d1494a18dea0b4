"""Export or import named geometries as JSON.

Used to copy the geometry catalogue between environments::

    python -m tools.sync_geometries export geometries.json
    python -m tools.sync_geometries import geometries.json --creator-email admin@example.com

Images travel as base64.  Imports match on ``geometry_name`` and update
existing rows in place.
"""

from __future__ import annotations

import argparse
import base64
import datetime as dt
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from sqlalchemy import select
from sqlalchemy.orm import Session, undefer

from splint_factory.geometry.schema import ParameterSchemaError, validate_parameter_schema
from splint_factory.models import NamedGeometry, User
from splint_factory.models.session import session_scope

logger = logging.getLogger("tools.sync_geometries")

EXPORT_VERSION = 1
_IMAGE_KINDS = ("preview", "measurement")


def _encode(data: bytes | None) -> str | None:
    return base64.b64encode(data).decode("ascii") if data else None


def export_geometries(session: Session) -> dict[str, Any]:
    geometries = session.scalars(
        select(NamedGeometry)
        .options(undefer(NamedGeometry.preview_image), undefer(NamedGeometry.measurement_image))
        .order_by(NamedGeometry.geometry_name.asc())
    ).all()
    items = []
    for geometry in geometries:
        item: dict[str, Any] = {
            "geometry_name": geometry.geometry_name,
            "algorithm_name": geometry.algorithm_name,
            "parameter_schema": geometry.parameter_schema,
            "short_description": geometry.short_description,
            "is_active": geometry.is_active,
        }
        for kind in _IMAGE_KINDS:
            item[f"{kind}_image"] = _encode(getattr(geometry, f"{kind}_image"))
            item[f"{kind}_image_content_type"] = getattr(geometry, f"{kind}_image_content_type")
        items.append(item)
    logger.info("Exported %d geometries", len(items))
    return {"version": EXPORT_VERSION, "geometries": items}


def import_geometries(
    session: Session,
    document: dict[str, Any],
    *,
    creator: User | None = None,
) -> tuple[int, int]:
    """Upsert geometries from an export document; return ``(created, updated)``.

    Raises:
        ValueError: If the document or any parameter schema is invalid.
    """

    if document.get("version") != EXPORT_VERSION:
        raise ValueError(f"Unsupported export version: {document.get('version')!r}")

    created = updated = 0
    now = dt.datetime.now(dt.timezone.utc)
    for item in document.get("geometries", []):
        name = item["geometry_name"]
        try:
            validate_parameter_schema(item["parameter_schema"])
        except ParameterSchemaError as exc:
            raise ValueError(f"Geometry {name!r} has an invalid schema: {exc}") from exc

        geometry = session.execute(
            select(NamedGeometry).where(NamedGeometry.geometry_name == name)
        ).scalar_one_or_none()
        if geometry is None:
            geometry = NamedGeometry(
                geometry_name=name,
                creator_id=creator.id if creator else None,
            )
            session.add(geometry)
            created += 1
        else:
            updated += 1

        geometry.algorithm_name = item["algorithm_name"]
        geometry.parameter_schema = item["parameter_schema"]
        geometry.short_description = item.get("short_description")
        geometry.is_active = bool(item.get("is_active", True))
        for kind in _IMAGE_KINDS:
            encoded = item.get(f"{kind}_image")
            if not encoded:
                continue
            setattr(geometry, f"{kind}_image", base64.b64decode(encoded))
            setattr(geometry, f"{kind}_image_content_type", item.get(f"{kind}_image_content_type"))
            setattr(geometry, f"{kind}_image_updated_at", now)
    session.flush()
    logger.info("Imported geometries: %d created, %d updated", created, updated)
    return created, updated


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Export or import named geometries")
    sub = parser.add_subparsers(dest="command", required=True)
    export_cmd = sub.add_parser("export")
    export_cmd.add_argument("path", type=Path)
    import_cmd = sub.add_parser("import")
    import_cmd.add_argument("path", type=Path)
    import_cmd.add_argument("--creator-email", default=None)
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    with session_scope() as session:
        if args.command == "export":
            args.path.write_text(json.dumps(export_geometries(session), indent=2), encoding="utf-8")
            return 0

        creator = None
        if args.creator_email:
            creator = session.execute(
                select(User).where(User.email == args.creator_email.strip().lower())
            ).scalar_one_or_none()
            if creator is None:
                logger.error("No user with e-mail %s", args.creator_email)
                return 1
        document = json.loads(args.path.read_text(encoding="utf-8"))
        import_geometries(session, document, creator=creator)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())
