import base64
import json

import pytest
from sqlalchemy import select

from splint_factory.models import NamedGeometry, Organization, User, UserRole
from splint_factory.security import verify_password
from tools import bootstrap, print_log_config, sync_geometries

from conftest import WRIST_SCHEMA


def test_as_sqlalchemy_url_and_redaction():
    assert (
        bootstrap._as_sqlalchemy_url("postgresql://u:p@db/splints")
        == "postgresql+psycopg://u:p@db/splints"
    )
    assert bootstrap._as_sqlalchemy_url("sqlite:///x.db") == "sqlite:///x.db"
    assert "secret" not in bootstrap._safe_url("postgresql+psycopg://u:secret@db/splints")


def test_bootstrap_creates_base_records(factory_auth):
    with factory_auth.session_factory() as session:
        orphan = User(email="orphan@example.com", name="Orphan", role=UserRole.MEMBER.value)
        session.add(orphan)
        session.flush()

        summary = bootstrap.bootstrap(
            session, admin_email="Ops@Example.com", admin_password="Bootstrap123!"
        )
        session.commit()

        admin = session.execute(select(User).where(User.email == "ops@example.com")).scalar_one()
        default_org = session.execute(
            select(Organization).where(Organization.name == bootstrap.DEFAULT_ORG_NAME)
        ).scalar_one()
        session.refresh(orphan)

    assert summary == {
        "system_organization_created": True,
        "default_organization_created": True,
        "admin_created": True,
        "orphans_assigned": 1,
    }
    assert admin.role == UserRole.SYSTEM_ADMIN.value
    assert verify_password("Bootstrap123!", admin.password_hash)
    assert orphan.organization_id == default_org.id


def test_bootstrap_is_idempotent_and_promotes(factory_auth):
    with factory_auth.session_factory() as session:
        bootstrap.bootstrap(session)
        summary = bootstrap.bootstrap(
            session, admin_email="member@northside.example", admin_password="ignored-pass"
        )
        session.commit()
        member = session.get(User, factory_auth.users["member"])

    assert summary["system_organization_created"] is False
    assert summary["admin_created"] is False
    assert member.role == UserRole.SYSTEM_ADMIN.value
    assert member.organization_id == factory_auth.organization_id


def test_main_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(bootstrap, "load_dotenv", lambda: None)

    with pytest.raises(RuntimeError):
        bootstrap.main(["--skip-schema"])


def test_export_and_import_geometries(factory_auth):
    factory_auth.create_geometry("Wrist Splint")
    with factory_auth.session_factory.begin() as session:
        geometry = session.execute(select(NamedGeometry)).scalar_one()
        geometry.preview_image = b"\x89PNG"
        geometry.preview_image_content_type = "image/png"

    with factory_auth.session_factory() as session:
        document = sync_geometries.export_geometries(session)

    assert document["version"] == 1
    item = document["geometries"][0]
    assert item["geometry_name"] == "Wrist Splint"
    assert base64.b64decode(item["preview_image"]) == b"\x89PNG"
    assert item["measurement_image"] is None

    item["algorithm_name"] = "wrist_splint_v9"
    document["geometries"].append(
        {
            "geometry_name": "Finger Splint",
            "algorithm_name": "finger_v1",
            "parameter_schema": WRIST_SCHEMA,
        }
    )
    with factory_auth.session_factory.begin() as session:
        creator = session.get(User, factory_auth.users["system_admin"])
        created, updated = sync_geometries.import_geometries(
            session, json.loads(json.dumps(document)), creator=creator
        )

    assert (created, updated) == (1, 1)
    with factory_auth.session_factory() as session:
        rows = {
            g.geometry_name: g for g in session.scalars(select(NamedGeometry)).all()
        }
    assert rows["Wrist Splint"].algorithm_name == "wrist_splint_v9"
    assert rows["Finger Splint"].creator_id == factory_auth.users["system_admin"]


def test_import_rejects_bad_documents(factory_auth):
    with factory_auth.session_factory() as session:
        with pytest.raises(ValueError, match="Unsupported export version"):
            sync_geometries.import_geometries(session, {"version": 2, "geometries": []})
        with pytest.raises(ValueError, match="invalid schema"):
            sync_geometries.import_geometries(
                session,
                {
                    "version": 1,
                    "geometries": [
                        {"geometry_name": "Bad", "algorithm_name": "bad", "parameter_schema": "{}"}
                    ],
                },
            )


def test_print_log_config(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")

    config = print_log_config.get_log_config()

    assert config["app_log"] == str(tmp_path / "app.log")
    assert config["app_logger"] == "splint_factory"
    assert config["log_level"] == "DEBUG"
    assert config["log_request_bodies"] is True
