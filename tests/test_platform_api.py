"""Blobs, tracked links, maintenance mode and the service endpoints."""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from fastapi import HTTPException

from splint_factory.__version__ import __version__
from splint_factory.config import get_settings
from splint_factory.models import Link
from splint_factory.routers.links import resolve_hosted_file


def _uploader(factory_auth):
    return factory_auth.api_key_header(factory_auth.create_api_key(["geometry-queue:write"]))


def test_health_version_and_config(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/api/version").json()["version"] == __version__
    config = client.get("/api/config").json()
    assert config["BRAND_NAME"] == "Splint Factory"
    assert config["SSE_RECONNECT_MS"] == 5000


def test_metrics_endpoint(client):
    response = client.get("/api/metrics")

    assert response.status_code == 200
    assert "http_request" in response.text


def test_blob_upload_and_serve(client, factory_auth):
    response = client.post(
        "/api/blob/upload",
        files={"file": ("PR1N.gcode", b"G28\nG1 X10", "text/plain")},
        headers=_uploader(factory_auth),
    )

    assert response.status_code == 200
    blob = response.json()
    assert blob["url"] == f"/api/local-blob/{blob['pathname']}"
    assert blob["size"] == len(b"G28\nG1 X10")
    assert blob["content_type"] == "text/plain"

    served = client.get(blob["url"], headers=factory_auth.header("member"))
    assert served.status_code == 200
    assert served.content == b"G28\nG1 X10"
    assert served.headers["cache-control"] == "private, max-age=3600"
    assert client.get(blob["url"]).status_code == 401


def test_blob_upload_rules(client, factory_auth):
    empty = client.post(
        "/api/blob/upload",
        files={"file": ("empty.stl", b"", "model/stl")},
        headers=_uploader(factory_auth),
    )
    as_user = client.post(
        "/api/blob/upload",
        files={"file": ("x.stl", b"solid", "model/stl")},
        headers=factory_auth.header("system_admin"),
    )
    reader = client.post(
        "/api/blob/upload",
        files={"file": ("x.stl", b"solid", "model/stl")},
        headers=factory_auth.api_key_header(
            factory_auth.create_api_key(["geometry-queue:read"], name="reader")
        ),
    )

    assert empty.status_code == 400
    assert as_user.status_code == 401
    assert reader.status_code == 403


def test_local_blob_missing(client, factory_auth):
    response = client.get("/api/local-blob/missing.stl", headers=factory_auth.header("member"))

    assert response.status_code == 404


def _create_link(client, factory_auth, **overrides):
    body = {
        "shortcode": "fitting-guide",
        "link_type": "EXTERNAL_URL",
        "link_target": "https://docs.example.com/fitting",
        "title": "Fitting guide",
    }
    body.update(overrides)
    return client.post("/api/admin/links", json=body, headers=factory_auth.header("system_admin"))


def test_external_link_redirects_and_tracks(client, factory_auth):
    link = _create_link(client, factory_auth).json()

    response = client.get(
        "/l/fitting-guide",
        headers={"User-Agent": "pytest", "Referer": "https://clinic.example", "X-Forwarded-For": "203.0.113.9"},
        follow_redirects=False,
    )

    assert response.status_code == 307
    assert response.headers["location"] == "https://docs.example.com/fitting"

    headers = factory_auth.header("system_admin")
    listed = client.get("/api/admin/links", headers=headers).json()
    assert listed[0]["click_count"] == 1
    assert listed[0]["activity_count"] == 1
    activity = client.get(f"/api/admin/links/{link['id']}/activity", headers=headers).json()
    assert activity[0]["ip_address"] == "203.0.113.9"
    assert activity[0]["user_agent"] == "pytest"
    assert activity[0]["referer"] == "https://clinic.example"


def test_hosted_file_link(client, factory_auth):
    hosted = Path(get_settings().hosted_files_dir)
    hosted.mkdir(parents=True, exist_ok=True)
    (hosted / "care-sheet.pdf").write_bytes(b"%PDF-1.4")
    _create_link(client, factory_auth, shortcode="care", link_type="HOSTED_FILE", link_target="care-sheet.pdf")

    response = client.get("/l/care")

    assert response.status_code == 200
    assert response.content == b"%PDF-1.4"
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == 'attachment; filename="care-sheet.pdf"'
    assert response.headers["content-length"] == "8"
    assert "last-modified" in response.headers


def test_link_validation(client, factory_auth):
    _create_link(client, factory_auth)

    duplicate = _create_link(client, factory_auth)
    bad_code = _create_link(client, factory_auth, shortcode="has space")
    traversal = _create_link(
        client, factory_auth, shortcode="etc", link_type="HOSTED_FILE", link_target="../secret.txt"
    )
    forbidden = client.get("/api/admin/links", headers=factory_auth.header("org_admin"))

    assert duplicate.status_code == 409
    assert bad_code.status_code == 422
    assert traversal.status_code == 400
    assert forbidden.status_code == 403


def test_unknown_or_inactive_link(client, factory_auth):
    _create_link(client, factory_auth)
    with factory_auth.session_factory.begin() as session:
        session.query(Link).update({Link.is_active: False})

    assert client.get("/l/fitting-guide", follow_redirects=False).status_code == 404
    assert client.get("/l/nothing-here").status_code == 404
    missing = client.get(
        f"/api/admin/links/{uuid.uuid4()}/activity", headers=factory_auth.header("system_admin")
    )
    assert missing.status_code == 404


def test_resolve_hosted_file(tmp_path):
    assert resolve_hosted_file("docs/guide.pdf", tmp_path) == (tmp_path / "docs" / "guide.pdf").resolve()
    for target in ("../outside.pdf", "/etc/passwd", "."):
        with pytest.raises(HTTPException):
            resolve_hosted_file(target, tmp_path)


def test_maintenance_mode(client, factory_auth):
    assert client.get("/api/maintenance-status").json()["maintenance_mode_enabled"] is False

    denied = client.put(
        "/api/admin/maintenance",
        json={"maintenance_mode_enabled": True},
        headers=factory_auth.header("org_admin"),
    )
    enabled = client.put(
        "/api/admin/maintenance",
        json={"maintenance_mode_enabled": True, "maintenance_message": "Printer calibration"},
        headers=factory_auth.header("system_admin"),
    )

    assert denied.status_code == 403
    assert enabled.status_code == 200
    status = client.get("/api/maintenance-status").json()
    assert status["maintenance_mode_enabled"] is True
    assert status["maintenance_message"] == "Printer calibration"
    assert status["maintenance_mode_updated_at"] is not None


def test_system_status_endpoint(client, factory_auth):
    factory_auth.create_job(factory_auth.create_geometry(), object_id="QU3U")

    response = client.get("/api/admin/system-status", headers=factory_auth.header("system_admin"))

    assert response.status_code == 200
    body = response.json()
    assert [job["object_id"] for job in body["queue"]["never_started"]] == ["QU3U"]
    assert len(body["throughput_per_hour"]) == 24
    assert client.get(
        "/api/admin/system-status", headers=factory_auth.header("member")
    ).status_code == 403


def test_login_is_rate_limited(client):
    body = {"email": "member@northside.example", "password": "wrong-password"}
    statuses = [client.post("/api/auth/login", json=body).status_code for _ in range(21)]

    assert statuses[:20] == [401] * 20
    assert statuses[20] == 429
