"""Endpoints used by the external geometry processor."""

from __future__ import annotations

import base64
import datetime as dt
import uuid

from sqlalchemy import event, select, update

from splint_factory.config import reset_settings_cache
from splint_factory.models import GeometryProcessingQueue, PrintQueue
from splint_factory.routers.geometry_processing import CLAIM_ATTEMPTS, claim_next_job

NEXT_JOB = "/api/geometry-processing/next-job"
RESULT = "/api/geometry-processing/result"


def _processor(factory_auth):
    raw_key = factory_auth.create_api_key(["geometry-queue:read", "geometry-queue:write"])
    return factory_auth.api_key_header(raw_key)


def test_next_job_returns_oldest_pending_job(client, factory_auth):
    geometry_id = factory_auth.create_geometry()
    now = dt.datetime.now(dt.timezone.utc)
    older = factory_auth.create_job(
        geometry_id, object_id="AAA1", created_at=now - dt.timedelta(minutes=5),
        customer_note="Left wrist", customer_id="PAT-1",
    )
    factory_auth.create_job(geometry_id, object_id="BBB2", created_at=now)
    factory_auth.create_job(
        geometry_id, object_id="CCC3", created_at=now - dt.timedelta(minutes=9), is_enabled=False
    )
    headers = _processor(factory_auth)

    response = client.get(NEXT_JOB, headers=headers)

    assert response.status_code == 200
    job = response.json()
    assert job["id"] == str(older)
    assert job["GeometryID"] == str(geometry_id)
    assert job["GeometryName"] == "Wrist Splint"
    assert job["GeometryAlgorithmName"] == "wrist_splint_v2"
    assert job["CustomerNote"] == "Left wrist"
    assert job["CustomerID"] == "PAT-1"
    assert job["objectID"] == "AAA1"
    assert job["isDebugRequest"] is False
    assert job["ProcessStartedTime"] is not None
    assert job["owningOrganization"]["name"] == "Northside Clinic"
    assert job["creator"]["email"] == "member@northside.example"

    second = client.get(NEXT_JOB, headers=headers).json()
    assert second["objectID"] == "BBB2"
    empty = client.get(NEXT_JOB, headers=headers)
    assert empty.status_code == 404
    assert empty.json()["detail"] == "No jobs available for processing"


def test_next_job_requires_read_permission(client, factory_auth):
    writer = factory_auth.api_key_header(
        factory_auth.create_api_key(["geometry-queue:write"], name="writer")
    )
    wildcard = factory_auth.api_key_header(factory_auth.create_api_key(["*"], name="all"))

    assert client.get(NEXT_JOB, headers=writer).status_code == 403
    assert client.get(NEXT_JOB, headers=wildcard).status_code == 404
    assert client.get(NEXT_JOB, headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get(NEXT_JOB).status_code == 401


def test_next_job_accepts_user_session(client, factory_auth):
    assert client.get(NEXT_JOB, headers=factory_auth.header("member")).status_code == 404


def test_mark_started(client, factory_auth):
    job_id = factory_auth.create_job(factory_auth.create_geometry(), object_id="M4RK")

    response = client.post(
        "/api/geometry-processing/mark-started",
        json={"jobId": str(job_id)},
        headers=_processor(factory_auth),
    )

    assert response.status_code == 200
    assert response.json()["jobId"] == str(job_id)
    with factory_auth.session_factory() as session:
        assert session.get(GeometryProcessingQueue, job_id).process_started_at is not None


def test_successful_result_queues_print(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="R3SL",
        process_started_at=dt.datetime.now(dt.timezone.utc),
    )

    response = client.post(
        RESULT,
        json={
            "GeometryProcessingQueueID": str(job_id),
            "isSuccess": True,
            "GeometryFileContents": base64.b64encode(b"3mf-bytes").decode(),
            "GeometryFileName": "R3SL.3mf",
            "PrintFileContents": base64.b64encode(b"G28\nG1 X5").decode(),
            "PrintFileName": "R3SL.gcode",
            "ProcessingLog": "done in 12s",
        },
        headers=_processor(factory_auth),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["geometryJob"]["isProcessSuccessful"] is True
    assert body["printQueueEntry"]["hasGeometryFile"] is True
    assert body["printQueueEntry"]["PrintFileName"] == "R3SL.gcode"

    with factory_auth.session_factory() as session:
        job = session.get(GeometryProcessingQueue, job_id)
        assert job.geometry_file_contents == b"3mf-bytes"
        assert job.print_file_contents == b"G28\nG1 X5"
        assert job.processing_log == "done in 12s"
        assert job.process_completed_at is not None
        entries = session.scalars(select(PrintQueue)).all()
    assert [str(entry.id) for entry in entries] == [body["printQueueEntry"]["id"]]


def test_successful_result_with_blob_references(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="BL0B",
        process_started_at=dt.datetime.now(dt.timezone.utc),
    )

    response = client.post(
        RESULT,
        json={
            "GeometryProcessingQueueID": str(job_id),
            "isSuccess": True,
            "PrintBlobUrl": "/api/local-blob/BL0B-1a2b.gcode",
            "PrintBlobPathname": "BL0B-1a2b.gcode",
            "PrintFileName": "BL0B.gcode",
        },
        headers=_processor(factory_auth),
    )

    assert response.status_code == 201
    assert response.json()["printQueueEntry"]["hasPrintFile"] is True
    assert response.json()["printQueueEntry"]["hasGeometryFile"] is False


def test_failed_result_records_error_without_print(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="FA1L",
        process_started_at=dt.datetime.now(dt.timezone.utc),
    )

    response = client.post(
        RESULT,
        json={
            "GeometryProcessingQueueID": str(job_id),
            "isSuccess": False,
            "errorMessage": "mesh export failed",
        },
        headers=_processor(factory_auth),
    )

    assert response.status_code == 201
    assert "printQueueEntry" not in response.json()
    with factory_auth.session_factory() as session:
        job = session.get(GeometryProcessingQueue, job_id)
        assert job.is_process_successful is False
        assert job.processing_log == "mesh export failed"
        assert session.scalars(select(PrintQueue)).all() == []


def test_result_without_files_does_not_queue_print(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="N0F1",
        process_started_at=dt.datetime.now(dt.timezone.utc),
    )

    response = client.post(
        RESULT,
        json={"GeometryProcessingQueueID": str(job_id), "isSuccess": True},
        headers=_processor(factory_auth),
    )

    assert response.status_code == 201
    assert "printQueueEntry" not in response.json()


def test_result_errors(client, factory_auth):
    headers = _processor(factory_auth)
    geometry_id = factory_auth.create_geometry()
    pending = factory_auth.create_job(geometry_id, object_id="P3ND")
    started = factory_auth.create_job(
        geometry_id, object_id="ST4R", process_started_at=dt.datetime.now(dt.timezone.utc)
    )

    missing = client.post(
        RESULT,
        json={"GeometryProcessingQueueID": str(uuid.uuid4()), "isSuccess": True},
        headers=headers,
    )
    not_started = client.post(
        RESULT, json={"GeometryProcessingQueueID": str(pending), "isSuccess": True}, headers=headers
    )
    bad_base64 = client.post(
        RESULT,
        json={
            "GeometryProcessingQueueID": str(started),
            "isSuccess": True,
            "GeometryFileContents": "not base64!!",
            "GeometryFileName": "x.3mf",
        },
        headers=headers,
    )

    assert missing.status_code == 404
    assert not_started.status_code == 400
    assert not_started.json()["detail"] == "Job has not been started yet"
    assert bad_base64.status_code == 400
    assert bad_base64.json()["detail"] == "Invalid base64 encoding for geometry file"
    with factory_auth.session_factory() as session:
        assert session.get(GeometryProcessingQueue, started).process_completed_at is None


def test_result_rejects_oversized_files(client, factory_auth, monkeypatch):
    monkeypatch.setenv("MAX_UPLOAD_FILE_SIZE", "4")
    reset_settings_cache()
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="B1GG",
        process_started_at=dt.datetime.now(dt.timezone.utc),
    )

    response = client.post(
        RESULT,
        json={
            "GeometryProcessingQueueID": str(job_id),
            "isSuccess": True,
            "PrintFileContents": base64.b64encode(b"too large").decode(),
            "PrintFileName": "x.gcode",
        },
        headers=_processor(factory_auth),
    )

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Print file exceeds")


def test_debug_request_clones_job(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(), object_id="D3BG", customer_note="Right hand"
    )
    headers = factory_auth.header("system_admin")

    forbidden = client.post(
        "/api/geometry-processing/debug",
        json={"jobId": str(job_id)},
        headers=factory_auth.header("org_admin"),
    )
    response = client.post(
        "/api/geometry-processing/debug", json={"jobId": str(job_id)}, headers=headers
    )

    assert forbidden.status_code == 403
    assert response.status_code == 200
    debug_id = uuid.UUID(response.json()["debugJobId"])
    with factory_auth.session_factory() as session:
        debug_job = session.get(GeometryProcessingQueue, debug_id)
        assert debug_job.is_debug_request is True
        assert debug_job.object_id.startswith("debug-")
        assert debug_job.customer_note == "DEBUG: Right hand"
        assert debug_job.creator_id == factory_auth.users["system_admin"]
        assert debug_job.process_started_at is None


def test_processor_health_tracks_polls(client, factory_auth):
    headers = factory_auth.header("system_admin")

    before = client.get("/api/geometry-processing/processor-health", headers=headers).json()
    client.get(NEXT_JOB, headers=_processor(factory_auth))
    after = client.get("/api/geometry-processing/processor-health", headers=headers).json()

    assert before["isHealthy"] is False
    assert before["lastPingTime"] is None
    assert after["isHealthy"] is True
    assert after["secondsSinceLastPing"] == 0
    denied = client.get(
        "/api/geometry-processing/processor-health", headers=factory_auth.header("member")
    )
    assert denied.status_code == 403


def _start_oldest_elsewhere(factory_auth):
    """Start the oldest pending job from a second session, as a rival processor would."""

    queue = GeometryProcessingQueue
    with factory_auth.session_factory.begin() as other:
        job_id = other.scalar(
            select(queue.id)
            .where(queue.is_enabled.is_(True), queue.process_started_at.is_(None))
            .order_by(queue.created_at.asc())
            .limit(1)
        )
        other.execute(
            update(queue)
            .where(queue.id == job_id)
            .values(process_started_at=dt.datetime.now(dt.timezone.utc))
        )
    return job_id


def test_claim_moves_on_when_candidate_was_taken(factory_auth):
    geometry_id = factory_auth.create_geometry()
    now = dt.datetime.now(dt.timezone.utc)
    first = factory_auth.create_job(
        geometry_id, object_id="RAC1", created_at=now - dt.timedelta(minutes=2)
    )
    second = factory_auth.create_job(
        geometry_id, object_id="RAC2", created_at=now - dt.timedelta(minutes=1)
    )
    taken = []

    with factory_auth.session_factory() as session:

        @event.listens_for(session, "do_orm_execute")
        def _lose_first_race(state):
            if state.is_update and not taken:
                taken.append(_start_oldest_elsewhere(factory_auth))

        job = claim_next_job(session)

    assert taken == [first]
    assert job is not None
    assert job.id == second
    assert job.process_started_at is not None


def test_claim_gives_up_after_repeated_contention(factory_auth):
    geometry_id = factory_auth.create_geometry()
    now = dt.datetime.now(dt.timezone.utc)
    total = CLAIM_ATTEMPTS + 1
    for index in range(total):
        factory_auth.create_job(
            geometry_id,
            object_id=f"CN{index:02d}",
            created_at=now - dt.timedelta(minutes=total - index),
        )
    taken = []

    with factory_auth.session_factory() as session:

        @event.listens_for(session, "do_orm_execute")
        def _always_lose(state):
            if state.is_update:
                taken.append(_start_oldest_elsewhere(factory_auth))

        assert claim_next_job(session) is None

    assert len(taken) == CLAIM_ATTEMPTS
    with factory_auth.session_factory() as session:
        pending = session.scalars(
            select(GeometryProcessingQueue.object_id).where(
                GeometryProcessingQueue.process_started_at.is_(None)
            )
        ).all()
    assert pending == [f"CN{CLAIM_ATTEMPTS:02d}"]
