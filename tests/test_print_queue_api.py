"""Print queue listing, printer progress pushes and acceptance decisions."""

from __future__ import annotations

import asyncio
import base64
import datetime as dt

import pytest
from sqlalchemy import update

from splint_factory.core.auth import ACCESS_TOKEN_COOKIE
from splint_factory.models import GeometryProcessingQueue, PrintQueue
from splint_factory.printing import status as print_status
from splint_factory.routers import print_queue


class RecordingBroadcaster:
    def __init__(self):
        self.events = []
        self.organizations = []

    def publish(self, event, organization_id=None):
        self.events.append(event)
        self.organizations.append(organization_id)
        return 1


@pytest.fixture
def broadcaster(monkeypatch):
    recorder = RecordingBroadcaster()
    monkeypatch.setattr(print_queue, "get_broadcaster", lambda: recorder)
    return recorder


@pytest.fixture
def printed_job(factory_auth):
    geometry_id = factory_auth.create_geometry()
    return factory_auth.create_job(
        geometry_id,
        object_id="PR1N",
        customer_id="PAT-7",
        geometry_file_contents=b"3mf",
        geometry_file_name="PR1N.3mf",
        print_file_contents=b"G28",
        print_file_name="PR1N.gcode",
    )


def _printer(factory_auth, **kwargs):
    return factory_auth.api_key_header(
        factory_auth.create_api_key(["print-queue:read", "print-queue:write"], **kwargs)
    )


def test_list_orders_failed_then_successful_then_unfinished(client, factory_auth):
    geometry_id = factory_auth.create_geometry()
    now = dt.datetime.now(dt.timezone.utc)
    done = factory_auth.create_print_entry(
        factory_auth.create_job(geometry_id, object_id="D0NE"),
        print_started_at=now - dt.timedelta(hours=2),
        print_completed_at=now - dt.timedelta(hours=1),
        is_print_successful=True,
    )
    failed = factory_auth.create_print_entry(
        factory_auth.create_job(geometry_id, object_id="FA1D"),
        print_started_at=now - dt.timedelta(hours=3),
        print_completed_at=now - dt.timedelta(hours=2),
        is_print_successful=False,
    )
    printing = factory_auth.create_print_entry(
        factory_auth.create_job(geometry_id, object_id="PR1G"),
        print_started_at=now - dt.timedelta(minutes=5),
    )
    ready = factory_auth.create_print_entry(factory_auth.create_job(geometry_id, object_id="RDY1"))
    factory_auth.create_print_entry(
        factory_auth.create_job(geometry_id, object_id="H1DE"), is_enabled=False
    )
    factory_auth.create_print_entry(
        factory_auth.create_job(
            geometry_id, object_id="F0RN", organization_id=factory_auth.other_organization_id
        )
    )

    response = client.get("/api/print-queue", headers=factory_auth.header("member"))

    assert response.status_code == 200
    entries = response.json()
    assert [entry["id"] for entry in entries] == [str(failed), str(done), str(ready), str(printing)]
    assert [entry["status"] for entry in entries] == ["failed", "successful", "ready", "printing"]
    assert entries[1]["acceptance"] == "pending"
    assert entries[2]["acceptance"] is None
    assert entries[2]["geometry_name"] == "Wrist Splint"
    assert entries[2]["organization_name"] == "Northside Clinic"
    assert entries[2]["geometry_file_contents"] is None


def test_create_entry_stores_files_on_job(client, factory_auth):
    job_id = factory_auth.create_job(factory_auth.create_geometry(), object_id="N3W1")

    response = client.post(
        "/api/print-queue",
        json={
            "geometry_job_id": str(job_id),
            "print_file_contents": base64.b64encode(b"G1 X1").decode(),
            "print_file_name": "N3W1.gcode",
        },
        headers=factory_auth.header("member"),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "ready"
    assert body["has_print_file"] is True
    assert body["has_geometry_file"] is False
    with factory_auth.session_factory() as session:
        assert session.get(GeometryProcessingQueue, job_id).print_file_contents == b"G1 X1"


def test_create_entry_for_other_organization_is_forbidden(client, factory_auth):
    job_id = factory_auth.create_job(
        factory_auth.create_geometry(),
        object_id="0THR",
        organization_id=factory_auth.other_organization_id,
    )

    response = client.post(
        "/api/print-queue",
        json={"geometry_job_id": str(job_id)},
        headers=factory_auth.header("member"),
    )

    assert response.status_code == 403


def test_get_entry_with_files(client, factory_auth, printed_job):
    entry_id = factory_auth.create_print_entry(printed_job)
    headers = factory_auth.header("member")

    plain = client.get(f"/api/print-queue/{entry_id}", headers=headers).json()
    with_files = client.get(
        f"/api/print-queue/{entry_id}", params={"include_files": "true"}, headers=headers
    ).json()

    assert plain["geometry_file_contents"] is None
    assert plain["object_id"] == "PR1N"
    assert plain["customer_id"] == "PAT-7"
    assert base64.b64decode(with_files["geometry_file_contents"]) == b"3mf"
    assert base64.b64decode(with_files["print_file_contents"]) == b"G28"
    outsider = client.get(f"/api/print-queue/{entry_id}", headers=factory_auth.header("outsider"))
    assert outsider.status_code == 403


def test_update_entry_is_partial_and_broadcast(client, factory_auth, printed_job, broadcaster):
    entry_id = factory_auth.create_print_entry(printed_job, print_note="keep me")
    started = "2024-06-01T10:00:00+00:00"

    response = client.put(
        f"/api/print-queue/{entry_id}",
        json={"print_started_at": started},
        headers=factory_auth.header("member"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "printing"
    assert body["print_note"] == "keep me"
    assert broadcaster.events == [{"type": "update", "id": str(entry_id), "status": "printing"}]

    finished = client.put(
        f"/api/print-queue/{entry_id}",
        json={"print_completed_at": "2024-06-01T11:00:00+00:00", "is_print_successful": False},
        headers=factory_auth.header("member"),
    ).json()
    assert finished["status"] == "failed"
    assert finished["acceptance"] == "pending"


def test_progress_push_from_printer(client, factory_auth, printed_job, broadcaster):
    entry_id = factory_auth.create_print_entry(printed_job)

    response = client.put(
        f"/api/print-queue/{entry_id}/progress",
        json={"progress": 42.5},
        headers=_printer(factory_auth),
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "id": str(entry_id), "progress": 42.5}
    event = broadcaster.events[-1]
    assert event["type"] == "progress"
    assert event["id"] == str(entry_id)
    assert event["progress"] == 42.5
    assert event["progressLastReportTime"]
    assert broadcaster.organizations[-1] == factory_auth.organization_id
    with factory_auth.session_factory() as session:
        entry = session.get(PrintQueue, entry_id)
        assert entry.progress == 42.5
        assert entry.progress_last_report_time is not None


def test_progress_validation_and_permissions(client, factory_auth, printed_job, broadcaster):
    entry_id = factory_auth.create_print_entry(printed_job)
    url = f"/api/print-queue/{entry_id}/progress"
    reader = factory_auth.api_key_header(
        factory_auth.create_api_key(["print-queue:read"], name="reader")
    )
    foreign = _printer(factory_auth, name="harbor", organization_id=factory_auth.other_organization_id)

    assert client.put(url, json={"progress": 101}, headers=_printer(factory_auth)).status_code == 422
    for invalid in (True, "50", None):
        assert client.put(url, json={"progress": invalid}, headers=factory_auth.header("member")).status_code == 422
    assert client.put(url, json={"progress": 10}, headers=reader).status_code == 403
    assert client.put(url, json={"progress": 10}, headers=foreign).status_code == 403
    assert client.put(url, json={"progress": 10}, headers=factory_auth.header("member")).status_code == 200
    assert broadcaster.events[-1]["progress"] == 10


def test_logs_are_replaced(client, factory_auth, printed_job):
    entry_id = factory_auth.create_print_entry(printed_job, logs="first line")
    headers = _printer(factory_auth)

    response = client.put(
        f"/api/print-queue/{entry_id}/logs", json={"logs": "layer 12/140"}, headers=headers
    )

    assert response.status_code == 200
    with factory_auth.session_factory() as session:
        assert session.get(PrintQueue, entry_id).logs == "layer 12/140"


def test_acceptance_requires_finished_print(client, factory_auth, printed_job, broadcaster):
    entry_id = factory_auth.create_print_entry(printed_job, progress=99.0)
    url = f"/api/print-queue/{entry_id}/acceptance"
    headers = factory_auth.header("member")

    early = client.post(url, json={"print_acceptance": True}, headers=headers)
    assert early.status_code == 400
    assert early.json()["detail"] == "Print must be completed (progress > 99%) before acceptance decision"

    client.put(f"/api/print-queue/{entry_id}/progress", json={"progress": 100}, headers=headers)
    accepted = client.post(
        url, json={"print_acceptance": False, "print_note": "Warped edge"}, headers=headers
    )
    assert accepted.status_code == 200
    body = accepted.json()
    assert body["acceptance"] == "rejected"
    assert body["print_note"] == "Warped edge"
    assert broadcaster.events[-1] == {
        "type": "acceptance",
        "id": str(entry_id),
        "printAcceptance": False,
    }

    again = client.post(url, json={"print_acceptance": True}, headers=headers)
    assert again.status_code == 400
    assert again.json()["detail"] == "Print has already been accepted or rejected"


def test_acceptance_after_completion_time(client, factory_auth, printed_job, broadcaster):
    entry_id = factory_auth.create_print_entry(
        printed_job,
        print_started_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1),
        print_completed_at=dt.datetime.now(dt.timezone.utc),
        is_print_successful=True,
    )

    response = client.post(
        f"/api/print-queue/{entry_id}/acceptance",
        json={"print_acceptance": True},
        headers=factory_auth.header("member"),
    )

    assert response.json()["acceptance"] == "accepted"


def test_event_stream_requires_authentication(client):
    response = client.get("/api/print-queue/events")

    assert response.status_code == 401


@pytest.mark.parametrize("decision", ["no", 0, "true", 1, None])
def test_acceptance_requires_a_json_boolean(client, factory_auth, printed_job, broadcaster, decision):
    entry_id = factory_auth.create_print_entry(printed_job, progress=100.0)

    response = client.post(
        f"/api/print-queue/{entry_id}/acceptance",
        json={"print_acceptance": decision},
        headers=factory_auth.header("member"),
    )

    assert response.status_code == 422
    assert broadcaster.events == []
    with factory_auth.session_factory() as session:
        assert session.get(PrintQueue, entry_id).print_acceptance is None


def test_concurrent_acceptance_keeps_first_decision(
    client, factory_auth, printed_job, broadcaster, monkeypatch
):
    entry_id = factory_auth.create_print_entry(printed_job, progress=100.0)

    def decided_meanwhile(entry):
        print_status.ensure_acceptance_allowed(entry)
        with factory_auth.session_factory.begin() as other:
            other.execute(
                update(PrintQueue)
                .where(PrintQueue.id == entry_id)
                .values(print_acceptance=True, print_note="Accepted at the printer")
            )

    monkeypatch.setattr(print_queue, "ensure_acceptance_allowed", decided_meanwhile)

    response = client.post(
        f"/api/print-queue/{entry_id}/acceptance",
        json={"print_acceptance": False, "print_note": "Warped edge"},
        headers=factory_auth.header("member"),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Print has already been accepted or rejected"
    assert broadcaster.events == []
    with factory_auth.session_factory() as session:
        entry = session.get(PrintQueue, entry_id)
        assert entry.print_acceptance is True
        assert entry.print_note == "Accepted at the printer"


class EventStreamConnection:
    """One SSE client driven straight through the ASGI app.

    ``TestClient`` waits for the response body to end, which an event stream
    never does; this keeps the connection open until :meth:`disconnect`.
    """

    def __init__(self, app, headers: dict[str, str]):
        self.app = app
        self.scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/api/print-queue/events",
            "raw_path": b"/api/print-queue/events",
            "root_path": "",
            "query_string": b"",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
            "client": ("203.0.113.20", 50000),
            "server": ("testserver", 80),
        }
        self.messages: list[dict] = []
        self._request_sent = False
        self._disconnected = asyncio.Event()

    async def receive(self) -> dict:
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self._disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def open(self) -> asyncio.Task:
        return asyncio.create_task(self.app(self.scope, self.receive, self.send))

    def disconnect(self) -> None:
        self._disconnected.set()

    @property
    def headers(self) -> dict[str, str]:
        start = next(m for m in self.messages if m["type"] == "http.response.start")
        return {key.decode(): value.decode() for key, value in start["headers"]}

    @property
    def body(self) -> str:
        return "".join(
            m.get("body", b"").decode() for m in self.messages if m["type"] == "http.response.body"
        )

    async def wait_for(self, text: str, timeout: float = 5.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while text not in self.body:
            if loop.time() > deadline:
                raise AssertionError(f"{text!r} not received, got {self.body!r}")
            await asyncio.sleep(0.01)


def test_event_stream_relays_progress_to_own_organization(client, factory_auth, printed_job):
    entry_id = factory_auth.create_print_entry(printed_job)
    printer = _printer(factory_auth)
    member = EventStreamConnection(
        client.app, {"Cookie": f"{ACCESS_TOKEN_COOKIE}={factory_auth.tokens['member']}"}
    )
    outsider = EventStreamConnection(client.app, factory_auth.header("outsider"))

    async def scenario():
        streams = [member.open(), outsider.open()]
        await member.wait_for("retry: 5000")
        await outsider.wait_for("retry: 5000")
        pushed = await asyncio.to_thread(
            client.put,
            f"/api/print-queue/{entry_id}/progress",
            json={"progress": 37.5},
            headers=printer,
        )
        await member.wait_for('"type":"progress"')
        # Both subscribers share this loop; give a misrouted frame time to arrive.
        await asyncio.sleep(0.2)
        member.disconnect()
        outsider.disconnect()
        await asyncio.wait_for(asyncio.gather(*streams), timeout=5)
        return pushed

    pushed = asyncio.run(scenario())

    assert pushed.status_code == 200
    assert member.headers["content-type"].startswith("text/event-stream")
    assert member.headers["cache-control"] == "no-cache, no-transform"
    assert member.headers["x-accel-buffering"] == "no"
    assert member.body.startswith(": connected\n\nretry: 5000\n\n")
    assert f'"id":"{entry_id}"' in member.body
    assert '"progress":37.5' in member.body
    assert "progress" not in outsider.body.split("retry: 5000", 1)[1]
    assert print_queue.get_broadcaster().subscriber_count == 0
