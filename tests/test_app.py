"""Tests for the local HTTP/WebSocket API."""

import json
import socket
import time

import pytest
from fastapi.testclient import TestClient

from islet.engine.store import SessionStore
from islet.models import HookEvent, HookEventKind
from islet.monitor import SessionMonitor
from islet.server.app import create_app
from islet.server.emitter import HookEmitter
from islet.server.hook_server import HookSocketServer


@pytest.fixture
def client(socket_path):
    monitor = SessionMonitor(SessionStore(), HookSocketServer(socket_path))
    with TestClient(create_app(monitor)) as test_client:
        yield test_client


def emit(socket_path, event, status, **fields):
    HookEmitter(socket_path).send(
        HookEvent(session_id="ses_1", cwd="/tmp/proj", event=event, status=status, **fields)
    )


def wait_for_phase(client, phase, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        resp = client.get("/api/sessions/ses_1")
        if resp.status_code == 200 and resp.json()["phase"]["kind"] == phase:
            return resp.json()
        time.sleep(0.02)
    raise AssertionError(f"session never reached {phase}")


def open_permission(socket_path):
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(5)
    sock.connect(socket_path)
    event = HookEvent(
        session_id="ses_1",
        cwd="/tmp/proj",
        event=HookEventKind.PERMISSION_REQUEST,
        status="waiting_for_approval",
        tool="bash",
        tool_use_id="tu_1",
    )
    sock.sendall(event.encode() + b"\n")
    return sock


def read_decision(sock):
    buf = b""
    while not buf.endswith(b"\n"):
        chunk = sock.recv(1024)
        if not chunk:
            break
        buf += chunk
    sock.close()
    return json.loads(buf)


class TestHealth:
    def test_health(self, client, socket_path):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert data["socket_path"] == socket_path

    def test_backend_disabled(self, client):
        assert client.get("/api/backend").json()["enabled"] is False


class TestSessions:
    def test_empty(self, client):
        assert client.get("/api/sessions").json() == {"sessions": []}

    def test_unknown_session(self, client):
        assert client.get("/api/sessions/nope").status_code == 404
        assert client.post("/api/sessions/nope/approve").status_code == 404
        assert client.post("/api/sessions/nope/deny").status_code == 404
        assert client.delete("/api/sessions/nope").status_code == 404

    def test_session_from_hook(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        session = wait_for_phase(client, "processing")
        assert session["project_name"] == "proj"
        assert session["display_name"] == "proj-ses_1"
        assert session["needs_attention"] is False
        assert [s["session_id"] for s in client.get("/api/sessions").json()["sessions"]] == ["ses_1"]

    def test_archive(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        wait_for_phase(client, "processing")
        assert client.delete("/api/sessions/ses_1").status_code == 200
        assert client.get("/api/sessions/ses_1").status_code == 404


class TestDecisions:
    def test_nothing_pending_is_conflict(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        wait_for_phase(client, "processing")
        assert client.post("/api/sessions/ses_1/approve").status_code == 409

    def test_approve(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        wait_for_phase(client, "processing")
        sock = open_permission(socket_path)
        session = wait_for_phase(client, "waiting_for_approval")
        assert session["needs_attention"] is True
        assert session["phase"]["permission"]["tool_name"] == "bash"

        assert client.post("/api/sessions/ses_1/approve").json() == {"status": "ok"}
        assert read_decision(sock) == {"decision": "allow"}
        wait_for_phase(client, "processing")

    def test_deny_with_reason(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        wait_for_phase(client, "processing")
        sock = open_permission(socket_path)
        wait_for_phase(client, "waiting_for_approval")

        resp = client.post("/api/sessions/ses_1/deny", json={"reason": "not now"})
        assert resp.status_code == 200
        assert read_decision(sock) == {"decision": "deny", "reason": "not now"}


class TestWebSocket:
    def test_pushes_snapshots(self, client, socket_path):
        with client.websocket_connect("/ws") as ws:
            first = ws.receive_json()
            assert first["type"] == "sessions"
            assert first["sessions"] == []
            assert "server_time" in first

            emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
            update = ws.receive_json()
            assert update["type"] == "sessions"
            assert update["sessions"][0]["session_id"] == "ses_1"
            assert update["sessions"][0]["phase"]["kind"] == "processing"

    def test_new_client_gets_latest_snapshot(self, client, socket_path):
        emit(socket_path, HookEventKind.USER_PROMPT_SUBMIT, "processing")
        wait_for_phase(client, "processing")

        with client.websocket_connect("/ws") as ws:
            replay = ws.receive_json()
            assert [s["session_id"] for s in replay["sessions"]] == ["ses_1"]
            assert replay["sessions"][0]["phase"]["kind"] == "processing"
