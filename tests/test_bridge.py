"""Tests for the parent side of the helper-process bridge."""

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from islet.bridge.client import BackendBridge
from islet.exceptions import BridgeNotRunning, RemoteError

# A scripted stand-in for the helper. Each request method triggers one behaviour.
FAKE_BACKEND = r'''
import json
import sys


def send(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


held = []
while True:
    line = sys.stdin.readline()
    if not line:
        break
    msg = json.loads(line)
    msg_id = msg.get("id")
    method = msg.get("method")
    params = msg.get("params") or {}

    if method == "echo":
        send({"id": msg_id, "result": params})
    elif method == "hold":
        held.append((msg_id, params.get("tag")))
    elif method == "release":
        for held_id, tag in reversed(held):
            send({"id": held_id, "result": tag})
        held.clear()
        send({"id": msg_id, "result": "released"})
    elif method == "fail":
        send({"id": msg_id, "error": {"code": -32603, "message": "boom"}})
    elif method == "crash":
        sys.exit(1)
    elif method == "quit":
        sys.exit(0)
    elif method == "chatter":
        sys.stdout.write("not json at all\n")
        sys.stderr.write("some stderr noise\n")
        sys.stderr.flush()
        send({"method": "log", "params": {"level": "warn", "message": "from helper"}})
        send({"method": "connected", "params": {}})
        send({"method": "sessions.updated", "params": {"sessions": [{"id": "ses_1", "title": "T"}]}})
        send({"id": msg_id, "result": True})
    elif method == "odd_notice":
        send({"method": "weird.thing", "params": {"x": 1}})
        send({"id": msg_id, "result": True})
    elif method == "stderr_flood":
        sys.stderr.write("x" * 100000 + "\n")
        sys.stderr.write("more stderr\n")
        sys.stderr.flush()
        if params.get("exit"):
            sys.exit(1)
        send({"id": msg_id, "result": "flooded"})
    elif method == "discover.server":
        send({"id": msg_id, "result": 4096})
    else:
        send({"id": msg_id, "error": {"code": -32601, "message": "Method not found: " + str(method)}})
'''

ROOT = Path(__file__).resolve().parent.parent
REAL_BACKEND = [sys.executable, "-m", "islet.bridge.backend"]


def real_backend_env(home):
    env = dict(os.environ)
    env["HOME"] = str(home)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
    return env


@pytest.fixture
def fake_backend(tmp_path):
    script = tmp_path / "fake_backend.py"
    script.write_text(FAKE_BACKEND)
    return [sys.executable, str(script)]


# ── Requests ────────────────────────────────────────────────


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_before_start(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        with pytest.raises(BridgeNotRunning):
            await bridge.request("echo")

    @pytest.mark.asyncio
    async def test_echo(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        await bridge.start()
        try:
            assert await bridge.request("echo", {"a": 1}) == {"a": 1}
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_out_of_order_responses_reach_their_callers(self, fake_backend, wait_until):
        bridge = BackendBridge(fake_backend)
        await bridge.start()
        try:
            first = asyncio.create_task(bridge.request("hold", {"tag": "first"}))
            second = asyncio.create_task(bridge.request("hold", {"tag": "second"}))
            await wait_until(lambda: bridge.pending_count == 2, timeout=5.0)

            assert await bridge.request("release") == "released"
            assert await first == "first"
            assert await second == "second"
            assert bridge.pending_count == 0
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_error_response_raises_remote_error(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        await bridge.start()
        try:
            with pytest.raises(RemoteError) as exc:
                await bridge.request("fail")
            assert exc.value.code == -32603
            assert exc.value.message == "boom"

            with pytest.raises(RemoteError) as exc:
                await bridge.request("nope")
            assert exc.value.code == -32601
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_discover_server(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        await bridge.start()
        try:
            assert await bridge.discover_server() == 4096
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_discover_server_when_not_running(self, fake_backend):
        assert await BackendBridge(fake_backend).discover_server() is None


# ── Notifications ───────────────────────────────────────────


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notifications_and_noise(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        updates = []
        bridge.on("sessions.updated", updates.append)
        await bridge.start()
        try:
            assert await bridge.request("chatter") is True
            assert bridge.connected is True
            assert list(bridge.sessions) == ["ses_1"]
            assert bridge.sessions["ses_1"].title == "T"
            assert updates == [{"sessions": [{"id": "ses_1", "title": "T"}]}]
            # Garbage on stdout did not break the stream
            assert await bridge.request("echo", {"ok": True}) == {"ok": True}
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_unknown_notification_is_ignored(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        seen = []
        bridge.on("weird.thing", seen.append)
        await bridge.start()
        try:
            assert await bridge.request("odd_notice") is True
            assert seen == []
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, fake_backend):
        bridge = BackendBridge(fake_backend)
        seen = []
        unsubscribe = bridge.on("connected", seen.append)
        unsubscribe()
        await bridge.start()
        try:
            await bridge.request("chatter")
            assert seen == []
        finally:
            await bridge.stop()


# ── Crash recovery ──────────────────────────────────────────


class TestCrashRecovery:
    @pytest.mark.asyncio
    async def test_crash_fails_pending_and_restarts_once(self, fake_backend, wait_until):
        bridge = BackendBridge(fake_backend, restart_delay=0.1)
        await bridge.start()
        try:
            held = asyncio.create_task(bridge.request("hold", {"tag": "x"}))
            await wait_until(lambda: bridge.pending_count == 1, timeout=5.0)

            with pytest.raises(BridgeNotRunning):
                await bridge.request("crash")
            with pytest.raises(BridgeNotRunning):
                await held
            assert bridge.connected is False

            await wait_until(lambda: bridge.restart_count == 1 and bridge.is_running, timeout=5.0)
            assert await bridge.request("echo", {"after": "restart"}) == {"after": "restart"}

            await asyncio.sleep(0.3)
            assert bridge.restart_count == 1
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_clean_exit_does_not_restart(self, fake_backend, wait_until):
        bridge = BackendBridge(fake_backend, restart_delay=0.05)
        await bridge.start()
        try:
            with pytest.raises(BridgeNotRunning):
                await bridge.request("quit")
            await wait_until(lambda: not bridge.is_running, timeout=5.0)
            await asyncio.sleep(0.2)
            assert bridge.restart_count == 0
            assert not bridge.is_running
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_long_stderr_line_then_crash_still_recovers(self, fake_backend, wait_until):
        bridge = BackendBridge(fake_backend, restart_delay=0.1)
        await bridge.start()
        try:
            held = asyncio.create_task(bridge.request("hold", {"tag": "x"}))
            await wait_until(lambda: bridge.pending_count == 1, timeout=5.0)

            with pytest.raises(BridgeNotRunning):
                await asyncio.wait_for(bridge.request("stderr_flood", {"exit": True}), 5)
            with pytest.raises(BridgeNotRunning):
                await asyncio.wait_for(held, 5)

            await wait_until(lambda: bridge.restart_count == 1 and bridge.is_running, timeout=5.0)
            assert await bridge.request("echo", {"n": 1}) == {"n": 1}
        finally:
            await asyncio.wait_for(bridge.stop(), 10)

    @pytest.mark.asyncio
    async def test_stop_after_long_stderr_line(self, fake_backend):
        bridge = BackendBridge(fake_backend, restart_delay=0.05)
        await bridge.start()
        assert await asyncio.wait_for(bridge.request("stderr_flood"), 5) == "flooded"
        await asyncio.wait_for(bridge.stop(), 10)
        assert not bridge.is_running
        assert bridge.restart_count == 0

    @pytest.mark.asyncio
    async def test_stop_does_not_restart(self, fake_backend):
        bridge = BackendBridge(fake_backend, restart_delay=0.05)
        await bridge.start()
        await bridge.stop()
        await asyncio.sleep(0.2)
        assert not bridge.is_running
        assert bridge.restart_count == 0
        with pytest.raises(BridgeNotRunning):
            await bridge.request("echo")


# ── Real helper process ─────────────────────────────────────


class TestRealBackend:
    @pytest.mark.asyncio
    async def test_method_surface_without_upstream(self, tmp_path):
        bridge = BackendBridge(REAL_BACKEND, env=real_backend_env(tmp_path))
        await bridge.start()
        try:
            with pytest.raises(RemoteError) as exc:
                await asyncio.wait_for(bridge.list_sessions(), 10)
            assert exc.value.code == -32603
            assert "Not connected" in exc.value.message

            with pytest.raises(RemoteError) as exc:
                await asyncio.wait_for(bridge.request("bogus.method"), 10)
            assert exc.value.code == -32601

            with pytest.raises(RemoteError) as exc:
                await asyncio.wait_for(bridge.request("session.get", {}), 10)
            assert "Missing sessionId" in exc.value.message
        finally:
            await bridge.stop()
        assert bridge.restart_count == 0
        assert list((tmp_path / ".islet" / "logs").glob("backend-*.log"))

    @pytest.mark.asyncio
    async def test_sigterm_disconnects_and_exits_cleanly(self, tmp_path, wait_until):
        bridge = BackendBridge(REAL_BACKEND, restart_delay=0.05, env=real_backend_env(tmp_path))
        disconnects = []
        bridge.on("disconnected", disconnects.append)
        await bridge.start()
        try:
            # Any answer means the helper's loop and signal handlers are up
            with pytest.raises(RemoteError):
                await asyncio.wait_for(bridge.request("bogus.method"), 10)

            process = bridge._process
            process.send_signal(signal.SIGTERM)
            assert await asyncio.wait_for(process.wait(), 10) == 0
            await wait_until(lambda: disconnects, timeout=5.0)
            assert disconnects == [{"reason": "Manual disconnect"}]

            await asyncio.sleep(0.2)
            assert bridge.restart_count == 0
            assert not bridge.is_running
        finally:
            await bridge.stop()
