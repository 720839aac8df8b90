"""Tests for the hook socket server."""

import asyncio
import json
import os
import socket
import stat

import pytest

from islet.models import PermissionDecision
from islet.server.hook_server import HookSocketServer


def event_json(event="SessionStart", **fields):
    data = {"session_id": "ses_1", "cwd": "/tmp", "event": event, "status": "starting"}
    data.update(fields)
    return json.dumps(data).encode()


def permission_json(tool_use_id="tu_1", session_id="ses_1"):
    return event_json(
        "PermissionRequest",
        session_id=session_id,
        status="waiting_for_approval",
        tool="bash",
        tool_use_id=tool_use_id,
        tool_input={"command": "ls"},
    )


class Recorder:
    def __init__(self):
        self.events = []
        self.failures = []

    async def on_event(self, event):
        self.events.append(event)

    async def on_failure(self, session_id, tool_use_id):
        self.failures.append((session_id, tool_use_id))


async def started(socket_path, **kwargs):
    recorder = Recorder()
    server = HookSocketServer(socket_path, **kwargs)
    await server.start(recorder.on_event, recorder.on_failure)
    return server, recorder


# ── Lifecycle ───────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_socket_is_owner_only(self, socket_path):
        server, _ = await started(socket_path)
        try:
            mode = os.stat(socket_path).st_mode
            assert stat.S_ISSOCK(mode)
            assert stat.S_IMODE(mode) == 0o600
        finally:
            await server.stop()
        assert not os.path.exists(socket_path)

    @pytest.mark.asyncio
    async def test_stale_socket_is_replaced(self, socket_path):
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(socket_path)
        stale.close()
        assert os.path.exists(socket_path)

        server, _ = await started(socket_path)
        assert server.is_running
        await server.stop()

    @pytest.mark.asyncio
    async def test_regular_file_is_left_alone(self, socket_path):
        with open(socket_path, "w") as f:
            f.write("not a socket")
        server = HookSocketServer(socket_path)
        with pytest.raises(OSError):
            await server.start(Recorder().on_event)
        with open(socket_path) as f:
            assert f.read() == "not a socket"


# ── Framing ─────────────────────────────────────────────────


class TestEvents:
    @pytest.mark.asyncio
    async def test_newline_terminated_event(self, socket_path):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(event_json() + b"\n")
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()
            assert [e.session_id for e in recorder.events] == ["ses_1"]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_eof_terminated_event(self, socket_path):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(event_json())
            writer.write_eof()
            await asyncio.wait_for(reader.read(), 2)
            writer.close()
            assert len(recorder.events) == 1
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_complete_json_without_terminator(self, socket_path, wait_until):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(event_json())
            await writer.drain()
            await wait_until(lambda: len(recorder.events) == 1)
            writer.close()
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_malformed_payload_is_dropped(self, socket_path):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(b'{"event":"SessionStart"}\n')
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()
            assert recorder.events == []
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_oversized_payload_is_dropped(self, socket_path):
        server, recorder = await started(socket_path, max_payload_bytes=64)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(b'{"session_id":"' + b"x" * 200)
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()
            assert recorder.events == []
        finally:
            await server.stop()


# ── Permissions ─────────────────────────────────────────────


class TestPermissions:
    @pytest.mark.asyncio
    async def test_respond_writes_decision(self, socket_path, wait_until):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(permission_json() + b"\n")
            await writer.drain()
            await wait_until(lambda: server.pending_tool_use_ids == ["tu_1"])
            assert recorder.events[0].tool_use_id == "tu_1"

            assert await server.respond_to_permission("tu_1", PermissionDecision.DENY, "nope")
            line = await asyncio.wait_for(reader.readline(), 2)
            assert json.loads(line) == {"decision": "deny", "reason": "nope"}
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()

            assert server.pending_tool_use_ids == []
            await asyncio.sleep(0.05)
            assert recorder.failures == []
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_respond_unknown_returns_false(self, socket_path):
        server, _ = await started(socket_path)
        try:
            assert await server.respond_to_permission("nope", PermissionDecision.ALLOW) is False
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_peer_disconnect_reports_failure(self, socket_path, wait_until):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(permission_json() + b"\n")
            await writer.drain()
            await wait_until(lambda: server.pending_tool_use_ids == ["tu_1"])

            writer.close()
            await wait_until(lambda: recorder.failures == [("ses_1", "tu_1")])
            assert server.pending_tool_use_ids == []
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_failed_decision_write_reports_failure(self, socket_path, wait_until, monkeypatch):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(permission_json() + b"\n")
            await writer.drain()
            await wait_until(lambda: server.pending_tool_use_ids == ["tu_1"])

            async def reset():
                raise ConnectionResetError("peer went away")

            monkeypatch.setattr(server._pending["tu_1"].writer, "drain", reset)
            assert await server.respond_to_permission("tu_1", PermissionDecision.ALLOW) is False
            assert recorder.failures == [("ses_1", "tu_1")]
            assert server.pending_tool_use_ids == []

            # The watcher must not report the same connection twice
            writer.close()
            await asyncio.sleep(0.05)
            assert recorder.failures == [("ses_1", "tu_1")]
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_cancel_closes_without_decision(self, socket_path, wait_until):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(permission_json() + b"\n")
            await writer.drain()
            await wait_until(lambda: server.pending_tool_use_ids == ["tu_1"])

            assert server.cancel_pending_permission("tu_1") is True
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()
            await asyncio.sleep(0.05)
            assert recorder.failures == []
            assert server.cancel_pending_permission("tu_1") is False
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_cancel_by_session(self, socket_path, wait_until):
        server, _ = await started(socket_path)
        writers = []
        try:
            for tool_use_id, session_id in [("a", "s1"), ("b", "s1"), ("c", "s2")]:
                _, writer = await asyncio.open_unix_connection(socket_path)
                writer.write(permission_json(tool_use_id, session_id) + b"\n")
                await writer.drain()
                writers.append(writer)
            await wait_until(lambda: len(server.pending_tool_use_ids) == 3)

            assert server.cancel_pending_permissions("s1") == 2
            assert server.pending_tool_use_ids == ["c"]
        finally:
            for writer in writers:
                writer.close()
            await server.stop()

    @pytest.mark.asyncio
    async def test_duplicate_tool_use_id_replaces_first(self, socket_path, wait_until):
        server, recorder = await started(socket_path)
        try:
            first_reader, first_writer = await asyncio.open_unix_connection(socket_path)
            first_writer.write(permission_json() + b"\n")
            await first_writer.drain()
            await wait_until(lambda: len(recorder.events) == 1)

            second_reader, second_writer = await asyncio.open_unix_connection(socket_path)
            second_writer.write(permission_json() + b"\n")
            await second_writer.drain()
            await wait_until(lambda: len(recorder.events) == 2)

            assert await asyncio.wait_for(first_reader.read(), 2) == b""
            assert await server.respond_to_permission("tu_1", PermissionDecision.ALLOW)
            assert json.loads(await asyncio.wait_for(second_reader.readline(), 2)) == {"decision": "allow"}
            first_writer.close()
            second_writer.close()
            await asyncio.sleep(0.05)
            assert recorder.failures == []
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_permission_without_tool_use_id_is_not_held(self, socket_path):
        server, recorder = await started(socket_path)
        try:
            reader, writer = await asyncio.open_unix_connection(socket_path)
            writer.write(event_json("PermissionRequest", tool="bash") + b"\n")
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 2) == b""
            writer.close()
            assert len(recorder.events) == 1
            assert server.pending_tool_use_ids == []
        finally:
            await server.stop()
