"""Hook socket server: receives hook events and brokers permission decisions."""

from __future__ import annotations

import asyncio
import json
import os
import stat
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Optional

import structlog

from islet.config import DEFAULT_SOCKET_PATH
from islet.exceptions import HookDecodeError
from islet.models import HookEvent, PermissionDecision, PermissionResponse

logger = structlog.get_logger()

EventHandler = Callable[[HookEvent], Awaitable[None]]
PermissionFailureHandler = Callable[[str, str], Awaitable[None]]

_READ_CHUNK = 4096


class PayloadTooLarge(Exception):
    pass


@dataclass
class PendingPermission:
    """An open connection waiting for a permission decision."""

    session_id: str
    tool_use_id: str
    writer: asyncio.StreamWriter
    received_at: float = field(default_factory=time.time)


class HookSocketServer:
    """
    Unix socket server for hook events.

    Each connection carries one JSON event. Ordinary events are forwarded
    and the connection is closed. Permission requests stay open, keyed by
    tool-use id, until respond_to_permission() writes a decision, a cancel
    call closes them silently, or the peer goes away (reported through the
    permission-failure handler).
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        max_payload_bytes: int = 1024 * 1024,
        read_timeout: float = 10.0,
    ):
        self.socket_path = socket_path
        self.max_payload_bytes = max_payload_bytes
        self.read_timeout = read_timeout
        self._server: Optional[asyncio.AbstractServer] = None
        self._on_event: Optional[EventHandler] = None
        self._on_permission_failure: Optional[PermissionFailureHandler] = None
        self._pending: dict[str, PendingPermission] = {}

    # ── Lifecycle ───────────────────────────────────────────

    async def start(
        self,
        on_event: EventHandler,
        on_permission_failure: Optional[PermissionFailureHandler] = None,
    ) -> None:
        """Bind the socket, replacing a stale socket file left by a crash."""
        if self._server is not None:
            return
        self._on_event = on_event
        self._on_permission_failure = on_permission_failure

        _remove_stale_socket(self.socket_path)
        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=self.socket_path,
            limit=self.max_payload_bytes,
        )
        os.chmod(self.socket_path, 0o600)
        logger.info("hook_server_listening", socket_path=self.socket_path)

    async def stop(self) -> None:
        if self._server is None:
            return
        for tool_use_id in list(self._pending):
            self.cancel_pending_permission(tool_use_id)
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        _remove_stale_socket(self.socket_path)
        logger.info("hook_server_stopped")

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def pending_tool_use_ids(self) -> list[str]:
        return list(self._pending)

    # ── Connections ─────────────────────────────────────────

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            payload = await asyncio.wait_for(
                _read_payload(reader, self.max_payload_bytes), timeout=self.read_timeout
            )
        except (asyncio.TimeoutError, PayloadTooLarge, ConnectionError, OSError) as e:
            logger.warning("hook_read_failed", error=type(e).__name__)
            writer.close()
            return

        try:
            event = HookEvent.decode(payload)
        except HookDecodeError as e:
            logger.warning("malformed_hook_payload", size=len(payload), error=str(e).splitlines()[0])
            writer.close()
            return

        if event.expects_response and event.tool_use_id:
            record = self._register(event, writer)
            await self._forward(event)
            await self._watch(record, reader)
            return

        if event.expects_response:
            logger.warning("permission_without_tool_use_id", session_id=event.session_id)
        try:
            await self._forward(event)
        finally:
            writer.close()

    async def _forward(self, event: HookEvent) -> None:
        assert self._on_event is not None
        try:
            await self._on_event(event)
        except Exception:
            logger.exception("hook_handler_failed", session_id=event.session_id)

    def _register(self, event: HookEvent, writer: asyncio.StreamWriter) -> PendingPermission:
        assert event.tool_use_id is not None
        previous = self._pending.pop(event.tool_use_id, None)
        if previous is not None:
            logger.warning("permission_replaced", tool_use_id=event.tool_use_id)
            previous.writer.close()

        record = PendingPermission(
            session_id=event.session_id,
            tool_use_id=event.tool_use_id,
            writer=writer,
        )
        self._pending[event.tool_use_id] = record
        logger.info(
            "permission_pending",
            session_id=event.session_id,
            tool_use_id=event.tool_use_id,
            tool=event.tool,
        )
        return record

    async def _watch(self, record: PendingPermission, reader: asyncio.StreamReader) -> None:
        """Wait for the connection to close; report it if nobody answered first."""
        try:
            while await reader.read(_READ_CHUNK):
                pass
        except (ConnectionError, OSError):
            pass

        if self._pending.get(record.tool_use_id) is not record:
            return
        del self._pending[record.tool_use_id]
        record.writer.close()
        logger.info(
            "permission_connection_lost",
            session_id=record.session_id,
            tool_use_id=record.tool_use_id,
        )
        await self._report_failure(record)

    async def _report_failure(self, record: PendingPermission) -> None:
        if self._on_permission_failure is None:
            return
        try:
            await self._on_permission_failure(record.session_id, record.tool_use_id)
        except Exception:
            logger.exception("permission_failure_handler_failed")

    # ── Decisions ───────────────────────────────────────────

    async def respond_to_permission(
        self,
        tool_use_id: str,
        decision: PermissionDecision,
        reason: Optional[str] = None,
    ) -> bool:
        """Write a decision to the waiting connection and close it."""
        record = self._pending.pop(tool_use_id, None)
        if record is None:
            logger.warning("permission_not_pending", tool_use_id=tool_use_id)
            return False

        response = PermissionResponse(decision=PermissionDecision(decision), reason=reason)
        try:
            record.writer.write(response.encode() + b"\n")
            await record.writer.drain()
        except (ConnectionError, OSError) as e:
            logger.warning("permission_write_failed", tool_use_id=tool_use_id, error=str(e))
            record.writer.close()
            # The record is gone, so _watch will not report this connection
            await self._report_failure(record)
            return False
        record.writer.close()

        logger.info(
            "permission_answered",
            session_id=record.session_id,
            tool_use_id=tool_use_id,
            decision=response.decision.value,
        )
        return True

    def cancel_pending_permission(self, tool_use_id: str) -> bool:
        """Close a waiting connection without writing a decision."""
        record = self._pending.pop(tool_use_id, None)
        if record is None:
            return False
        record.writer.close()
        logger.info(
            "permission_cancelled",
            session_id=record.session_id,
            tool_use_id=tool_use_id,
        )
        return True

    def cancel_pending_permissions(self, session_id: str) -> int:
        """Cancel every waiting connection that belongs to a session."""
        matching = [r.tool_use_id for r in self._pending.values() if r.session_id == session_id]
        for tool_use_id in matching:
            self.cancel_pending_permission(tool_use_id)
        return len(matching)


async def _read_payload(reader: asyncio.StreamReader, limit: int) -> bytes:
    """
    Read one event: up to the first newline, until the peer closes its
    write side, or until the bytes so far form a complete JSON document.
    """
    buf = bytearray()
    while True:
        chunk = await reader.read(_READ_CHUNK)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        newline = buf.find(b"\n")
        if newline != -1:
            return bytes(buf[:newline])
        if len(buf) > limit:
            raise PayloadTooLarge(len(buf))
        if _is_complete_json(buf):
            return bytes(buf)


def _is_complete_json(data: bytearray) -> bool:
    try:
        json.loads(data)
    except ValueError:
        return False
    return True


def _remove_stale_socket(path: str) -> None:
    try:
        mode = os.lstat(path).st_mode
    except FileNotFoundError:
        return
    if stat.S_ISSOCK(mode):
        os.unlink(path)
        logger.debug("stale_socket_removed", socket_path=path)
