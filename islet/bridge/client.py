"""
Parent side of the helper-process bridge.

``BackendBridge`` spawns the helper, writes requests to its stdin, matches
responses read from its stdout by id, and fans notifications out to
listeners. If the helper dies unexpectedly every outstanding request fails
with ``BridgeNotRunning`` and the helper is started again after a short
delay.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Sequence
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from islet.bridge import protocol
from islet.bridge.protocol import Notification, Request, Response
from islet.bridge.types import MessageInfo, SessionDetail, SessionInfo, TodoInfo
from islet.exceptions import BridgeError, BridgeNotRunning, ProtocolError, RemoteError

logger = structlog.get_logger()

NotificationListener = Callable[[dict[str, Any]], None]

_LOG_METHODS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


class BackendBridge:
    """Owns the helper subprocess and its request/response traffic."""

    def __init__(
        self,
        command: Sequence[str],
        restart_delay: float = 2.0,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.command = list(command)
        self.restart_delay = restart_delay
        self.cwd = cwd
        self.env = env

        self.connected = False
        self.restart_count = 0
        self.sessions: dict[str, SessionInfo] = {}
        self.messages: dict[str, list[MessageInfo]] = {}

        self._process: Optional[asyncio.subprocess.Process] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: dict[str, list[NotificationListener]] = {}
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        await self._spawn()

    async def stop(self, timeout: float = 5.0) -> None:
        """Terminate the helper without restarting it."""
        self._stopping = True
        process = self._process

        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning("backend_kill", pid=process.pid)
                process.kill()
                await process.wait()

        if self._watch_task is not None:
            if process is None:
                # Waiting out a restart delay
                self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._watch_task = None

    async def _spawn(self) -> None:
        logger.info("backend_starting", command=self.command)
        process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
        )
        self._process = process
        logger.info("backend_started", pid=process.pid)

        readers = [
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        self._watch_task = asyncio.create_task(self._watch(process, readers))

    async def _watch(self, process: asyncio.subprocess.Process, readers: list[asyncio.Task]) -> None:
        returncode = await process.wait()
        # Responses written just before exit still count
        await asyncio.gather(*readers, return_exceptions=True)

        if self._process is process:
            self._process = None
        self.connected = False
        self._fail_pending(BridgeNotRunning(f"Backend exited with code {returncode}"))

        if self._stopping:
            logger.info("backend_stopped", returncode=returncode)
            return
        if returncode == 0:
            logger.info("backend_exited", returncode=returncode)
            return

        logger.warning("backend_crashed", returncode=returncode, restart_in=self.restart_delay)
        await asyncio.sleep(self.restart_delay)
        if self._stopping:
            return

        self.restart_count += 1
        logger.warning("backend_restarting", attempt=self.restart_count)
        try:
            await self._spawn()
        except OSError as e:
            logger.error("backend_restart_failed", error=str(e))

    def _fail_pending(self, error: BridgeError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    # ── Requests ────────────────────────────────────────────

    async def request(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send one request and wait for its response.

        Raises:
            BridgeNotRunning: helper not running, or it exited before answering.
            RemoteError: the helper answered with an error object.
        """
        process = self._process
        if process is None or process.returncode is not None or process.stdin is None:
            raise BridgeNotRunning("Backend is not running")

        msg_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future

        try:
            process.stdin.write(protocol.encode(Request(id=msg_id, method=method, params=params)))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._pending.pop(msg_id, None)
            raise BridgeNotRunning(f"Backend stdin closed: {e}") from e

        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(msg_id, None)

    # ── Output handling ─────────────────────────────────────

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        await _read_lines(process.stdout, self._handle_line)

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        await _read_lines(process.stderr, _log_stderr)

    def _handle_line(self, line: bytes) -> None:
        try:
            message = protocol.decode(line)
        except ProtocolError as e:
            logger.warning(
                "unrecognized_backend_output",
                error=e.message,
                line=line[:200].decode("utf-8", "replace"),
            )
            return

        if isinstance(message, Response):
            self._resolve(message)
        elif isinstance(message, Notification):
            self._dispatch(message)
        else:
            logger.warning("unexpected_backend_request", method=message.method)

    def _resolve(self, response: Response) -> None:
        future = self._pending.pop(response.id, None)
        if future is None or future.done():
            logger.warning("orphan_backend_response", id=response.id)
            return
        if not response.ok:
            future.set_exception(RemoteError(response.error.code, response.error.message))
        else:
            future.set_result(response.result)

    def _dispatch(self, notification: Notification) -> None:
        params = notification.params or {}
        method = notification.method
        if method not in protocol.NOTIFICATIONS:
            logger.warning("unknown_backend_notification", method=method)
            return

        if method == "connected":
            self.connected = True
        elif method == "disconnected":
            self.connected = False
            self.sessions.clear()
            self.messages.clear()
        elif method == "sessions.updated":
            self._store_sessions(params.get("sessions") or [])
        elif method == "log":
            self._relog(params)
        elif method == "error":
            logger.error("backend_error", message=params.get("message"))

        for callback in list(self._listeners.get(method, [])):
            try:
                callback(params)
            except Exception as e:
                logger.error("notification_listener_failed", method=method, error=str(e))

    def _relog(self, params: dict[str, Any]) -> None:
        level = _LOG_METHODS.get(str(params.get("level")), "info")
        extra = params.get("extra")
        log = getattr(logger, level)
        if isinstance(extra, dict) and extra:
            log(f"backend: {params.get('message', '')}", details=extra)
        else:
            log(f"backend: {params.get('message', '')}")

    def _store_sessions(self, raw: list[Any]) -> list[SessionInfo]:
        try:
            sessions = [SessionInfo.model_validate(s) for s in raw]
        except ValidationError as e:
            logger.warning("invalid_sessions_payload", error=str(e))
            return []
        self.sessions = {s.id: s for s in sessions}
        return sessions

    def on(self, method: str, callback: NotificationListener) -> Callable[[], None]:
        """Listen for a notification method. Returns an unsubscribe function."""
        self._listeners.setdefault(method, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(method, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    # ── Typed methods ───────────────────────────────────────

    async def connect(self, port: int, directory: str) -> bool:
        return bool(await self.request("connect", {"port": port, "directory": directory}))

    async def disconnect(self) -> bool:
        return bool(await self.request("disconnect"))

    async def list_sessions(self) -> list[SessionInfo]:
        return self._store_sessions(await self.request("sessions.list") or [])

    async def get_session(self, session_id: str) -> Optional[SessionDetail]:
        raw = await self.request("session.get", {"sessionId": session_id})
        return SessionDetail.model_validate(raw) if raw else None

    async def get_messages(self, session_id: str) -> list[MessageInfo]:
        raw = await self.request("session.messages", {"sessionId": session_id})
        messages = [MessageInfo.model_validate(m) for m in raw or []]
        self.messages[session_id] = messages
        return messages

    async def get_todos(self, session_id: str) -> list[TodoInfo]:
        raw = await self.request("session.todos", {"sessionId": session_id})
        return [TodoInfo.model_validate(t) for t in raw or []]

    async def abort_session(self, session_id: str) -> bool:
        return bool(await self.request("session.abort", {"sessionId": session_id}))

    async def discover_server(self) -> Optional[int]:
        """Ask the helper for a running agent server port; None on any failure."""
        try:
            port = await self.request("discover.server")
        except BridgeError as e:
            logger.warning("discover_server_failed", error=str(e))
            return None
        if isinstance(port, int) and not isinstance(port, bool):
            return port
        return None

    async def refresh_messages(self, session_id: str) -> Optional[list[MessageInfo]]:
        if not self.connected:
            return None
        try:
            return await self.get_messages(session_id)
        except (BridgeError, ValidationError) as e:
            logger.debug("refresh_messages_failed", session_id=session_id, error=str(e))
            return None


async def _read_lines(stream: asyncio.StreamReader, handle: Callable[[bytes], None]) -> None:
    # Chunked reads: a single line may exceed the StreamReader line limit
    buffer = b""
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            if line.strip():
                handle(line)
    if buffer.strip():
        handle(buffer)


def _log_stderr(line: bytes) -> None:
    text = line.decode("utf-8", "replace").rstrip()
    if text:
        logger.debug("backend_stderr", line=text[:2000])
