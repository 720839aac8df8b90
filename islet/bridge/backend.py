"""
Helper process spoken to by the bridge.

Reads newline-delimited JSON requests on stdin, answers on stdout, and
pushes notifications (session updates, connection changes, log records)
the same way. Run with ``python -m islet.bridge.backend`` or
``islet backend``.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import threading
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any, BinaryIO, Optional

import structlog
from pydantic import BaseModel

from islet.bridge import protocol
from islet.bridge.discovery import discover_server_port
from islet.bridge.protocol import Notification, Request, Response, RpcError
from islet.bridge.upstream import OpenCodeConnection
from islet.config import LOG_DIR
from islet.exceptions import HandlerError, ProtocolError
from islet.logging import configure_logging

logger = structlog.get_logger()

MethodHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class IPCHandler:
    """Dispatches requests to registered method handlers."""

    def __init__(self, output: Optional[BinaryIO] = None):
        self._handlers: dict[str, MethodHandler] = {}
        self._out = output if output is not None else sys.stdout.buffer
        self._write_lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    def on(self, method: str, handler: MethodHandler) -> None:
        self._handlers[method] = handler

    def method(self, name: str) -> Callable[[MethodHandler], MethodHandler]:
        """Decorator form of on()."""

        def register(handler: MethodHandler) -> MethodHandler:
            self.on(name, handler)
            return handler

        return register

    # ── Output ──────────────────────────────────────────────

    def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        self._send(Notification(method=method, params=params or {}))

    def forward_log(self, level: str, message: str, extra: dict[str, Any]) -> None:
        params: dict[str, Any] = {"level": level, "message": message}
        if extra:
            params["extra"] = extra
        self.notify("log", params)

    def _respond(self, msg_id: int, result: Any = None, error: Optional[RpcError] = None) -> None:
        self._send(Response(id=msg_id, result=_jsonable(result), error=error))

    def _send(self, message: protocol.Message) -> None:
        data = protocol.encode(message)
        with self._write_lock:
            try:
                self._out.write(data)
                self._out.flush()
            except (BrokenPipeError, ValueError, OSError):
                pass  # parent is gone; nothing left to tell

    # ── Input ───────────────────────────────────────────────

    async def serve(self, reader: asyncio.StreamReader) -> None:
        """Handle lines until EOF; each request runs as its own task."""
        buffer = b""
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                break
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for line in lines:
                if line.strip():
                    task = asyncio.create_task(self.handle_line(line))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle_line(self, line: bytes) -> None:
        try:
            message = protocol.decode(line)
        except ProtocolError as e:
            logger.error("ipc_parse_failed", error=e.message, line=line[:200].decode("utf-8", "replace"))
            return

        if not isinstance(message, Request):
            logger.error("invalid_ipc_message", line=line[:200].decode("utf-8", "replace"))
            return

        handler = self._handlers.get(message.method)
        if handler is None:
            self._respond(
                message.id,
                error=RpcError(protocol.METHOD_NOT_FOUND, f"Method not found: {message.method}"),
            )
            return

        try:
            result = await handler(message.params or {})
        except Exception as e:  # noqa: BLE001
            logger.error("handler_failed", method=message.method, error=str(e))
            self._respond(
                message.id,
                error=RpcError(protocol.INTERNAL_ERROR, str(e) or "Internal error"),
            )
            return
        self._respond(message.id, result)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _require_session_id(params: dict[str, Any]) -> str:
    session_id = params.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        raise HandlerError("Missing sessionId")
    return session_id


def register_methods(ipc: IPCHandler, connection: OpenCodeConnection) -> None:
    """Wire the method surface and forward upstream events as notifications."""

    @ipc.method("connect")
    async def connect(params: dict[str, Any]) -> bool:
        port = params.get("port")
        directory = params.get("directory")
        if not isinstance(port, int) or not isinstance(directory, str) or not directory:
            raise HandlerError("Missing port or directory")
        logger.info("connecting_upstream", port=port, directory=directory)
        await connection.connect(port, directory)
        return True

    @ipc.method("disconnect")
    async def disconnect(params: dict[str, Any]) -> bool:
        await connection.disconnect()
        return True

    @ipc.method("sessions.list")
    async def list_sessions(params: dict[str, Any]) -> Any:
        return await connection.get_sessions()

    @ipc.method("session.get")
    async def get_session(params: dict[str, Any]) -> Any:
        return await connection.get_session(_require_session_id(params))

    @ipc.method("session.messages")
    async def get_messages(params: dict[str, Any]) -> Any:
        return await connection.get_messages(_require_session_id(params))

    @ipc.method("session.todos")
    async def get_todos(params: dict[str, Any]) -> Any:
        return await connection.get_todos(_require_session_id(params))

    @ipc.method("session.abort")
    async def abort_session(params: dict[str, Any]) -> bool:
        return await connection.abort_session(_require_session_id(params))

    @ipc.method("discover.server")
    async def discover_server(params: dict[str, Any]) -> Optional[int]:
        return await asyncio.to_thread(discover_server_port)

    def on_connected() -> None:
        logger.info("upstream_connected")
        ipc.notify("connected")

    def on_disconnected(reason: str) -> None:
        logger.info("upstream_disconnected", reason=reason)
        ipc.notify("disconnected", {"reason": reason})

    def on_error(message: str) -> None:
        logger.error("upstream_error", message=message)
        ipc.notify("error", {"message": message})

    def on_sessions_updated(sessions: list) -> None:
        logger.info("sessions_updated", count=len(sessions))
        ipc.notify("sessions.updated", {"sessions": _jsonable(sessions)})

    connection.on("connected", on_connected)
    connection.on("disconnected", on_disconnected)
    connection.on("error", on_error)
    connection.on("sessions.updated", on_sessions_updated)


async def run(ipc: IPCHandler, connection: OpenCodeConnection) -> int:
    """Serve stdin until it closes or a termination signal arrives."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    reader = asyncio.StreamReader()
    read_protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: read_protocol, sys.stdin)

    serve_task = asyncio.create_task(ipc.serve(reader))
    stop_task = asyncio.create_task(stop.wait())
    done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if stop_task in done:
        logger.info("signal_received_shutting_down")
        serve_task.cancel()
    else:
        logger.info("stdin_closed_shutting_down")
        stop_task.cancel()

    await connection.disconnect()
    return 0


def main() -> None:
    ipc = IPCHandler()
    connection = OpenCodeConnection()
    register_methods(ipc, connection)

    log_file = LOG_DIR / f"backend-{date.today().isoformat()}.log"
    try:
        configure_logging(level="DEBUG", console=False, log_file=log_file, forward=ipc.forward_log)
    except OSError:
        configure_logging(level="DEBUG", console=False, forward=ipc.forward_log)

    logger.info("backend_starting")
    sys.exit(asyncio.run(run(ipc, connection)))


if __name__ == "__main__":
    main()
