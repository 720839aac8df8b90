"""Agent-side emitter: pushes hook events to the Islet hook socket."""

from __future__ import annotations

import json
import os
import socket
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from islet.config import DEFAULT_SOCKET_PATH
from islet.models import HookEvent, PermissionResponse

OPENCODE_SERVER_FILE = Path.home() / ".local" / "share" / "opencode" / "server.json"


class HookEmitter:
    """
    Short-lived socket client used from inside an agent process.

    Uses a blocking stdlib socket so it can run from any hook script. It
    never raises: an unreachable server, a timeout or a garbled answer all
    resolve to "no decision" (None) and the agent keeps its own default.
    """

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET_PATH,
        event_timeout: float = 1.0,
        permission_timeout: float = 300.0,
    ):
        self.socket_path = socket_path
        self.event_timeout = event_timeout
        self.permission_timeout = permission_timeout

    def emit(self, event: HookEvent) -> Optional[PermissionResponse]:
        """Send an event, waiting for a decision only for permission requests."""
        if event.expects_response:
            return self.request_permission(event)
        self.send(event)
        return None

    def send(self, event: HookEvent) -> bool:
        """Fire-and-forget delivery. Returns True if the event was written."""
        deadline = time.monotonic() + self.event_timeout
        try:
            with self._connect(deadline) as sock:
                sock.sendall(event.encode() + b"\n")
                sock.shutdown(socket.SHUT_WR)
            return True
        except (OSError, TimeoutError):
            return False

    def request_permission(self, event: HookEvent) -> Optional[PermissionResponse]:
        """Send a permission request and block until a decision or the timeout."""
        deadline = time.monotonic() + self.permission_timeout
        try:
            with self._connect(deadline) as sock:
                sock.sendall(event.encode() + b"\n")
                raw = _read_response(sock, deadline)
        except (OSError, TimeoutError):
            return None

        if not raw.strip():
            return None  # closed without a decision
        try:
            return PermissionResponse.model_validate_json(raw)
        except ValidationError:
            return None

    def _connect(self, deadline: float) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(_remaining(deadline))
            sock.connect(self.socket_path)
        except BaseException:
            sock.close()
            raise
        return sock


def _remaining(deadline: float) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("deadline passed")
    return remaining


def _read_response(sock: socket.socket, deadline: float) -> bytes:
    """Read until newline or EOF, re-arming the socket timeout from the deadline."""
    buf = bytearray()
    while True:
        sock.settimeout(_remaining(deadline))
        chunk = sock.recv(4096)
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)
        newline = buf.find(b"\n")
        if newline != -1:
            return bytes(buf[:newline])


def detect_server_port(server_file: Path = OPENCODE_SERVER_FILE) -> Optional[int]:
    """Find the agent's local server port from OPENCODE_PORT or its server.json."""
    env_port = os.environ.get("OPENCODE_PORT")
    if env_port:
        try:
            port = int(env_port)
        except ValueError:
            port = 0
        if 0 < port < 65536:
            return port

    try:
        with open(server_file) as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    port = data.get("port") if isinstance(data, dict) else None
    return port if isinstance(port, int) and 0 < port < 65536 else None


def detect_tty() -> Optional[str]:
    """Return the controlling terminal of this process, if any."""
    for fd in (0, 1, 2):
        try:
            return os.ttyname(fd)
        except OSError:
            continue
    return None
