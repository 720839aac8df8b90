"""Connection to the agent's local session server, used by the helper process."""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable
from typing import Any, Optional

import structlog

from islet.bridge.mappers import map_message, map_session, map_session_detail, map_todo
from islet.bridge.types import MessageInfo, SessionDetail, SessionInfo, TodoInfo
from islet.exceptions import HandlerError

logger = structlog.get_logger()

Listener = Callable[..., None]


class OpenCodeClient:
    """
    Blocking HTTP client for the agent server's session API.

    Uses stdlib urllib; the async connection runs it in a worker thread.
    """

    def __init__(self, base_url: str, directory: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self.timeout = timeout

    def _url(self, path: str) -> str:
        query = urllib.parse.urlencode({"directory": self.directory})
        return f"{self.base_url}{path}?{query}"

    def _request(self, path: str, method: str = "GET") -> Any:
        req = urllib.request.Request(
            self._url(path),
            headers={"Accept": "application/json"},
            method=method,
        )
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            body = resp.read()
        return json.loads(body) if body else None

    def list_sessions(self) -> list[dict[str, Any]]:
        return self._request("/session") or []

    def get_session(self, session_id: str) -> Optional[dict[str, Any]]:
        try:
            return self._request(f"/session/{urllib.parse.quote(session_id)}")
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise

    def session_status(self) -> dict[str, dict[str, Any]]:
        return self._request("/session/status") or {}

    def messages(self, session_id: str) -> list[dict[str, Any]]:
        return self._request(f"/session/{urllib.parse.quote(session_id)}/message") or []

    def todos(self, session_id: str) -> list[dict[str, Any]]:
        return self._request(f"/session/{urllib.parse.quote(session_id)}/todo") or []

    def abort(self, session_id: str) -> bool:
        return self._request(f"/session/{urllib.parse.quote(session_id)}/abort", method="POST") is True


class OpenCodeConnection:
    """
    Cached view of one agent server.

    Emits "sessions.updated", "connected", "disconnected" and "error" to
    listeners registered with on().
    """

    def __init__(self, client_factory: Callable[[str, str], OpenCodeClient] = OpenCodeClient):
        self._client_factory = client_factory
        self._client: Optional[OpenCodeClient] = None
        self._listeners: dict[str, list[Listener]] = {}
        self.sessions_cache: dict[str, dict[str, Any]] = {}
        self.messages_cache: dict[str, list[dict[str, Any]]] = {}
        self.status_cache: dict[str, dict[str, Any]] = {}

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self, port: int, directory: str) -> None:
        if self._client is not None:
            await self.disconnect()

        base_url = f"http://127.0.0.1:{port}"
        logger.debug("creating_client", base_url=base_url, directory=directory)
        self._client = self._client_factory(base_url, directory)

        await self._load_initial_data()
        self._emit("connected")

    async def disconnect(self) -> None:
        self._client = None
        self.sessions_cache.clear()
        self.messages_cache.clear()
        self.status_cache.clear()
        self._emit("disconnected", "Manual disconnect")

    def _require_client(self) -> OpenCodeClient:
        if self._client is None:
            raise HandlerError("Not connected")
        return self._client

    async def get_sessions(self) -> list[SessionInfo]:
        client = self._require_client()
        try:
            sessions = await asyncio.to_thread(client.list_sessions)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.error("sessions_fetch_failed", error=str(e))
            raise HandlerError(f"Failed to fetch sessions: {e}") from e

        for session in sessions:
            self.sessions_cache[session["id"]] = session
        return [map_session(s, self.status_cache.get(s["id"])) for s in sessions]

    async def get_session(self, session_id: str) -> Optional[SessionDetail]:
        client = self._require_client()
        session = await asyncio.to_thread(client.get_session, session_id)
        if not session:
            return None
        self.sessions_cache[session_id] = session
        return map_session_detail(session, self.status_cache.get(session_id))

    async def get_messages(self, session_id: str) -> list[MessageInfo]:
        client = self._require_client()
        try:
            messages = await asyncio.to_thread(client.messages, session_id)
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise HandlerError(f"Failed to fetch messages: {e}") from e
        self.messages_cache[session_id] = messages
        return [map_message(m) for m in messages]

    async def get_todos(self, session_id: str) -> list[TodoInfo]:
        client = self._require_client()
        todos = await asyncio.to_thread(client.todos, session_id)
        return [map_todo(t) for t in todos]

    async def abort_session(self, session_id: str) -> bool:
        client = self._require_client()
        return await asyncio.to_thread(client.abort, session_id)

    # ── Events ──────────────────────────────────────────────

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe function."""
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.error("listener_failed", event=event, error=str(e))

    async def _load_initial_data(self) -> None:
        try:
            sessions = await self.get_sessions()
            self._emit("sessions.updated", sessions)

            client = self._require_client()
            statuses = await asyncio.to_thread(client.session_status)
            self.status_cache.update(statuses)

            for session in sessions:
                try:
                    await self.get_messages(session.id)
                except HandlerError:
                    pass  # one unreadable session must not block the rest
        except (HandlerError, urllib.error.URLError, OSError, ValueError) as e:
            self._emit("error", f"Failed to load initial data: {e}")
