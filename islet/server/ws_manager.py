"""WebSocket fan-out of session snapshots to UI clients."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()


class ConnectionManager:
    """
    Keeps every connected UI client on the newest session snapshot.

    A client that connects is sent the last published snapshot straight
    away. Snapshots published while a broadcast is still in flight are
    coalesced, so slow clients only ever receive the newest one next.
    """

    def __init__(self):
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._latest: Optional[str] = None
        self._pending: Optional[str] = None
        self._sender: Optional[asyncio.Task] = None

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a client and replay the latest snapshot to it."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
            if self._latest is not None and not await _send(websocket, self._latest):
                self.active_connections.remove(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)

    def publish(self, data: dict[str, Any]) -> None:
        """Queue a snapshot message; called from synchronous code on the loop."""
        data["server_time"] = datetime.now(timezone.utc).isoformat()
        message = json.dumps(data, default=str)
        self._latest = message
        self._pending = message
        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._drain())

    async def close(self) -> None:
        if self._sender is not None and not self._sender.done():
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
        self._sender = None

    async def _drain(self) -> None:
        while self._pending is not None:
            message, self._pending = self._pending, None
            await self._broadcast(message)

    async def _broadcast(self, message: str) -> None:
        async with self._lock:
            dead = [ws for ws in list(self.active_connections) if not await _send(ws, message)]
            for ws in dead:
                self.active_connections.remove(ws)
        if dead:
            logger.debug("ws_clients_dropped", count=len(dead), remaining=self.client_count)

    @property
    def client_count(self) -> int:
        return len(self.active_connections)


async def _send(websocket: WebSocket, message: str) -> bool:
    try:
        await websocket.send_text(message)
    except Exception:
        return False
    return True
