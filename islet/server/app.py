"""FastAPI app: local HTTP and WebSocket API over the session engine."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from islet import __version__
from islet.engine.store import Snapshot
from islet.models import SessionState
from islet.monitor import SessionMonitor
from islet.server.ws_manager import ConnectionManager


def session_payload(session: SessionState) -> dict[str, Any]:
    data = session.model_dump(mode="json")
    data["display_name"] = session.to_display_name()
    data["needs_attention"] = session.needs_attention
    return data


def sessions_message(snapshot: Snapshot) -> dict[str, Any]:
    return {"type": "sessions", "sessions": [session_payload(s) for s in snapshot]}


class DenyRequest(BaseModel):
    reason: Optional[str] = None


def create_app(monitor: SessionMonitor, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the API around a monitor.

    With manage_lifecycle the app starts and stops the monitor in its
    lifespan; otherwise the caller owns it.
    """
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await monitor.start()
        unsubscribe = monitor.subscribe(lambda snapshot: manager.publish(sessions_message(snapshot)))
        yield
        unsubscribe()
        await manager.close()
        if manage_lifecycle:
            await monitor.stop()

    app = FastAPI(
        title="Islet",
        description="Session monitor and permission broker for AI coding agents",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.monitor = monitor
    app.state.manager = manager

    # ── REST Endpoints ──────────────────────────────────────

    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "clients": manager.client_count,
            "sessions": len(monitor.store.snapshot),
            "socket_path": monitor.hook_server.socket_path,
        }

    @app.get("/api/sessions")
    async def list_sessions():
        return {"sessions": [session_payload(s) for s in monitor.store.snapshot]}

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        session = monitor.store.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session_payload(session)

    @app.post("/api/sessions/{session_id}/approve")
    async def approve(session_id: str):
        if monitor.store.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if not await monitor.approve_permission(session_id):
            raise HTTPException(status_code=409, detail="No pending permission")
        return {"status": "ok"}

    @app.post("/api/sessions/{session_id}/deny")
    async def deny(session_id: str, body: Optional[DenyRequest] = None):
        if monitor.store.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail="Session not found")
        reason = body.reason if body is not None else None
        if not await monitor.deny_permission(session_id, reason):
            raise HTTPException(status_code=409, detail="No pending permission")
        return {"status": "ok"}

    @app.delete("/api/sessions/{session_id}")
    async def archive(session_id: str):
        if not await monitor.archive_session(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "ok"}

    @app.get("/api/backend")
    async def backend():
        return monitor.backend_status()

    # ── WebSocket Endpoint ──────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                except asyncio.TimeoutError:
                    await websocket.send_json({"type": "heartbeat"})
        except WebSocketDisconnect:
            pass
        finally:
            await manager.disconnect(websocket)

    return app
