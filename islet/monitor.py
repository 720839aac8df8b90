"""
Session monitor: wires the hook server, engine, bridge and notifier together.

The monitor is the one object a host (the ``islet serve`` process, the
local API, tests) creates and starts. Every component is passed in, so
tests can swap any of them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, Optional

import structlog

from islet.bridge.client import BackendBridge
from islet.config import BridgeConfig, IsletConfig
from islet.engine.events import (
    HookReceived,
    PermissionApproved,
    PermissionDenied,
    PermissionSocketFailed,
    SessionEnded,
)
from islet.engine.store import Snapshot, SnapshotCallback, SessionStore
from islet.exceptions import BridgeError
from islet.models import HookEvent, HookEventKind, PermissionDecision, PhaseKind
from islet.notifier.desktop import DesktopNotifier
from islet.server.hook_server import HookSocketServer

logger = structlog.get_logger()

_SESSION_DONE = {HookEventKind.STOP, HookEventKind.SESSION_END}


class SessionMonitor:
    """Owns startup and shutdown of every moving part."""

    def __init__(
        self,
        store: SessionStore,
        hook_server: HookSocketServer,
        bridge: Optional[BackendBridge] = None,
        notifier: Optional[DesktopNotifier] = None,
        bridge_config: Optional[BridgeConfig] = None,
    ):
        self.store = store
        self.hook_server = hook_server
        self.bridge = bridge
        self.notifier = notifier
        self.bridge_config = bridge_config or BridgeConfig()

        self._unsubscribe: Optional[Any] = None
        self._background: set[asyncio.Task] = set()
        self._notified: dict[str, PhaseKind] = {}
        self._connect_lock = asyncio.Lock()
        self._syncing: set[str] = set()
        self._resync: set[str] = set()
        self._discovery_failed_at: Optional[float] = None

    @classmethod
    def from_config(cls, config: IsletConfig) -> SessionMonitor:
        bridge = None
        if config.bridge.enabled:
            bridge = BackendBridge(config.bridge.command, restart_delay=config.bridge.restart_delay)
        return cls(
            store=SessionStore(),
            hook_server=HookSocketServer(
                config.hooks.socket_path,
                max_payload_bytes=config.hooks.max_payload_bytes,
            ),
            bridge=bridge,
            notifier=DesktopNotifier(config.notifications),
            bridge_config=config.bridge,
        )

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        await self.store.start()
        self._unsubscribe = self.store.subscribe(self._on_snapshot)
        await self.hook_server.start(self._on_hook_event, self._on_permission_failure)

        if self.bridge is not None:
            try:
                await self.bridge.start()
            except OSError as e:
                logger.error("backend_start_failed", error=str(e))
            else:
                self._spawn(self._initial_connect())
        logger.info("monitor_started", socket_path=self.hook_server.socket_path)

    async def stop(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self.hook_server.stop()
        if self.bridge is not None:
            await self.bridge.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.store.stop()
        logger.info("monitor_stopped")

    async def __aenter__(self) -> SessionMonitor:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    def subscribe(self, callback: SnapshotCallback):
        return self.store.subscribe(callback)

    # ── Hook ingress ────────────────────────────────────────

    async def _on_hook_event(self, event: HookEvent) -> None:
        await self.store.process(HookReceived(event))

        if event.event in _SESSION_DONE:
            cancelled = self.hook_server.cancel_pending_permissions(event.session_id)
            if cancelled:
                logger.info("session_permissions_cancelled", session_id=event.session_id, count=cancelled)
        elif event.event is HookEventKind.POST_TOOL_USE and event.tool_use_id:
            # The agent moved on without us; drop the stale prompt
            self.hook_server.cancel_pending_permission(event.tool_use_id)

        if self.bridge is not None:
            self._request_sync(event.session_id)

    async def _on_permission_failure(self, session_id: str, tool_use_id: str) -> None:
        await self.store.process(PermissionSocketFailed(session_id, tool_use_id))

    # ── Decisions ───────────────────────────────────────────

    async def approve_permission(self, session_id: str) -> bool:
        """Allow the session's pending tool call. Returns False if nothing was pending."""
        tool_use_id = self._pending_tool_use_id(session_id)
        if tool_use_id is None:
            return False
        if not await self.hook_server.respond_to_permission(tool_use_id, PermissionDecision.ALLOW):
            return False
        await self.store.process(PermissionApproved(session_id, tool_use_id))
        return True

    async def deny_permission(self, session_id: str, reason: Optional[str] = None) -> bool:
        """Deny the session's pending tool call. Returns False if nothing was pending."""
        tool_use_id = self._pending_tool_use_id(session_id)
        if tool_use_id is None:
            return False
        if not await self.hook_server.respond_to_permission(
            tool_use_id, PermissionDecision.DENY, reason=reason
        ):
            return False
        await self.store.process(PermissionDenied(session_id, tool_use_id, reason))
        return True

    async def archive_session(self, session_id: str) -> bool:
        """Forget a session, closing any prompt it still has open."""
        existed = self.store.get_session(session_id) is not None
        self.hook_server.cancel_pending_permissions(session_id)
        await self.store.process(SessionEnded(session_id))
        return existed

    def _pending_tool_use_id(self, session_id: str) -> Optional[str]:
        session = self.store.get_session(session_id)
        if session is None or session.active_permission is None:
            return None
        return session.active_permission.tool_use_id

    # ── Bridge ──────────────────────────────────────────────

    async def ensure_connected(self) -> bool:
        """Discover the agent server and connect to it unless already connected."""
        bridge = self.bridge
        if bridge is None or not bridge.is_running:
            return False
        if bridge.connected:
            return True

        async with self._connect_lock:
            if bridge.connected:
                return True
            loop = asyncio.get_running_loop()
            failed_at = self._discovery_failed_at
            if failed_at is not None and loop.time() - failed_at < self.bridge_config.discovery_backoff:
                return False
            port = await bridge.discover_server()
            if port is None:
                self._discovery_failed_at = loop.time()
                return False
            self._discovery_failed_at = None
            try:
                await bridge.connect(port, self.bridge_config.directory)
            except BridgeError as e:
                logger.warning("backend_connect_failed", port=port, error=str(e))
                return False
            logger.info("backend_connected", port=port)
            return True

    async def _initial_connect(self) -> None:
        await asyncio.sleep(self.bridge_config.startup_delay)
        await self.ensure_connected()

    def _request_sync(self, session_id: str) -> None:
        """Refresh a session from the bridge, at most one refresh in flight per session."""
        if session_id in self._syncing:
            self._resync.add(session_id)
            return
        self._syncing.add(session_id)
        self._spawn(self._sync_bridge(session_id))

    async def _sync_bridge(self, session_id: str) -> None:
        try:
            while True:
                self._resync.discard(session_id)
                if await self.ensure_connected() and self.bridge is not None:
                    await self.bridge.refresh_messages(session_id)
                if session_id not in self._resync:
                    break
        finally:
            self._syncing.discard(session_id)
            self._resync.discard(session_id)

    def backend_status(self) -> dict[str, Any]:
        bridge = self.bridge
        if bridge is None:
            return {"enabled": False, "running": False, "connected": False}
        return {
            "enabled": True,
            "running": bridge.is_running,
            "connected": bridge.connected,
            "restart_count": bridge.restart_count,
            "sessions": [s.to_wire() for s in bridge.sessions.values()],
        }

    # ── Notifications ───────────────────────────────────────

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        live = set()
        for session in snapshot:
            live.add(session.session_id)
            kind = session.phase.kind
            if not session.needs_attention:
                self._notified.pop(session.session_id, None)
                continue
            if self._notified.get(session.session_id) is kind:
                continue
            self._notified[session.session_id] = kind
            if self.notifier is not None:
                self._spawn(asyncio.to_thread(self.notifier.notify_session, session))

        for session_id in list(self._notified):
            if session_id not in live:
                del self._notified[session_id]

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_task_failed", error=str(task.exception()))
