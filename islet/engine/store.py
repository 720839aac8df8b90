"""Session store: the single writer for all session state."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

import structlog

from islet.engine.events import (
    HookReceived,
    PermissionApproved,
    PermissionDenied,
    PermissionSocketFailed,
    SessionEnded,
    SessionEvent,
)
from islet.engine.phases import can_transition, determine_phase
from islet.models import (
    ChatItem,
    HookEvent,
    HookEventKind,
    PhaseKind,
    SessionPhase,
    SessionState,
    SubagentState,
    ToolCallItem,
    ToolStatus,
    normalize_tty,
    stringify_tool_input,
)

logger = structlog.get_logger()

Snapshot = tuple[SessionState, ...]
SnapshotCallback = Callable[[Snapshot], None]

SUBAGENT_TOOLS = {"task", "Task"}

_STOP = object()


class SessionStore:
    """
    Central state manager for agent sessions.

    All mutations go through process(). Commands are queued and applied one
    at a time by a single worker task, so no caller ever observes a session
    map that is half way through an update. After each command every
    subscriber receives a detached, sorted snapshot of all sessions.

    Queries copy state out and never mutate it. Mutations contain no await
    points, so a query running on the same loop always sees a whole state.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._subscribers: list[SnapshotCallback] = []
        self._snapshot: Snapshot = ()
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="session-store")

    async def stop(self) -> None:
        """Apply everything already queued, then stop the worker."""
        if self._worker is None or self._queue is None:
            return
        await self._queue.put((_STOP, None))
        await self._worker
        self._worker = None
        self._queue = None

    async def __aenter__(self) -> SessionStore:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Mutation ────────────────────────────────────────────

    async def process(self, event: SessionEvent) -> None:
        """Queue a command and wait until it has been applied and published."""
        if self._queue is None:
            raise RuntimeError("SessionStore is not running")
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._queue.put((event, done))
        await done

    def submit(self, event: SessionEvent) -> None:
        """Queue a command without waiting for it."""
        if self._queue is None:
            raise RuntimeError("SessionStore is not running")
        self._queue.put_nowait((event, None))

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            event, done = await self._queue.get()
            if event is _STOP:
                break
            try:
                logger.debug("processing_event", event=str(event))
                self._apply(event)
            except Exception:
                # A bad event must not kill the only writer
                logger.exception("event_failed", event=str(event))
            self._publish()
            if done is not None and not done.done():
                done.set_result(None)

    def _apply(self, event: SessionEvent) -> None:
        if isinstance(event, HookReceived):
            self._apply_hook(event.event)
        elif isinstance(event, PermissionApproved):
            self._apply_decision(event.session_id, event.tool_use_id, ToolStatus.RUNNING)
        elif isinstance(event, PermissionDenied):
            self._apply_decision(event.session_id, event.tool_use_id, ToolStatus.ERROR)
        elif isinstance(event, PermissionSocketFailed):
            self._apply_socket_failure(event.session_id, event.tool_use_id)
        elif isinstance(event, SessionEnded):
            if self._sessions.pop(event.session_id, None) is not None:
                logger.info("session_removed", session_id=event.session_id)
        else:
            raise TypeError(f"Unknown session event: {event!r}")

    def _apply_hook(self, event: HookEvent) -> None:
        session_id = event.session_id
        session = self._sessions.get(session_id)
        if session is None:
            session = SessionState.from_hook(event)
            logger.info("session_created", session_id=session_id, cwd=event.cwd)

        if event.pid is not None:
            session.pid = event.pid
        if event.tty:
            session.tty = normalize_tty(event.tty)
        session.last_activity = datetime.now(timezone.utc)

        if event.status == "ended":
            self._sessions.pop(session_id, None)
            logger.info("session_removed", session_id=session_id)
            return

        self._transition(session, determine_phase(event))

        tool_use_id = event.tool_use_id
        if event.event is HookEventKind.PERMISSION_REQUEST and tool_use_id:
            logger.debug("permission_tracked", session_id=session_id, tool_use_id=tool_use_id)
            _set_tool_status(session, tool_use_id, ToolStatus.WAITING_FOR_APPROVAL)

        if event.event is HookEventKind.PRE_TOOL_USE and tool_use_id and event.tool:
            session.tool_tracker.start_tool(tool_use_id, event.tool)
            if session.find_tool(tool_use_id) is None:
                session.chat_items.append(
                    ChatItem(
                        id=tool_use_id,
                        tool=ToolCallItem(
                            name=event.tool,
                            input=stringify_tool_input(event.tool_input),
                        ),
                    )
                )
            if event.tool in SUBAGENT_TOOLS:
                description = (event.tool_input or {}).get("description")
                session.subagent_state.active_tasks[tool_use_id] = (
                    description if isinstance(description, str) else ""
                )

        if event.event is HookEventKind.POST_TOOL_USE and tool_use_id:
            session.tool_tracker.complete_tool(tool_use_id)
            session.subagent_state.active_tasks.pop(tool_use_id, None)
            _set_tool_status(session, tool_use_id, ToolStatus.SUCCESS)

        if event.event is HookEventKind.STOP:
            session.subagent_state = SubagentState()

        self._sessions[session_id] = session

    def _apply_decision(self, session_id: str, tool_use_id: str, status: ToolStatus) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return

        _set_tool_status(session, tool_use_id, status)

        permission = session.active_permission
        if permission is not None and permission.tool_use_id == tool_use_id:
            self._transition(session, SessionPhase.of(PhaseKind.PROCESSING))

    def _apply_socket_failure(self, session_id: str, tool_use_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return

        _set_tool_status(session, tool_use_id, ToolStatus.ERROR)
        # Nobody is left to answer the prompt: drop back to idle from any phase
        session.phase = SessionPhase.of(PhaseKind.IDLE)
        logger.info("permission_abandoned", session_id=session_id, tool_use_id=tool_use_id)

    @staticmethod
    def _transition(session: SessionState, target: SessionPhase) -> None:
        current = session.phase
        if current.kind is target.kind:
            return
        if not can_transition(current.kind, target.kind):
            logger.debug(
                "invalid_transition_ignored",
                session_id=session.session_id,
                current=str(current),
                target=str(target),
            )
            return
        session.phase = target
        logger.debug(
            "phase_changed",
            session_id=session.session_id,
            previous=str(current),
            phase=str(target),
        )

    # ── Publishing ──────────────────────────────────────────

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a snapshot callback; it is called at once with the current state."""
        self._subscribers.append(callback)
        self._notify(callback, self._snapshot)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        ordered = sorted(self._sessions.values(), key=lambda s: (s.project_name, s.session_id))
        self._snapshot = tuple(s.model_copy(deep=True) for s in ordered)
        for callback in list(self._subscribers):
            self._notify(callback, self._snapshot)

    @staticmethod
    def _notify(callback: SnapshotCallback, snapshot: Snapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("subscriber_failed")

    # ── Queries ─────────────────────────────────────────────

    @property
    def snapshot(self) -> Snapshot:
        """The most recently published state."""
        return self._snapshot

    def get_session(self, session_id: str) -> Optional[SessionState]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def has_active_permission(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.phase.kind is PhaseKind.WAITING_FOR_APPROVAL

    def all_sessions(self) -> list[SessionState]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]


def _set_tool_status(session: SessionState, tool_use_id: str, status: ToolStatus) -> None:
    tool = session.find_tool(tool_use_id)
    if tool is not None:
        tool.status = status
