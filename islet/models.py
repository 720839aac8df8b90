"""Shared data models for Islet."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from enum import Enum
# Union is only referenced inside the ToolInputValue alias string below
from typing import Literal, Optional, Union  # noqa: F401

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)
from typing_extensions import TypeAliasType

from islet.exceptions import HookDecodeError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Values an agent puts into tool input. Strict members keep True from
# decoding as 1 and "1" from decoding as a number.
ToolInputValue = TypeAliasType(
    "ToolInputValue",
    "Union[StrictBool, StrictInt, StrictFloat, StrictStr, "
    "list[ToolInputValue], dict[str, ToolInputValue], None]",
)

ToolInput = dict[str, ToolInputValue]


def stringify_tool_input(tool_input: Optional[ToolInput]) -> dict[str, str]:
    """Flatten scalar tool input values to display strings; nested values are skipped."""
    flat: dict[str, str] = {}
    for key, value in (tool_input or {}).items():
        if isinstance(value, bool):
            flat[key] = "true" if value else "false"
        elif isinstance(value, (int, float, str)):
            flat[key] = str(value)
    return flat


# ── Hook wire format ────────────────────────────────────────


class HookEventKind(str, Enum):
    """Occurrences reported by the agent-side emitter."""

    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    PERMISSION_REQUEST = "PermissionRequest"
    NOTIFICATION = "Notification"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    PRE_COMPACT = "PreCompact"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"


class HookEvent(BaseModel):
    """One JSON object sent over the hook socket."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    cwd: str = ""
    event: HookEventKind
    status: str = ""
    pid: Optional[int] = None
    tty: Optional[str] = None
    tool: Optional[str] = None
    tool_input: Optional[ToolInput] = None
    tool_use_id: Optional[str] = None
    notification_type: Optional[str] = None
    message: Optional[str] = None
    server_port: Optional[int] = None

    @property
    def expects_response(self) -> bool:
        """Permission requests keep the connection open for a decision."""
        return self.event is HookEventKind.PERMISSION_REQUEST

    @classmethod
    def decode(cls, payload: bytes | str) -> HookEvent:
        """Parse a raw socket payload, raising HookDecodeError on anything invalid."""
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise HookDecodeError(str(e)) from e

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")


class PermissionDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class PermissionResponse(BaseModel):
    """Decision written back on a permission connection."""

    decision: PermissionDecision
    reason: Optional[str] = None

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")


# ── Session state ───────────────────────────────────────────


class PhaseKind(str, Enum):
    """Position of a session in the state machine."""

    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_FOR_INPUT = "waiting_for_input"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPACTING = "compacting"
    ENDED = "ended"


class PermissionContext(BaseModel):
    """The tool call a session is waiting on approval for."""

    model_config = ConfigDict(frozen=True)

    tool_use_id: str
    tool_name: str
    tool_input: Optional[ToolInput] = None
    received_at: datetime = Field(default_factory=_utcnow)


class SessionPhase(BaseModel):
    """A phase kind, plus the permission context when waiting for approval."""

    model_config = ConfigDict(frozen=True)

    kind: PhaseKind
    permission: Optional[PermissionContext] = None

    @model_validator(mode="after")
    def _context_only_when_waiting(self) -> SessionPhase:
        waiting = self.kind is PhaseKind.WAITING_FOR_APPROVAL
        if waiting != (self.permission is not None):
            raise ValueError("permission context is required for, and only for, waiting_for_approval")
        return self

    @classmethod
    def of(cls, kind: PhaseKind) -> SessionPhase:
        return cls(kind=kind)

    @classmethod
    def waiting_for_approval(cls, context: PermissionContext) -> SessionPhase:
        return cls(kind=PhaseKind.WAITING_FOR_APPROVAL, permission=context)

    def __str__(self) -> str:
        if self.permission is not None:
            return f"{self.kind.value}({self.permission.tool_use_id})"
        return self.kind.value


class ToolStatus(str, Enum):
    RUNNING = "running"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    SUCCESS = "success"
    ERROR = "error"


class ToolCallItem(BaseModel):
    name: str
    input: dict[str, str] = Field(default_factory=dict)
    status: ToolStatus = ToolStatus.RUNNING
    result: Optional[str] = None


class ChatItem(BaseModel):
    """One entry in a session's chat history."""

    id: str
    type: Literal["tool_call"] = "tool_call"
    tool: ToolCallItem
    timestamp: datetime = Field(default_factory=_utcnow)


class TrackedTool(BaseModel):
    name: str
    started_at: datetime = Field(default_factory=_utcnow)


class ToolTracker(BaseModel):
    """Tool calls started but not yet completed, plus everything seen so far."""

    in_progress: dict[str, TrackedTool] = Field(default_factory=dict)
    seen_ids: list[str] = Field(default_factory=list)

    def start_tool(self, tool_use_id: str, name: str) -> bool:
        """Record a tool start. Returns False when the id was already seen."""
        if tool_use_id in self.seen_ids:
            return False
        self.seen_ids.append(tool_use_id)
        self.in_progress[tool_use_id] = TrackedTool(name=name)
        return True

    def complete_tool(self, tool_use_id: str) -> Optional[TrackedTool]:
        return self.in_progress.pop(tool_use_id, None)


class SubagentState(BaseModel):
    """Subagent tasks launched by a session, keyed by tool-use id."""

    active_tasks: dict[str, str] = Field(default_factory=dict)


class SessionState(BaseModel):
    """Everything the engine knows about one agent session."""

    session_id: str
    cwd: str = ""
    project_name: str = ""
    pid: Optional[int] = None
    tty: Optional[str] = None
    phase: SessionPhase = Field(default_factory=lambda: SessionPhase.of(PhaseKind.IDLE))
    last_activity: datetime = Field(default_factory=_utcnow)
    chat_items: list[ChatItem] = Field(default_factory=list)
    tool_tracker: ToolTracker = Field(default_factory=ToolTracker)
    subagent_state: SubagentState = Field(default_factory=SubagentState)

    @classmethod
    def from_hook(cls, event: HookEvent) -> SessionState:
        return cls(
            session_id=event.session_id,
            cwd=event.cwd,
            project_name=os.path.basename(event.cwd.rstrip("/")) or event.cwd,
            pid=event.pid,
            tty=normalize_tty(event.tty),
        )

    @property
    def active_permission(self) -> Optional[PermissionContext]:
        return self.phase.permission

    @property
    def needs_attention(self) -> bool:
        return self.phase.kind in (PhaseKind.WAITING_FOR_APPROVAL, PhaseKind.WAITING_FOR_INPUT)

    def find_tool(self, tool_use_id: str) -> Optional[ToolCallItem]:
        for item in self.chat_items:
            if item.id == tool_use_id:
                return item.tool
        return None

    def to_display_name(self) -> str:
        return f"{self.project_name or 'session'}-{self.session_id[:8]}"


def normalize_tty(tty: Optional[str]) -> Optional[str]:
    """Strip the /dev/ prefix so ttys compare equal regardless of source."""
    if not tty:
        return None
    return tty.replace("/dev/", "", 1) if tty.startswith("/dev/") else tty
