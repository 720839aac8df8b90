"""Commands accepted by SessionStore.process()."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from islet.models import HookEvent


@dataclass(frozen=True)
class HookReceived:
    event: HookEvent

    def __str__(self) -> str:
        return f"hook_received({self.event.event.value}, session={self.event.session_id[:8]})"


@dataclass(frozen=True)
class PermissionApproved:
    session_id: str
    tool_use_id: str


@dataclass(frozen=True)
class PermissionDenied:
    session_id: str
    tool_use_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class PermissionSocketFailed:
    """The permission connection died before a decision was written."""

    session_id: str
    tool_use_id: str


@dataclass(frozen=True)
class SessionEnded:
    session_id: str


SessionEvent = Union[
    HookReceived,
    PermissionApproved,
    PermissionDenied,
    PermissionSocketFailed,
    SessionEnded,
]
