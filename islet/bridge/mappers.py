"""Pure functions turning upstream session API JSON into bridge data shapes."""

from __future__ import annotations

from typing import Any, Optional

from islet.bridge.types import (
    FilePart,
    MessageInfo,
    PartInfo,
    ReasoningPart,
    SessionDetail,
    SessionInfo,
    SessionSummary,
    StatusInfo,
    TextPart,
    TodoInfo,
    ToolPart,
    ToolStateInfo,
)


def map_status(status: Optional[dict[str, Any]]) -> StatusInfo:
    if not status:
        return StatusInfo(type="idle")
    kind = status.get("type")
    if kind == "idle":
        return StatusInfo(type="idle")
    if kind == "busy":
        return StatusInfo(type="busy")
    return StatusInfo(type="retry", message=status.get("message"))


def map_session(session: dict[str, Any], status: Optional[dict[str, Any]] = None) -> SessionInfo:
    time = session.get("time") or {}
    return SessionInfo(
        id=session["id"],
        project_id=session.get("projectID", ""),
        directory=session.get("directory", ""),
        title=session.get("title", ""),
        created_at=time.get("created", 0),
        updated_at=time.get("updated", 0),
        status=map_status(status),
    )


def map_session_detail(
    session: dict[str, Any], status: Optional[dict[str, Any]] = None
) -> SessionDetail:
    summary = session.get("summary")
    return SessionDetail(
        **map_session(session, status).model_dump(),
        parent_id=session.get("parentID"),
        summary=SessionSummary(
            additions=summary.get("additions", 0),
            deletions=summary.get("deletions", 0),
            files=summary.get("files", 0),
        )
        if summary
        else None,
    )


def map_tool_state(state: dict[str, Any]) -> ToolStateInfo:
    status = state.get("status")
    tool_input = state.get("input") or {}
    if status == "pending":
        return ToolStateInfo(status="pending", input=tool_input)
    if status == "running":
        return ToolStateInfo(status="running", input=tool_input, title=state.get("title"))
    if status == "completed":
        return ToolStateInfo(
            status="completed",
            input=tool_input,
            output=state.get("output", ""),
            title=state.get("title", ""),
        )
    if status == "error":
        return ToolStateInfo(status="error", input=tool_input, error=state.get("error", ""))
    return ToolStateInfo(status="pending", input={})


def map_part(part: dict[str, Any]) -> Optional[PartInfo]:
    """Map one message part; blank text and unknown part types map to None."""
    kind = part.get("type")
    if kind == "text":
        text = part.get("text", "")
        return TextPart(id=part["id"], text=text) if text.strip() else None
    if kind == "reasoning":
        text = part.get("text", "")
        return ReasoningPart(id=part["id"], text=text) if text.strip() else None
    if kind == "tool":
        return ToolPart(
            id=part["id"],
            call_id=part.get("callID", ""),
            name=part.get("tool", ""),
            state=map_tool_state(part.get("state") or {}),
        )
    if kind == "file":
        return FilePart(
            id=part["id"],
            filename=part.get("filename"),
            url=part.get("url", ""),
            mime=part.get("mime", ""),
        )
    return None


def map_message(message: dict[str, Any]) -> MessageInfo:
    info = message["info"]
    time = info.get("time") or {}
    role = info.get("role", "user")
    parts = [p for p in (map_part(raw) for raw in message.get("parts", [])) if p is not None]
    return MessageInfo(
        id=info["id"],
        session_id=info.get("sessionID", ""),
        role=role,
        created_at=time.get("created", 0),
        completed_at=time.get("completed") if role == "assistant" else None,
        parts=parts,
    )


def map_todo(todo: dict[str, Any]) -> TodoInfo:
    return TodoInfo(
        id=todo.get("id", ""),
        content=todo.get("content", ""),
        status=todo.get("status", ""),
        priority=todo.get("priority", ""),
    )
