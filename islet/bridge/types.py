"""Data shapes carried in bridge results and notifications."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from islet.models import ToolInput


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StatusInfo(WireModel):
    type: Literal["idle", "busy", "retry"] = "idle"
    message: Optional[str] = None


class SessionInfo(WireModel):
    id: str
    project_id: str = ""
    directory: str = ""
    title: str = ""
    created_at: int = 0
    updated_at: int = 0
    status: StatusInfo = Field(default_factory=StatusInfo)


class SessionSummary(WireModel):
    additions: int = 0
    deletions: int = 0
    files: int = 0


class SessionDetail(SessionInfo):
    parent_id: Optional[str] = None
    summary: Optional[SessionSummary] = None


class ToolStateInfo(WireModel):
    status: Literal["pending", "running", "completed", "error"]
    input: ToolInput = Field(default_factory=dict)
    title: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None


class TextPart(WireModel):
    type: Literal["text"] = "text"
    id: str
    text: str


class ReasoningPart(WireModel):
    type: Literal["reasoning"] = "reasoning"
    id: str
    text: str


class ToolPart(WireModel):
    type: Literal["tool"] = "tool"
    id: str
    call_id: str
    name: str
    state: ToolStateInfo


class FilePart(WireModel):
    type: Literal["file"] = "file"
    id: str
    filename: Optional[str] = None
    url: str
    mime: str


PartInfo = Annotated[
    Union[TextPart, ReasoningPart, ToolPart, FilePart],
    Field(discriminator="type"),
]


class MessageInfo(WireModel):
    id: str
    session_id: str
    role: Literal["user", "assistant"]
    created_at: int
    completed_at: Optional[int] = None
    parts: list[PartInfo] = Field(default_factory=list)


class TodoInfo(WireModel):
    id: str
    content: str
    status: str
    priority: str
