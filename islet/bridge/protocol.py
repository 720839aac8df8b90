"""Line-delimited JSON envelopes exchanged with the helper process."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from islet.exceptions import ProtocolError

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Notifications the helper may push
NOTIFICATIONS = (
    "sessions.updated",
    "connected",
    "disconnected",
    "error",
    "log",
)


@dataclass(frozen=True)
class RpcError:
    code: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class Request:
    id: int
    method: str
    params: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "method": self.method, "params": self.params}


@dataclass(frozen=True)
class Response:
    id: int
    result: Any = None
    error: Optional[RpcError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": self.error.to_dict()}
        return {"id": self.id, "result": self.result}


@dataclass(frozen=True)
class Notification:
    method: str
    params: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method, "params": self.params or {}}


Message = Union[Request, Response, Notification]


def encode(message: Message) -> bytes:
    """Serialize one envelope as a single newline-terminated line."""
    return json.dumps(message.to_dict(), separators=(",", ":"), default=str).encode("utf-8") + b"\n"


def decode(line: bytes | str) -> Message:
    """Parse one line into a Request, Response or Notification."""
    try:
        data = json.loads(line)
    except ValueError as e:
        raise ProtocolError(PARSE_ERROR, f"Invalid JSON: {e}") from e
    return classify(data)


def classify(data: Any) -> Message:
    """
    Tell the three envelope shapes apart by which fields are present.

    Response: id plus result or error. Request: id plus method.
    Notification: method and no id.
    """
    if not isinstance(data, dict):
        raise ProtocolError(INVALID_REQUEST, "Message is not a JSON object")

    msg_id = data.get("id")
    method = data.get("method")
    params = data.get("params")
    if params is not None and not isinstance(params, dict):
        raise ProtocolError(INVALID_PARAMS, "params must be an object")

    if "id" in data:
        if not _is_int(msg_id):
            raise ProtocolError(INVALID_REQUEST, "id must be an integer")
        if "error" in data and data["error"] is not None:
            return Response(id=msg_id, error=_parse_error(data["error"]))
        if "result" in data:
            return Response(id=msg_id, result=data["result"])
        if isinstance(method, str):
            return Request(id=msg_id, method=method, params=params)
        raise ProtocolError(INVALID_REQUEST, "Message has an id but no method, result or error")

    if isinstance(method, str):
        return Notification(method=method, params=params)
    raise ProtocolError(INVALID_REQUEST, "Unrecognized message shape")


def _parse_error(raw: Any) -> RpcError:
    if isinstance(raw, dict):
        code = raw.get("code")
        return RpcError(
            code=code if _is_int(code) else INTERNAL_ERROR,
            message=str(raw.get("message", "Unknown error")),
        )
    return RpcError(code=INTERNAL_ERROR, message=str(raw))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
