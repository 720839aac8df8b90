"""HTTP client for the local Islet API, used by the CLI."""

from __future__ import annotations

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional


class ServerClient:
    """
    Lightweight HTTP client for a running ``islet serve``.

    Uses stdlib urllib to avoid adding httpx/requests as a runtime dependency.
    """

    def __init__(self, base_url: str = "http://127.0.0.1:9385"):
        self.base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get(self, path: str) -> Optional[Any]:
        try:
            with urllib.request.urlopen(self._url(path), timeout=3) as resp:
                return json.loads(resp.read())
        except (urllib.error.URLError, OSError, TimeoutError, ValueError):
            return None

    def _send(self, path: str, method: str, payload: Optional[dict[str, Any]] = None) -> bool:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            self._url(path),
            data=data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=3) as resp:
                return resp.status == 200
        except (urllib.error.URLError, OSError, TimeoutError):
            return False

    def health(self) -> Optional[dict[str, Any]]:
        return self._get("/api/health")

    def list_sessions(self) -> Optional[list[dict[str, Any]]]:
        data = self._get("/api/sessions")
        return data.get("sessions", []) if isinstance(data, dict) else None

    def backend_status(self) -> Optional[dict[str, Any]]:
        return self._get("/api/backend")

    def approve(self, session_id: str) -> bool:
        return self._send(f"/api/sessions/{urllib.parse.quote(session_id)}/approve", "POST")

    def deny(self, session_id: str, reason: Optional[str] = None) -> bool:
        return self._send(
            f"/api/sessions/{urllib.parse.quote(session_id)}/deny",
            "POST",
            {"reason": reason},
        )

    def archive(self, session_id: str) -> bool:
        return self._send(f"/api/sessions/{urllib.parse.quote(session_id)}", "DELETE")
