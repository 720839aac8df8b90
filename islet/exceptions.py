"""Islet exception hierarchy."""

from __future__ import annotations


class IsletError(Exception):
    """Base exception for all Islet errors."""


class ConfigError(IsletError):
    """Raised when the configuration file cannot be read or is invalid."""


class HookDecodeError(IsletError):
    """Raised when a hook payload is not a valid hook event."""


class ProtocolError(IsletError):
    """A malformed IPC message or an unknown method."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class HandlerError(IsletError):
    """Raised by a helper method handler; reported to the caller as -32603."""


class BridgeError(IsletError):
    """Base class for failures on the bridge side."""


class BridgeNotRunning(BridgeError):
    """The helper process is not running, or exited before responding."""


class RemoteError(BridgeError):
    """The helper answered a request with an error object."""

    def __init__(self, code: int, message: str):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
