"""Configuration management for Islet."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from islet.exceptions import ConfigError

ISLET_DIR = Path.home() / ".islet"
CONFIG_FILE = ISLET_DIR / "config.yaml"
LOG_DIR = ISLET_DIR / "logs"

DEFAULT_SOCKET_PATH = "/tmp/islet.sock"
SOCKET_ENV_VAR = "ISLET_SOCKET"


class HookServerConfig(BaseModel):
    """Hook ingress socket settings."""

    socket_path: str = DEFAULT_SOCKET_PATH
    max_payload_bytes: int = 1024 * 1024


class EmitterConfig(BaseModel):
    """Timeouts used by the agent-side emitter."""

    event_timeout: float = 1.0
    permission_timeout: float = 300.0  # 5 minutes for a human decision


class BridgeConfig(BaseModel):
    """Helper process settings."""

    enabled: bool = True
    command: list[str] = Field(
        default_factory=lambda: [sys.executable, "-m", "islet.bridge.backend"]
    )
    restart_delay: float = 2.0
    startup_delay: float = 0.5
    discovery_backoff: float = 5.0  # Wait this long after finding no server before looking again
    directory: str = Field(default_factory=lambda: str(Path.home()))


class ApiConfig(BaseModel):
    """Local HTTP/WebSocket API for the UI layer."""

    enabled: bool = True
    bind: str = "127.0.0.1"
    port: int = 9385


class NotificationConfig(BaseModel):
    """Desktop notification settings."""

    desktop: bool = True
    only_when_away: bool = False  # Skip notification if a terminal is the focused window
    sound: str = "Ping"
    on_approval: bool = True
    on_input: bool = True


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = "INFO"
    json_output: bool = Field(default=False, alias="json")

    model_config = {"populate_by_name": True}


class IsletConfig(BaseModel):
    """Root configuration model."""

    hooks: HookServerConfig = Field(default_factory=HookServerConfig)
    emitter: EmitterConfig = Field(default_factory=EmitterConfig)
    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def ensure_dirs() -> None:
    """Create Islet directories if they don't exist."""
    ISLET_DIR.mkdir(parents=True, exist_ok=True)
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def load_config(path: Path | None = None) -> IsletConfig:
    """Load configuration from ~/.islet/config.yaml, falling back to defaults."""
    path = path or CONFIG_FILE
    raw = load_yaml(path)
    try:
        config = IsletConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    socket_override = os.environ.get(SOCKET_ENV_VAR)
    if socket_override:
        config.hooks.socket_path = socket_override
    return config


def save_default_config() -> Path:
    """Write default config to ~/.islet/config.yaml."""
    ensure_dirs()
    config = IsletConfig()
    with open(CONFIG_FILE, "w") as f:
        yaml.dump(config.model_dump(by_alias=True), f, default_flow_style=False, sort_keys=False)
    return CONFIG_FILE


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict when the file is absent."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data
