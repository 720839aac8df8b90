"""Desktop notifications via osascript / terminal-notifier on macOS and notify-send on Linux."""

from __future__ import annotations

import shutil
import subprocess
import sys
from typing import Optional

import structlog

from islet.config import NotificationConfig
from islet.models import PhaseKind, SessionState

logger = structlog.get_logger()

_TERMINAL_APPS = {
    "terminal", "iterm2", "warp", "hyper", "alacritty",
    "kitty", "ghostty", "tabby", "rio",
}

_FRONTMOST_SCRIPT = (
    'tell application "System Events" to get name of first '
    "application process whose frontmost is true"
)


def is_terminal_focused() -> bool:
    """Return True if a terminal app is currently the frontmost window (macOS only)."""
    if sys.platform != "darwin":
        return False
    try:
        result = subprocess.run(
            ["osascript", "-e", _FRONTMOST_SCRIPT], capture_output=True, text=True, timeout=2
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return False  # unknown, so notify
    frontmost = result.stdout.strip().lower()
    return any(app in frontmost for app in _TERMINAL_APPS)


# ── Delivery ────────────────────────────────────────────────


def terminal_notifier_args(
    title: str, message: str, subtitle: Optional[str], sound: str, group: Optional[str]
) -> list[str]:
    args = ["terminal-notifier", "-title", title, "-message", message, "-sound", sound]
    if subtitle:
        args.extend(["-subtitle", subtitle])
    if group:
        # One banner per session; a newer one replaces the old
        args.extend(["-group", f"islet-{group}"])
    return args


def osascript_args(title: str, message: str, subtitle: Optional[str], sound: str) -> list[str]:
    script = f'display notification "{_sanitize(message)}" with title "{_sanitize(title)}"'
    if subtitle:
        script += f' subtitle "{_sanitize(subtitle)}"'
    script += f' sound name "{_sanitize(sound)}"'
    return ["osascript", "-e", script]


def notify_send_args(title: str, message: str, subtitle: Optional[str]) -> list[str]:
    body = f"{subtitle}\n{message}" if subtitle else message
    return ["notify-send", "--app-name=islet", title, body]


def _run(args: list[str]) -> bool:
    try:
        subprocess.run(args, capture_output=True, timeout=5, check=True)
    except (subprocess.TimeoutExpired, subprocess.CalledProcessError, FileNotFoundError, OSError) as e:
        logger.debug("notification_failed", backend=args[0], error=str(e))
        return False
    return True


def send_notification(
    title: str,
    message: str,
    subtitle: Optional[str] = None,
    sound: str = "Ping",
    group: Optional[str] = None,
) -> bool:
    """Send one desktop notification with whatever the platform offers."""
    if sys.platform == "darwin":
        if shutil.which("terminal-notifier") and _run(
            terminal_notifier_args(title, message, subtitle, sound, group)
        ):
            return True
        return _run(osascript_args(title, message, subtitle, sound))
    if shutil.which("notify-send"):
        return _run(notify_send_args(title, message, subtitle))
    logger.debug("no_notification_backend", platform=sys.platform)
    return False


def _sanitize(text: str) -> str:
    """Escape text for an AppleScript string literal."""
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ⏎ ")


def format_attention(session: SessionState) -> Optional[tuple[str, str]]:
    """Title and message for a session that needs the user, or None."""
    kind = session.phase.kind
    name = session.project_name or session.session_id[:8]
    if kind is PhaseKind.WAITING_FOR_APPROVAL:
        permission = session.active_permission
        tool = permission.tool_name if permission else "a tool"
        return f"Islet · {name}", f"{tool} needs approval"
    if kind is PhaseKind.WAITING_FOR_INPUT:
        return f"Islet · {name}", "Agent is waiting for your input"
    return None


class DesktopNotifier:
    """Decides whether a session deserves a notification and sends it."""

    def __init__(self, config: Optional[NotificationConfig] = None, sender=send_notification):
        self.config = config or NotificationConfig()
        self._send = sender

    def enabled_for(self, kind: PhaseKind) -> bool:
        if not self.config.desktop:
            return False
        if kind is PhaseKind.WAITING_FOR_APPROVAL:
            return self.config.on_approval
        if kind is PhaseKind.WAITING_FOR_INPUT:
            return self.config.on_input
        return False

    def notify_session(self, session: SessionState) -> bool:
        """Send a notification for the session's phase. Returns True if one was sent."""
        if not self.enabled_for(session.phase.kind):
            return False
        text = format_attention(session)
        if text is None:
            return False
        if self.config.only_when_away and is_terminal_focused():
            logger.debug("notification_suppressed_focused", session_id=session.session_id)
            return False

        title, message = text
        self._send(
            title,
            message,
            subtitle=session.cwd or None,
            sound=self.config.sound,
            group=session.session_id,
        )
        logger.info("notification_sent", session_id=session.session_id, phase=session.phase.kind.value)
        return True
