"""Islet CLI: command-line interface."""

from __future__ import annotations

import json
import os
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from islet import __version__

app = typer.Typer(
    name="islet",
    help="Session monitor and permission broker for AI coding agents.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool):
    if value:
        console.print(f"[bold cyan]Islet[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """Know what your coding agents are doing, and answer them from one place."""
    pass


def _api_url(port: Optional[int]) -> str:
    from islet.config import load_config

    config = load_config()
    return f"http://{config.api.bind}:{port or config.api.port}"


# ── Serve Command ───────────────────────────────────────────


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
    no_api: bool = typer.Option(False, "--no-api", help="Run without the HTTP/WebSocket API."),
    no_backend: bool = typer.Option(False, "--no-backend", help="Don't start the helper process."),
    socket_path: Optional[str] = typer.Option(None, "--socket", help="Hook socket path."),
):
    """Start the hook server, session engine and local API."""
    import asyncio

    from islet.config import load_config
    from islet.exceptions import ConfigError
    from islet.logging import configure_logging
    from islet.monitor import SessionMonitor

    try:
        config = load_config()
    except ConfigError as e:
        err_console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)

    if socket_path:
        config.hooks.socket_path = socket_path
    if no_backend:
        config.bridge.enabled = False
    if no_api:
        config.api.enabled = False
    if port is not None:
        config.api.port = port

    configure_logging(level=config.logging.level, json_output=config.logging.json_output)
    monitor = SessionMonitor.from_config(config)

    console.print("\n[bold cyan]⚡ Islet[/bold cyan]")
    console.print(f"  [dim]Hooks:   {config.hooks.socket_path}[/dim]")
    if config.api.enabled:
        console.print(f"  [dim]API:     http://{config.api.bind}:{config.api.port}[/dim]")
        console.print(f"  [dim]WS:      ws://{config.api.bind}:{config.api.port}/ws[/dim]")
    console.print(f"  [dim]Backend: {'on' if config.bridge.enabled else 'off'}[/dim]")
    console.print()

    if config.api.enabled:
        import uvicorn

        from islet.server.app import create_app

        uvicorn.run(
            create_app(monitor),
            host=config.api.bind,
            port=config.api.port,
            log_level="warning",
        )
        return

    async def run_monitor() -> None:
        async with monitor:
            await asyncio.Event().wait()

    try:
        asyncio.run(run_monitor())
    except KeyboardInterrupt:
        pass


# ── Hook Commands ───────────────────────────────────────────


@app.command()
def emit(
    socket_path: Optional[str] = typer.Option(None, "--socket", help="Hook socket path."),
):
    """
    Forward one hook event (JSON on stdin) to the running server.

    Prints the decision for permission requests. Always exits 0 so a
    missing server never breaks the agent.
    """
    from pydantic import ValidationError

    from islet.config import IsletConfig, load_config
    from islet.exceptions import ConfigError
    from islet.models import HookEvent
    from islet.server.emitter import HookEmitter, detect_server_port, detect_tty

    try:
        config = load_config()
    except ConfigError:
        config = IsletConfig()

    try:
        data = json.loads(sys.stdin.read())
    except ValueError:
        return
    if not isinstance(data, dict):
        return

    data.setdefault("pid", os.getppid())
    if not data.get("tty"):
        data["tty"] = detect_tty()
    if data.get("server_port") is None:
        data["server_port"] = detect_server_port()

    try:
        event = HookEvent.model_validate(data)
    except ValidationError:
        return

    emitter = HookEmitter(
        socket_path or config.hooks.socket_path,
        event_timeout=config.emitter.event_timeout,
        permission_timeout=config.emitter.permission_timeout,
    )
    response = emitter.emit(event)
    if response is not None:
        sys.stdout.write(response.encode().decode("utf-8") + "\n")
        sys.stdout.flush()


@app.command()
def backend():
    """Run the helper process on stdin/stdout (started by the server)."""
    from islet.bridge.backend import main as backend_main

    backend_main()


# ── API Client Commands ─────────────────────────────────────


@app.command()
def status(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
):
    """Check if the Islet server is running."""
    from islet.server.client import ServerClient

    client = ServerClient(_api_url(port))
    health = client.health()
    if health is None:
        console.print("[red]✗[/red] Islet server is not running")
        console.print("  Start it with: [cyan]islet serve[/cyan]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Islet server is running (v{health.get('version', '?')})")
    console.print(f"  [dim]Sessions: {health.get('sessions', 0)} | Clients: {health.get('clients', 0)}[/dim]")

    backend_state = client.backend_status() or {}
    if backend_state.get("enabled"):
        label = "connected" if backend_state.get("connected") else "not connected"
        console.print(
            f"  [dim]Backend: {label} (restarts: {backend_state.get('restart_count', 0)})[/dim]"
        )


_PHASE_STYLES = {
    "idle": "dim",
    "processing": "cyan",
    "waiting_for_input": "yellow",
    "waiting_for_approval": "bold red",
    "compacting": "magenta",
}


@app.command()
def sessions(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
):
    """List tracked sessions (requires server running)."""
    from islet.server.client import ServerClient

    sess_list = ServerClient(_api_url(port)).list_sessions()
    if sess_list is None:
        console.print("[red]✗[/red] Cannot connect to server.")
        console.print("  Start it with: [cyan]islet serve[/cyan]")
        raise typer.Exit(1)

    if not sess_list:
        console.print("[dim]No active sessions.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Session ID", style="yellow")
    table.add_column("Project", style="cyan")
    table.add_column("Phase")
    table.add_column("Pending Tool", style="green")
    table.add_column("Working Dir", style="dim")

    for s in sess_list:
        phase = s.get("phase") or {}
        kind = phase.get("kind", "?")
        style = _PHASE_STYLES.get(kind, "white")
        permission = phase.get("permission") or {}
        table.add_row(
            s.get("session_id", "?"),
            s.get("project_name", ""),
            f"[{style}]{kind}[/{style}]",
            permission.get("tool_name", ""),
            s.get("cwd", ""),
        )

    console.print(table)


@app.command()
def approve(
    session_id: str = typer.Argument(..., help="Session waiting for approval."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
):
    """Allow a session's pending tool call."""
    from islet.server.client import ServerClient

    if ServerClient(_api_url(port)).approve(session_id):
        console.print(f"[green]✓[/green] Approved {session_id}")
    else:
        console.print(f"[red]✗[/red] Nothing to approve for {session_id}")
        raise typer.Exit(1)


@app.command()
def deny(
    session_id: str = typer.Argument(..., help="Session waiting for approval."),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Reason shown to the agent."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
):
    """Deny a session's pending tool call."""
    from islet.server.client import ServerClient

    if ServerClient(_api_url(port)).deny(session_id, reason):
        console.print(f"[green]✓[/green] Denied {session_id}")
    else:
        console.print(f"[red]✗[/red] Nothing to deny for {session_id}")
        raise typer.Exit(1)


@app.command()
def archive(
    session_id: str = typer.Argument(..., help="Session to forget."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port."),
):
    """Stop tracking a session, closing any prompt it still has open."""
    from islet.server.client import ServerClient

    if ServerClient(_api_url(port)).archive(session_id):
        console.print(f"[green]✓[/green] Archived {session_id}")
    else:
        console.print(f"[red]✗[/red] Unknown session {session_id}")
        raise typer.Exit(1)


# ── Config Commands ─────────────────────────────────────────


config_app = typer.Typer(help="Manage Islet configuration.")
app.add_typer(config_app, name="config")


@config_app.command("init")
def config_init():
    """Create the default configuration file."""
    from islet.config import CONFIG_FILE, ensure_dirs, save_default_config

    ensure_dirs()

    if CONFIG_FILE.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {CONFIG_FILE}")
    else:
        path = save_default_config()
        console.print(f"[green]✓[/green] Created config: {path}")


@config_app.command("show")
def config_show():
    """Show the effective configuration."""
    from islet.config import load_config
    from islet.exceptions import ConfigError

    try:
        config = load_config()
    except ConfigError as e:
        err_console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(1)
    console.print_json(data=config.model_dump(by_alias=True))


if __name__ == "__main__":
    app()
