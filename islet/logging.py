"""
Structured logging configuration for Islet.

Every module logs through structlog::

    import structlog
    logger = structlog.get_logger()

    logger.info("permission_pending", session_id="ses_1", tool_use_id="tu_1")

``configure_logging()`` is called once at process startup. The server
process renders to stderr; the helper process behind the bridge must keep
stdout free for the protocol, so it writes JSON lines to a file and hands
each entry to a ``forward`` callback that turns it into a ``log``
notification for the parent.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

LogForwarder = Callable[[str, str, dict[str, Any]], None]

# Keys added by the processor chain itself, not by the caller
_META_KEYS = {"event", "level", "logger", "timestamp"}

# The helper protocol spells warning as "warn"
_WIRE_LEVELS = {"warning": "warn", "exception": "error", "critical": "error"}


def _forwarding_processor(forward: LogForwarder) -> structlog.types.Processor:
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        level = _WIRE_LEVELS.get(method_name, method_name)
        extra = {k: v for k, v in event_dict.items() if k not in _META_KEYS}
        try:
            forward(level, str(event_dict.get("event", "")), extra)
        except Exception:  # noqa: BLE001
            pass  # a broken pipe must not take logging down with it
        return event_dict

    return processor


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = False,
    log_file: Path | None = None,
    forward: LogForwarder | None = None,
    console: bool = True,
) -> None:
    """
    Configure structlog + stdlib logging for the process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Emit JSON lines on stderr instead of coloured console output.
        log_file: Also append JSON lines to this file.
        forward: Called with (level, message, extra) for every entry.
        console: Attach the stderr handler.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        *shared_processors,
    ]
    if forward is not None:
        processors.append(_forwarding_processor(forward))
    processors.append(structlog.stdlib.ProcessorFormatter.wrap_for_formatter)

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, "_islet", False)]:
        root.removeHandler(handler)

    if console:
        if json_output:
            renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        else:
            renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(_formatter(renderer, shared_processors))
        stream._islet = True  # type: ignore[attr-defined]
        root.addHandler(stream)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), shared_processors)
        )
        file_handler._islet = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)

    root.setLevel(log_level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _formatter(
    renderer: structlog.types.Processor,
    shared_processors: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )
