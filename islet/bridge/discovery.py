"""Discovery of running agent servers on this machine."""

from __future__ import annotations

import re
import subprocess
from typing import Optional

import structlog

logger = structlog.get_logger()

_LISTEN_RE = re.compile(r"127\.0\.0\.1:(\d+).*LISTEN")


def parse_lsof_ports(output: str, process_name: str = "opencode") -> list[int]:
    """Return loopback ports that a matching process listens on, lowest first."""
    ports: set[int] = set()
    for line in output.splitlines():
        if process_name not in line or "LISTEN" not in line:
            continue
        match = _LISTEN_RE.search(line)
        if match:
            ports.add(int(match.group(1)))
    return sorted(ports)


def discover_server_port(process_name: str = "opencode", timeout: float = 5.0) -> Optional[int]:
    """
    Find a running agent server via lsof.

    When several servers are listening, the lowest port wins so repeated
    discoveries pick the same one.
    """
    try:
        result = subprocess.run(
            ["lsof", "-i", "-P", "-n"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.error("server_discovery_failed", error=str(e))
        return None

    ports = parse_lsof_ports(result.stdout, process_name)
    if not ports:
        logger.warning("no_server_found")
        return None
    if len(ports) > 1:
        logger.info("multiple_servers_found", ports=ports)
    logger.info("server_discovered", port=ports[0])
    return ports[0]
