# start src/nanoclaw/mcp_filter.py
"""MCP server filtering and translation.

Turns the ``mcpServers`` block of nanoclaw.config.jsonc into the server map
the agent SDK expects for one execution mode. Shared by the host (for startup
logging) and by the agent runner (for the actual merge), so this module only
depends on the standard library.

The name ``nanoclaw`` belongs to the always-on IPC tool server and is never
taken from config.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

RESERVED_SERVER_NAME = "nanoclaw"
KNOWN_MODES = frozenset({"host", "container"})
DEFAULT_MODES = ("host", "container")
NETWORK_TYPES = ("sse", "http")

_reserved_warned = False


@dataclass
class FilterResult:
    """Outcome of filtering configured servers for one mode.

    Attributes:
        active: Servers enabled for the mode, in agent SDK format.
        filtered_names: Servers configured but not enabled for the mode.
    """

    active: dict[str, dict[str, Any]] = field(default_factory=dict)
    filtered_names: list[str] = field(default_factory=list)


@dataclass
class ServerSources:
    """Server names grouped by where they come from, for the startup log."""

    from_config: list[str]
    inherited: list[str]
    overridden: list[str]


def translate_server(server: Mapping[str, Any]) -> dict[str, Any]:
    """Translate one configured server into the agent SDK wire format.

    Args:
        server: A validated server definition (stdio or network variant).

    Returns:
        ``{type, url, headers}`` for sse/http servers, ``{command, args, env}``
        for stdio servers. Absent optional fields are omitted.
    """
    if server.get("type") in NETWORK_TYPES:
        translated: dict[str, Any] = {"type": server["type"], "url": server["url"]}
        if server.get("headers"):
            translated["headers"] = dict(server["headers"])
        return translated

    translated = {"command": server["command"]}
    if server.get("args") is not None:
        translated["args"] = list(server["args"])
    if server.get("env") is not None:
        translated["env"] = dict(server["env"])
    return translated


def server_modes(server: Mapping[str, Any]) -> tuple[str, ...]:
    """Modes a server is enabled for, applying the default when omitted."""
    modes = server.get("modes")
    return DEFAULT_MODES if modes is None else tuple(modes)


def filter_by_mode(servers: Mapping[str, Mapping[str, Any]], mode: str) -> FilterResult:
    """Split configured servers into those active for ``mode`` and the rest.

    Every name except the reserved one lands in exactly one of the two
    outputs. A server listing only unrecognized modes is never active.

    Args:
        servers: Server definitions keyed by name.
        mode: The current execution mode.

    Returns:
        A FilterResult with translated active servers and filtered names.
    """
    global _reserved_warned
    result = FilterResult()
    for name, server in servers.items():
        if name == RESERVED_SERVER_NAME:
            if _reserved_warned:
                continue
            _reserved_warned = True
            logger.warning(
                "MCP server name %r is reserved for the built-in IPC server; "
                "the configured entry is ignored",
                name,
            )
            continue
        if mode in server_modes(server):
            result.active[name] = translate_server(server)
        else:
            result.filtered_names.append(name)
    return result


def merge_servers(
    ipc_server: Mapping[str, Any], active: Mapping[str, Mapping[str, Any]]
) -> dict[str, dict[str, Any]]:
    """Build the final server map handed to the agent SDK.

    The IPC server is inserted first and can never be replaced by an
    entry from ``active``.
    """
    merged: dict[str, dict[str, Any]] = {RESERVED_SERVER_NAME: dict(ipc_server)}
    for name, server in active.items():
        if name != RESERVED_SERVER_NAME:
            merged[name] = dict(server)
    return merged


def global_inheritance_allowed(is_main: bool, mode: str) -> bool:
    """User-level MCP servers are inherited only by the main group in host mode."""
    return is_main and mode == "host"


def read_global_server_names(config_dir: Path | None = None) -> list[str]:
    """Names of MCP servers defined in the user-level agent settings.

    Only used for logging; the agent SDK loads those servers itself through
    its ``user`` settings source.

    Args:
        config_dir: Agent config directory. Defaults to ``$CLAUDE_CONFIG_DIR``
            or ``~/.claude``.

    Returns:
        Server names, or an empty list when the settings are missing or unreadable.
    """
    if config_dir is None:
        env_dir = os.environ.get("CLAUDE_CONFIG_DIR")
        config_dir = Path(env_dir) if env_dir else Path.home() / ".claude"
    settings_path = config_dir / "settings.json"
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    servers = settings.get("mcpServers") if isinstance(settings, dict) else None
    return list(servers) if isinstance(servers, dict) else []


def log_server_sources(
    config_names: list[str], global_names: list[str], mode: str
) -> ServerSources:
    """Log which servers come from config, which are inherited, and which collide.

    A name defined in both places is reported as overridden by config.
    """
    overridden = [name for name in global_names if name in config_names]
    inherited = [name for name in global_names if name not in config_names]
    sources = ServerSources(
        from_config=list(config_names), inherited=inherited, overridden=overridden
    )
    if sources.from_config:
        logger.info("MCP servers from config (%s mode): %s", mode, ", ".join(sources.from_config))
    if sources.inherited:
        logger.info("MCP servers inherited from user settings: %s", ", ".join(sources.inherited))
    if sources.overridden:
        logger.info("MCP servers overridden by config: %s", ", ".join(sources.overridden))
    return sources


# end src/nanoclaw/mcp_filter.py
