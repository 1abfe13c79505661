# start src/nanoclaw/config_loader.py
"""Loader for nanoclaw.config.jsonc, the runner-facing configuration.

The file is optional. When present it is parsed as JSONC, every string value
has ``${VAR}`` / ``${VAR:-default}`` tokens expanded from the environment, and
the result is validated against a strict schema. Unknown keys are errors.
The validated NanoClawConfig is frozen: nested mappings are read-only views
and lists become tuples.

Invalid configuration is fatal. ``load_nanoclaw_config_or_exit`` prints every
issue in one boxed diagnostic and exits non-zero.
"""

from __future__ import annotations

import difflib
import json
import logging
import os
import re
import sys
import textwrap
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Annotated, Any, Literal, TextIO

import json5
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from nanoclaw.mcp_filter import DEFAULT_MODES, KNOWN_MODES

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "nanoclaw.config.jsonc"

ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

_BOX_WIDTH = 64


class ConfigError(Exception):
    """Raised when nanoclaw.config.jsonc cannot be read, parsed, or validated.

    Attributes:
        title: One-line summary for the diagnostic banner.
        details: Every issue found, one entry per line.
    """

    def __init__(self, title: str, details: list[str]) -> None:
        super().__init__(f"{title}: " + "; ".join(details))
        self.title = title
        self.details = details


def _freeze_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    if value is None:
        return None
    return MappingProxyType(dict(value))


class HostSecurityConfig(BaseModel):
    """Restrictions for non-main groups in host mode.

    Attributes:
        sandbox: Run non-main agents under the OS sandbox.
        tools: Positive allowlist of tool-name patterns. Must not be empty.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    sandbox: bool = True
    tools: Annotated[tuple[str, ...], Field(min_length=1)] | None = None


class McpServerDefinition(BaseModel):
    """An MCP tool server as written in the config file.

    A definition is either stdio (``command`` with optional ``args``/``env``)
    or network (``type`` sse/http with ``url`` and optional ``headers``).
    """

    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    command: str | None = None
    args: tuple[str, ...] | None = None
    env: Mapping[str, str] | None = None
    type: Literal["stdio", "sse", "http"] | None = None
    url: str | None = None
    headers: Mapping[str, str] | None = None
    modes: tuple[str, ...] = DEFAULT_MODES

    @field_validator("env", "headers", mode="after")
    @classmethod
    def _freeze(_cls, v: Mapping[str, str] | None) -> Mapping[str, str] | None:  # noqa: N804
        return _freeze_mapping(v)

    @field_serializer("env", "headers", mode="wrap")
    def _thaw(self, value: Mapping[str, str] | None, handler: Any) -> Any:
        return handler(dict(value) if value is not None else None)

    @model_validator(mode="after")
    def _check_variant(self) -> McpServerDefinition:
        if self.is_network:
            if not self.url:
                raise ValueError(f"'{self.type}' servers require 'url'")
            stray = [k for k in ("command", "args", "env") if getattr(self, k) is not None]
            if stray:
                raise ValueError(
                    f"'{self.type}' servers cannot use {', '.join(stray)} "
                    "(those belong to stdio servers)"
                )
        else:
            if not self.command:
                raise ValueError("stdio servers require 'command'")
            stray = [k for k in ("url", "headers") if getattr(self, k) is not None]
            if stray:
                raise ValueError(
                    f"stdio servers cannot use {', '.join(stray)} "
                    "(set type to 'sse' or 'http' for network servers)"
                )
        return self

    @property
    def is_network(self) -> bool:
        """True for sse/http servers."""
        return self.type in ("sse", "http")


class NanoClawConfig(BaseModel):
    """Validated, frozen contents of nanoclaw.config.jsonc.

    Attributes:
        execution_mode: ``container`` or ``host``; selects the runner strategy.
        host_security: Non-main group restrictions for host mode.
        mcp_servers: Configured MCP tool servers by name.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, strict=True, populate_by_name=True)

    execution_mode: Literal["container", "host"] = Field(
        default="container", alias="executionMode"
    )
    host_security: HostSecurityConfig | None = Field(default=None, alias="hostSecurity")
    mcp_servers: Mapping[str, McpServerDefinition] = Field(
        default_factory=dict, alias="mcpServers", validate_default=True
    )

    @field_validator("mcp_servers", mode="after")
    @classmethod
    def _freeze_servers(  # noqa: N804
        _cls, v: Mapping[str, McpServerDefinition]
    ) -> Mapping[str, McpServerDefinition]:
        return MappingProxyType(dict(v))

    @field_serializer("mcp_servers", mode="wrap")
    def _thaw_servers(self, value: Mapping[str, McpServerDefinition], handler: Any) -> Any:
        return handler(dict(value))

    def raw_mcp_servers(self) -> dict[str, dict[str, Any]]:
        """Server definitions as plain dicts, the form carried in AgentInput."""
        return {
            name: server.model_dump(mode="json", exclude_none=True)
            for name, server in self.mcp_servers.items()
        }


# --- Environment expansion ---


def expand_env_vars(
    value: Any,
    environ: Mapping[str, str] | None = None,
    unresolved: list[str] | None = None,
) -> Any:
    """Recursively expand ``${VAR}`` and ``${VAR:-default}`` in string values.

    Object keys are left untouched. The default applies when the variable is
    unset or empty.

    Args:
        value: Parsed JSON value.
        environ: Variables to expand from. Defaults to os.environ.
        unresolved: Collects names that expanded to an empty string with no default.

    Returns:
        A copy of value with every string expanded.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):

        def _sub(match: re.Match[str]) -> str:
            name, default = match.group(1), match.group(2)
            resolved = env.get(name, "")
            if resolved:
                return resolved
            if default is not None:
                return default
            if unresolved is not None and name not in unresolved:
                unresolved.append(name)
            return ""

        return ENV_VAR_PATTERN.sub(_sub, value)
    if isinstance(value, list):
        return [expand_env_vars(item, env, unresolved) for item in value]
    if isinstance(value, dict):
        return {key: expand_env_vars(item, env, unresolved) for key, item in value.items()}
    return value


# --- Diagnostics ---


def _field_names(model: type[BaseModel]) -> list[str]:
    return [info.alias or name for name, info in model.model_fields.items()]


def _known_fields(parent: tuple[int | str, ...]) -> list[str]:
    """Valid keys for the object at ``parent`` in the config document."""
    if not parent:
        return _field_names(NanoClawConfig)
    if parent == ("hostSecurity",):
        return _field_names(HostSecurityConfig)
    if len(parent) == 2 and parent[0] == "mcpServers":
        return _field_names(McpServerDefinition)
    return []


_ENUM_VALUES: dict[str, tuple[str, ...]] = {
    "executionMode": ("container", "host"),
    "type": ("stdio", "sse", "http"),
}


def _format_path(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc) or "(root)"


def format_validation_errors(exc: ValidationError) -> list[str]:
    """Turn a ValidationError into operator-facing lines.

    Unknown keys are grouped per object into one ``Unknown fields`` line with
    a nearest-match hint. Enum errors list the valid values.
    """
    lines: list[str] = []
    unknown: dict[tuple[int | str, ...], list[str]] = {}

    for error in exc.errors():
        loc = tuple(error["loc"])
        if error["type"] == "extra_forbidden":
            unknown.setdefault(loc[:-1], []).append(str(loc[-1]))
            continue

        path = _format_path(loc)
        message = error["msg"]
        if error["type"] == "value_error":
            message = message.removeprefix("Value error, ")
        lines.append(f"{path}: {message}")

        valid = _ENUM_VALUES.get(str(loc[-1])) if loc else None
        if error["type"] == "literal_error" and valid:
            lines.append("  Valid values: " + ", ".join(f'"{v}"' for v in valid))
            given = error.get("input")
            if isinstance(given, str):
                close = difflib.get_close_matches(given, valid, n=1)
                if close:
                    lines.append(f'  Did you mean "{close[0]}"?')

    for parent, keys in unknown.items():
        where = f" in {_format_path(parent)}" if parent else ""
        lines.append(f"Unknown fields{where}: {', '.join(keys)}")
        known = _known_fields(parent)
        for key in keys:
            close = difflib.get_close_matches(key, known, n=1)
            if close:
                lines.append(f'  Did you mean "{close[0]}" instead of "{key}"?')
        lines.append("  Hint: Check for typos in field names")

    return lines


def print_config_error(title: str, details: list[str], stream: TextIO | None = None) -> None:
    """Print a boxed configuration diagnostic.

    Args:
        title: Summary shown in the banner header.
        details: Issue lines shown below the header.
        stream: Destination. Defaults to stderr.
    """
    out = stream or sys.stderr
    border = "═" * (_BOX_WIDTH + 2)

    def row(text: str) -> str:
        return f"║ {text.ljust(_BOX_WIDTH)} ║"

    body = [f"╔{border}╗"]
    body.extend(row(part) for part in textwrap.wrap(f"CONFIG ERROR: {title}", _BOX_WIDTH))
    body.append(f"╠{border}╣")
    for detail in details:
        indent = detail[: len(detail) - len(detail.lstrip())]
        wrapped = textwrap.wrap(
            detail, _BOX_WIDTH, subsequent_indent=indent + "  ", break_long_words=True
        )
        body.extend(row(part) for part in wrapped or [""])
    body.append(f"╚{border}╝")
    print("\n" + "\n".join(body) + "\n", file=out)


# --- Loading ---


def load_nanoclaw_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> NanoClawConfig:
    """Load, expand, and validate nanoclaw.config.jsonc.

    Args:
        config_path: Path to the file. Defaults to nanoclaw.config.jsonc in
            the current directory.
        environ: Variables for ``${VAR}`` expansion. Defaults to os.environ.

    Returns:
        The frozen configuration. Defaults when the file does not exist.

    Raises:
        ConfigError: If the file is unreadable, not valid JSONC, or fails validation.
    """
    path = config_path or Path(CONFIG_FILENAME)
    if not path.exists():
        logger.info("No %s found, using defaults", path.name)
        return NanoClawConfig()

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Cannot read {path.name}", [f"File exists but is not readable: {exc}"]
        ) from exc

    try:
        data = json5.loads(raw)
    except ValueError as exc:
        raise ConfigError(
            f"Invalid JSON in {path.name}",
            [str(exc), "Hint: comments (// and /* */) and trailing commas are allowed"],
        ) from exc

    unresolved: list[str] = []
    data = expand_env_vars(data, environ, unresolved)
    if unresolved:
        logger.warning(
            "Unresolved environment variables in %s (expanded to empty): %s",
            path.name,
            ", ".join(unresolved),
        )

    try:
        config = NanoClawConfig.model_validate_json(json.dumps(data))
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {path.name}", format_validation_errors(exc)) from exc

    for name, server in config.mcp_servers.items():
        unknown_modes = [m for m in server.modes if m not in KNOWN_MODES]
        if unknown_modes:
            logger.warning(
                "MCP server %s lists unrecognized modes %s (recognized: %s); "
                "they never match an execution mode",
                name,
                unknown_modes,
                ", ".join(sorted(KNOWN_MODES)),
            )

    logger.info(
        "Config loaded: executionMode=%s, mcpServers=[%s], hostSecurity=%s",
        config.execution_mode,
        ", ".join(config.mcp_servers),
        "set" if config.host_security else "default",
    )
    return config


def load_nanoclaw_config_or_exit(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> NanoClawConfig:
    """Load the config, printing a boxed diagnostic and exiting on failure.

    Raises:
        SystemExit: With status 1 when the config is invalid.
    """
    try:
        return load_nanoclaw_config(config_path, environ)
    except ConfigError as exc:
        print_config_error(exc.title, exc.details)
        raise SystemExit(1) from exc


# end src/nanoclaw/config_loader.py
