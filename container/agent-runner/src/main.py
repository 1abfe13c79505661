# start container/agent-runner/src/main.py
"""NanoClaw agent runner.

Runs one agent turn, either inside the agent container or as a host
subprocess (``NANOCLAW_MODE=host``).

Input protocol:
    Stdin: one AgentInput JSON document (camelCase keys), read until EOF.

Stdout protocol:
    Exactly one AgentOutput JSON document between OUTPUT_START_MARKER and
    OUTPUT_END_MARKER. Everything else this program says goes to stderr.

Environment:
    NANOCLAW_MODE        host | container (default container)
    NANOCLAW_GROUP_DIR   group workspace (default /workspace/group)
    NANOCLAW_GLOBAL_DIR  shared global directory (default /workspace/global)
    NANOCLAW_IPC_DIR     this group's IPC directory (default /workspace/ipc)
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

_HERE = Path(__file__).resolve().parent
# nanoclaw is mounted at /app/src/nanoclaw in the container; on the host it
# lives in the project's src/ directory.
for _candidate in (_HERE, _HERE.parents[2] / "src"):
    if (_candidate / "nanoclaw" / "mcp_filter.py").is_file():
        sys.path.insert(0, str(_candidate))
        break

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, HookMatcher  # noqa: E402
from claude_agent_sdk.types import ResultMessage, SystemMessage  # noqa: E402

from nanoclaw.mcp_filter import (  # noqa: E402
    filter_by_mode,
    global_inheritance_allowed,
    log_server_sources,
    merge_servers,
    read_global_server_names,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OUTPUT_START_MARKER = "---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---NANOCLAW_OUTPUT_END---"

SECRET_ENV_VARS = ["ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN"]

DEFAULT_NON_MAIN_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
]
IPC_TOOL_PATTERN = "mcp__nanoclaw__*"

PERMISSION_DENIAL_CONTEXT = (
    "If any tool use is denied due to permissions or sandbox restrictions, use the "
    "mcp__nanoclaw__send_message tool to explain to the group what you cannot do and "
    "why. Suggest they contact the admin group for assistance. Do not silently fail."
)

SCHEDULED_TASK_PREFIX = (
    "[SCHEDULED TASK - The following message was sent automatically "
    "and is not coming directly from the user or group.]\n\n"
)


def log(msg: str) -> None:
    """Write a prefixed log line to stderr."""
    print(f"[agent-runner] {msg}", file=sys.stderr, flush=True)


def resolve_path_var(name: str, default: str) -> Path:
    """Read a directory from the environment, accepting absolute paths only.

    Args:
        name: Environment variable name.
        default: Path used when the variable is unset, empty, or relative.
    """
    value = os.environ.get(name, "")
    if value and os.path.isabs(value):
        return Path(value)
    if value:
        log(f"Ignoring non-absolute {name}={value!r}, using {default}")
    return Path(default)


MODE = "host" if os.environ.get("NANOCLAW_MODE") == "host" else "container"
GROUP_DIR = resolve_path_var("NANOCLAW_GROUP_DIR", "/workspace/group")
GLOBAL_DIR = resolve_path_var("NANOCLAW_GLOBAL_DIR", "/workspace/global")
IPC_DIR = resolve_path_var("NANOCLAW_IPC_DIR", "/workspace/ipc")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def write_output(
    status: str,
    result: str | None = None,
    new_session_id: str | None = None,
    error: str | None = None,
) -> None:
    """Write the AgentOutput between the sentinel markers and flush."""
    output: dict[str, str | None] = {"status": status, "result": result}
    if new_session_id:
        output["newSessionId"] = new_session_id
    if error:
        output["error"] = error
    print(OUTPUT_START_MARKER, flush=True)
    print(json.dumps(output), flush=True)
    print(OUTPUT_END_MARKER, flush=True)


def read_input() -> dict:
    """Parse the AgentInput from stdin.

    Raises:
        SystemExit: After writing an error output if stdin is not a JSON object.
    """
    raw = sys.stdin.read()
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("input must be a JSON object")
    except ValueError as exc:
        write_output("error", error=f"Failed to parse input: {exc}")
        sys.exit(1)
    return data


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def build_sdk_env(secrets: dict[str, str] | None) -> dict[str, str]:
    """Environment for the SDK subprocess: our environment plus the secrets.

    The secrets never enter ``os.environ``, so Bash commands the agent runs
    do not inherit them.
    """
    env = dict(os.environ)
    if secrets:
        env.update(secrets)
    return env


def build_allowed_tools(is_main: bool, security: dict | None) -> list[str] | None:
    """Tool allowlist for a turn. None means every tool (main group)."""
    if is_main:
        return None
    tools = (security or {}).get("tools")
    base = list(tools) if tools else list(DEFAULT_NON_MAIN_TOOLS)
    return [*base, IPC_TOOL_PATTERN]


def build_sandbox_settings(is_main: bool, security: dict | None, mode: str) -> dict | None:
    """OS sandbox settings for Bash, or None when the sandbox stays off.

    Only non-main groups running on the host are sandboxed; containers are
    already isolated.
    """
    if is_main or mode != "host" or (security or {}).get("sandbox") is False:
        return None
    return {
        "enabled": True,
        "autoAllowBashIfSandboxed": True,
        "allowUnsandboxedCommands": False,
    }


def build_ipc_server(agent_input: dict) -> dict:
    """The always-on IPC tool server, launched with this interpreter."""
    return {
        "command": sys.executable,
        "args": [str(_HERE / "ipc_mcp_stdio.py")],
        "env": {
            "NANOCLAW_CHAT_JID": agent_input.get("chatJid", ""),
            "NANOCLAW_GROUP_FOLDER": agent_input.get("groupFolder", ""),
            "NANOCLAW_IS_MAIN": "1" if agent_input.get("isMain") else "0",
            "NANOCLAW_IPC_DIR": str(IPC_DIR),
        },
    }


def build_mcp_servers(agent_input: dict, is_main: bool) -> dict[str, dict]:
    """Configured servers active in this mode, merged behind the IPC server."""
    configured = agent_input.get("mcpServers") or {}
    filtered = filter_by_mode(configured, MODE)
    if filtered.active:
        log(f"MCP servers active ({MODE} mode): {', '.join(filtered.active)}")
    for name in filtered.filtered_names:
        modes = configured[name].get("modes")
        log(f'MCP server filtered out: "{name}" (modes: {modes}, current: {MODE})')
    if not configured:
        log("No additional MCP servers configured")

    if global_inheritance_allowed(is_main, MODE):
        log_server_sources(list(filtered.active), read_global_server_names(), MODE)
    return merge_servers(build_ipc_server(agent_input), filtered.active)


def create_sanitize_bash_hook():
    """PreToolUse hook that unsets the secret variables before every Bash command."""
    unset_prefix = f"unset {' '.join(SECRET_ENV_VARS)} 2>/dev/null; "

    async def sanitize_bash_hook(input_data, tool_use_id, context) -> dict:
        tool_input: dict = input_data.get("tool_input", {})
        command = tool_input.get("command")
        if not command:
            return {}
        return {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "updatedInput": {**tool_input, "command": unset_prefix + command},
            }
        }

    return sanitize_bash_hook


def create_permission_denial_hook():
    """PreToolUse hook asking non-main agents to report denials to their group."""

    async def permission_denial_hook(input_data, tool_use_id, context) -> dict:
        return {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "additionalContext": PERMISSION_DENIAL_CONTEXT,
            }
        }

    return permission_denial_hook


def load_global_claude_md(is_main: bool) -> str | None:
    """Shared instructions appended to the system prompt of non-main groups."""
    path = GLOBAL_DIR / "CLAUDE.md"
    if is_main or not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        log(f"Failed to read global CLAUDE.md: {exc}")
        return None


def build_options(agent_input: dict, session_id: str | None) -> ClaudeAgentOptions:
    """Agent SDK options for one turn."""
    is_main = bool(agent_input.get("isMain"))
    security = agent_input.get("security")
    if not is_main:
        log(
            f"Security: restricted={(security or {}).get('sandbox', True)}, "
            f"tools={(security or {}).get('tools') or 'default'}"
        )

    global_md = load_global_claude_md(is_main)
    hooks = {"PreToolUse": [HookMatcher(matcher="Bash", hooks=[create_sanitize_bash_hook()])]}
    if not is_main:
        hooks["PreToolUse"].append(HookMatcher(hooks=[create_permission_denial_hook()]))

    kwargs = {
        "cwd": str(GROUP_DIR),
        "resume": session_id,
        "env": build_sdk_env(agent_input.get("secrets")),
        "permission_mode": "bypassPermissions" if is_main else "default",
        "setting_sources": (
            ["project", "user"] if global_inheritance_allowed(is_main, MODE) else ["project"]
        ),
        "mcp_servers": build_mcp_servers(agent_input, is_main),
        "hooks": hooks,
        "system_prompt": (
            {"type": "preset", "preset": "claude_code", "append": global_md}
            if global_md
            else None
        ),
    }
    allowed_tools = build_allowed_tools(is_main, security)
    if allowed_tools is not None:
        kwargs["allowed_tools"] = allowed_tools
    sandbox = build_sandbox_settings(is_main, security, MODE)
    if sandbox is not None:
        kwargs["sandbox"] = sandbox
    return ClaudeAgentOptions(**kwargs)


# ---------------------------------------------------------------------------
# Agent turn
# ---------------------------------------------------------------------------


async def run_query(prompt: str, agent_input: dict, session_id: str | None) -> tuple:
    """Run the agent until its result message.

    Returns:
        ``(result_text, new_session_id)``.

    Raises:
        RuntimeError: If the SDK reports an error result.
    """
    log(f"Starting agent (session: {session_id or 'new'}, mode: {MODE})")
    options = build_options(agent_input, session_id)
    new_session_id = None
    result_text = None

    async with ClaudeSDKClient(options=options) as client:
        await client.query(prompt)
        async for message in client.receive_response():
            if isinstance(message, SystemMessage) and message.subtype == "init":
                new_session_id = message.data.get("session_id")
                log(f"Session initialized: {new_session_id}")
            elif isinstance(message, ResultMessage):
                if message.is_error:
                    raise RuntimeError(message.result or f"agent error ({message.subtype})")
                result_text = message.result
                new_session_id = message.session_id or new_session_id
                log(f"Result: subtype={message.subtype} chars={len(result_text or '')}")
    return result_text, new_session_id


def build_prompt(agent_input: dict) -> str:
    prompt = agent_input.get("prompt", "")
    if agent_input.get("isScheduledTask"):
        prompt = SCHEDULED_TASK_PREFIX + prompt
    return prompt


async def main() -> None:
    """Read the input, run one turn, write one output."""
    logging.basicConfig(
        level=logging.INFO, stream=sys.stderr, format="[agent-runner] %(message)s"
    )
    agent_input = read_input()
    log(f"Received input for group: {agent_input.get('groupFolder', '?')} ({MODE} mode)")
    GROUP_DIR.mkdir(parents=True, exist_ok=True)

    prompt = build_prompt(agent_input)
    session_id = agent_input.get("sessionId")
    try:
        result, new_session_id = await run_query(prompt, agent_input, session_id)
    except Exception as exc:
        if not session_id:
            log(f"Agent error: {exc}")
            write_output("error", error=str(exc))
            sys.exit(1)
        # A session from the other execution mode cannot be resumed here.
        log(f"Agent failed with session resume, retrying without session: {exc}")
        try:
            result, new_session_id = await run_query(prompt, agent_input, None)
        except Exception as retry_exc:
            log(f"Agent error (retry): {retry_exc}")
            write_output("error", error=str(retry_exc))
            sys.exit(1)

    log("Agent completed successfully")
    write_output("ok", result=result, new_session_id=new_session_id)


if __name__ == "__main__":
    asyncio.run(main())
# end container/agent-runner/src/main.py
