# start container/agent-runner/src/ipc_mcp_stdio.py
"""Stdio MCP server exposing the NanoClaw IPC tools to the agent.

Started by the agent runner as the ``nanoclaw`` server. Each tool call
writes one JSON request into the group's IPC directory; the host picks it
up, authorizes it by directory, and applies it.

Environment:
    NANOCLAW_CHAT_JID, NANOCLAW_GROUP_FOLDER, NANOCLAW_IS_MAIN, NANOCLAW_IPC_DIR
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
import sys
import time
from datetime import UTC, datetime
from pathlib import Path

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

IPC_DIR = Path(os.environ.get("NANOCLAW_IPC_DIR") or "/workspace/ipc")
MESSAGES_DIR = IPC_DIR / "messages"
TASKS_DIR = IPC_DIR / "tasks"
TASKS_SNAPSHOT = IPC_DIR / "current_tasks.json"

chat_jid = os.environ.get("NANOCLAW_CHAT_JID", "")
group_folder = os.environ.get("NANOCLAW_GROUP_FOLDER", "")
is_main = os.environ.get("NANOCLAW_IS_MAIN") == "1"


def log(msg: str) -> None:
    print(f"[ipc-mcp] {msg}", file=sys.stderr, flush=True)


def write_ipc_file(directory: Path, data: dict) -> str:
    """Write an IPC request atomically as ``{ms}-{hex}.json``.

    The temp name does not end in ``.json`` so the host never reads a
    partial file.
    """
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}.json"
    tmp = directory / f".{filename}.tmp"
    tmp.write_text(json.dumps(data, indent=2))
    tmp.replace(directory / filename)
    return filename


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _error(text: str) -> CallToolResult:
    return CallToolResult(content=_text(text), isError=True)


_TASK_ID_SCHEMA = {
    "type": "object",
    "properties": {"task_id": {"type": "string", "description": "The task ID"}},
    "required": ["task_id"],
}

server = Server("nanoclaw")


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="send_message",
            description=(
                "Send a message to this group's chat immediately, while you are still "
                "running. Use it for progress updates or several separate messages."
            ),
            inputSchema={
                "type": "object",
                "properties": {"text": {"type": "string", "description": "Message text"}},
                "required": ["text"],
            },
        ),
        Tool(
            name="schedule_task",
            description=(
                "Schedule a recurring or one-time agent task for this group.\n\n"
                "schedule_type / schedule_value:\n"
                '- cron: cron expression in local time, e.g. "0 9 * * *"\n'
                '- interval: milliseconds between runs, e.g. "3600000"\n'
                '- once: local ISO timestamp, e.g. "2026-02-01T15:30:00"\n\n'
                'context_mode "group" runs with the chat history; "isolated" '
                "(default) starts a fresh session, so put all context in the prompt."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string"},
                    "schedule_type": {"type": "string", "enum": ["cron", "interval", "once"]},
                    "schedule_value": {"type": "string"},
                    "context_mode": {
                        "type": "string",
                        "enum": ["group", "isolated"],
                        "default": "isolated",
                    },
                },
                "required": ["prompt", "schedule_type", "schedule_value"],
            },
        ),
        Tool(
            name="list_tasks",
            description=(
                "List scheduled tasks. The main group sees every group's tasks; "
                "other groups see their own."
            ),
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(name="pause_task", description="Pause a scheduled task.", inputSchema=_TASK_ID_SCHEMA),
        Tool(
            name="resume_task", description="Resume a paused task.", inputSchema=_TASK_ID_SCHEMA
        ),
        Tool(
            name="cancel_task",
            description="Cancel and delete a scheduled task.",
            inputSchema=_TASK_ID_SCHEMA,
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent] | CallToolResult:
    match name:
        case "send_message":
            text = arguments.get("text")
            if not text:
                return _error("send_message requires non-empty text.")
            write_ipc_file(
                MESSAGES_DIR,
                {
                    "type": "message",
                    "chatJid": chat_jid,
                    "text": text,
                    "groupFolder": group_folder,
                    "timestamp": _now_iso(),
                },
            )
            return _text("Message sent.")

        case "schedule_task":
            return _schedule_task(arguments)

        case "list_tasks":
            return _list_tasks()

        case "pause_task" | "resume_task" | "cancel_task":
            task_id = arguments.get("task_id")
            if not task_id:
                return _error(f"{name} requires task_id.")
            write_ipc_file(
                TASKS_DIR,
                {
                    "type": name,
                    "taskId": task_id,
                    "groupFolder": group_folder,
                    "isMain": is_main,
                    "timestamp": _now_iso(),
                },
            )
            return _text(f"Task {task_id} {name.removesuffix('_task')} requested.")

        case _:
            return _error(f"Unknown tool: {name}")


def _schedule_task(arguments: dict) -> list[TextContent] | CallToolResult:
    schedule_type = arguments.get("schedule_type")
    schedule_value = str(arguments.get("schedule_value", ""))
    if not arguments.get("prompt"):
        return _error('schedule_task requires a "prompt".')
    if schedule_type not in ("cron", "interval", "once"):
        return _error(f'Invalid schedule_type "{schedule_type}". Use cron, interval, or once.')
    if schedule_type == "interval" and not (schedule_value.isdigit() and int(schedule_value) > 0):
        return _error(f'Invalid interval "{schedule_value}". Use positive milliseconds.')
    if schedule_type == "once":
        try:
            datetime.fromisoformat(schedule_value)
        except ValueError:
            return _error(f'Invalid timestamp "{schedule_value}". Use ISO format.')

    filename = write_ipc_file(
        TASKS_DIR,
        {
            "type": "schedule_task",
            "prompt": arguments["prompt"],
            "schedule_type": schedule_type,
            "schedule_value": schedule_value,
            "context_mode": arguments.get("context_mode", "isolated"),
            "chatJid": chat_jid,
            "groupFolder": group_folder,
            "isMain": is_main,
            "timestamp": _now_iso(),
        },
    )
    log(f"schedule_task request written: {filename}")
    return _text(f"Task scheduled ({schedule_type}: {schedule_value}).")


def _list_tasks() -> list[TextContent]:
    try:
        tasks = json.loads(TASKS_SNAPSHOT.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return _text("No scheduled tasks found.")
    except (OSError, ValueError) as exc:
        return _text(f"Error reading tasks: {exc}")
    if not is_main:
        tasks = [t for t in tasks if t.get("groupFolder") == group_folder]
    if not tasks:
        return _text("No scheduled tasks found.")
    lines = [
        f"- [{t.get('id')}] {str(t.get('prompt', ''))[:50]}... "
        f"({t.get('schedule_type')}: {t.get('schedule_value')}) - {t.get('status')}, "
        f"next: {t.get('next_run') or 'N/A'}"
        for t in tasks
    ]
    return _text("Scheduled tasks:\n" + "\n".join(lines))


async def run_server() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(run_server())
# end container/agent-runner/src/ipc_mcp_stdio.py
