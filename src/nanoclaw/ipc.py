# start src/nanoclaw/ipc.py
"""File-based IPC between agent processes and the host.

Each group owns a directory under the IPC root::

    data/ipc/<folder>/
        messages/   outbound chat messages written by the agent
        tasks/      task commands written by the agent
        errors/     quarantined files that failed processing
        current_tasks.json, available_groups.json   host-written snapshots

The directory a file arrives in is the sender's identity. Every file the
watcher might observe is written to a temp name and renamed into place.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import string
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from nanoclaw.types import (
    MAIN_GROUP_FOLDER,
    AvailableGroup,
    RegisteredGroup,
    ScheduledTask,
)

logger = logging.getLogger(__name__)

IPC_SUBDIRS = ("messages", "tasks", "errors")
TASKS_SNAPSHOT = "current_tasks.json"
GROUPS_SNAPSHOT = "available_groups.json"


class IpcPayloadError(ValueError):
    """An IPC document is not a well-formed request."""


@dataclass
class IpcDeps:
    """Dependencies injected into the IPC watcher.

    Attributes:
        send_message: Async callable delivering text to a chat.
        registered_groups: Callable returning the registered groups by chat id.
        timezone: IANA timezone for cron evaluation.
    """

    send_message: Callable[[str, str], Coroutine[Any, Any, None]]
    registered_groups: Callable[[], dict[str, RegisteredGroup]]
    timezone: str = "UTC"


# --- Atomic writes and layout ---


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` through a temp file and a rename.

    Readers polling the directory never see partial content because the
    temp name does not end in ``.json``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.replace(path)


def ensure_group_ipc_dir(ipc_base: Path, group_folder: str) -> Path:
    """Create a group's IPC directory and its sub-directories.

    Returns:
        The group's IPC directory.
    """
    group_dir = ipc_base / group_folder
    for sub in IPC_SUBDIRS:
        (group_dir / sub).mkdir(parents=True, exist_ok=True)
    return group_dir


def _ipc_filename() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}-{suffix}.json"


def enqueue_outbound_message(ipc_base: Path, group_folder: str, chat_jid: str, text: str) -> Path:
    """Drop a message request into a group's messages/ directory.

    Used by the host itself (e.g. security alerts); the watcher delivers it
    like any agent-written message.

    Returns:
        Path of the written file.
    """
    path = ipc_base / group_folder / "messages" / _ipc_filename()
    write_json_atomic(
        path,
        {
            "type": "message",
            "chatJid": chat_jid,
            "text": text,
            "groupFolder": group_folder,
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )
    return path


def write_tasks_snapshot(
    ipc_base: Path,
    group_folder: str,
    is_main: bool,
    tasks: list[ScheduledTask],
) -> None:
    """Write current_tasks.json for the agent to read.

    The main group sees every task; other groups see their own.
    """
    visible = tasks if is_main else [t for t in tasks if t.group_folder == group_folder]
    write_json_atomic(
        ensure_group_ipc_dir(ipc_base, group_folder) / TASKS_SNAPSHOT,
        [
            {
                "id": t.id,
                "groupFolder": t.group_folder,
                "prompt": t.prompt,
                "schedule_type": t.schedule_type,
                "schedule_value": t.schedule_value,
                "status": t.status,
                "next_run": t.next_run,
            }
            for t in visible
        ],
    )


def write_groups_snapshot(
    ipc_base: Path,
    group_folder: str,
    is_main: bool,
    groups: list[AvailableGroup],
) -> None:
    """Write available_groups.json. Only the main group gets the list."""
    write_json_atomic(
        ensure_group_ipc_dir(ipc_base, group_folder) / GROUPS_SNAPSHOT,
        {
            "groups": [g.model_dump(by_alias=True) for g in groups] if is_main else [],
            "lastSync": datetime.now(UTC).isoformat(),
        },
    )


# --- Schedules ---


def calculate_next_run(
    schedule_type: str,
    schedule_value: str,
    timezone: str = "UTC",
    now: datetime | None = None,
) -> str | None:
    """Compute the first run of a schedule.

    Args:
        schedule_type: 'cron', 'interval', or 'once'.
        schedule_value: Cron expression, interval in milliseconds, or ISO timestamp.
        timezone: IANA timezone the cron expression is evaluated in.
        now: Reference time. Defaults to the current time.

    Returns:
        ISO timestamp string, or None if the schedule is invalid.
    """
    now = now or datetime.now(UTC)
    if schedule_type == "cron":
        try:
            local_now = now.astimezone(ZoneInfo(timezone))
            return croniter(schedule_value, local_now).get_next(datetime).isoformat()
        except (ValueError, KeyError) as exc:
            logger.warning("Invalid cron expression %r: %s", schedule_value, exc)
            return None
    if schedule_type == "interval":
        try:
            ms = int(schedule_value)
        except (TypeError, ValueError):
            ms = 0
        if ms <= 0:
            logger.warning("Invalid interval value: %r", schedule_value)
            return None
        return datetime.fromtimestamp(now.timestamp() + ms / 1000, tz=UTC).isoformat()
    if schedule_type == "once":
        try:
            return datetime.fromisoformat(schedule_value).isoformat()
        except (TypeError, ValueError):
            logger.warning("Invalid once timestamp: %r", schedule_value)
            return None
    logger.warning("Unknown schedule type: %r", schedule_type)
    return None


def generate_task_id() -> str:
    """Task ids look like ``task-<ms>-<6 lowercase letters>``."""
    suffix = "".join(random.choices(string.ascii_lowercase, k=6))
    return f"task-{int(time.time() * 1000)}-{suffix}"


# --- Watcher ---


class IpcWatcher:
    """Drains agent-written IPC files and applies them.

    ``on_new_file`` is the notification hook; ``drain_once`` processes
    everything currently pending. A notification during a drain does not
    start a second drain, it marks the current one dirty so it runs once more.

    Args:
        ipc_base: Root IPC directory (``data/ipc``).
        deps: Injected messaging and group lookups.
        store: Task store (create_task, get_task_by_id, update_task, delete_task).
        poll_interval_s: Seconds between directory scans in ``run()``.
    """

    def __init__(
        self,
        ipc_base: Path,
        deps: IpcDeps,
        store: Any,
        poll_interval_s: float = 1.0,
    ) -> None:
        self.ipc_base = ipc_base
        self.deps = deps
        self.store = store
        self.poll_interval_s = poll_interval_s
        self._draining = False
        self._dirty = False
        self._drain_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()

    def on_new_file(self, path: Path) -> asyncio.Task[None] | None:
        """Notify the watcher that a file appeared.

        Args:
            path: The new file. Anything not ending in ``.json`` is ignored.

        Returns:
            The drain task started for this notification, or None if the file
            was ignored or a drain is already running.
        """
        if path.suffix != ".json":
            return None
        if self._draining:
            self._dirty = True
            return None
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain_until_clean())
        return self._drain_task

    async def _drain_until_clean(self) -> None:
        try:
            while True:
                self._dirty = False
                await self._drain_all()
                if not self._dirty:
                    break
        finally:
            self._draining = False

    async def drain_once(self) -> int:
        """Process every pending message and task file once.

        Returns:
            Number of files handled (delivered, applied, denied, or quarantined).
        """
        if self._draining:
            self._dirty = True
            return 0
        self._draining = True
        try:
            return await self._drain_all()
        finally:
            self._draining = False

    async def run(self) -> None:
        """Poll the IPC root until ``stop()`` is called."""
        self.ipc_base.mkdir(parents=True, exist_ok=True)
        logger.info("IPC watcher started (%s, every %.1fs)", self.ipc_base, self.poll_interval_s)
        while not self._stopped.is_set():
            pending = self.pending_files()
            if pending:
                task = self.on_new_file(pending[0])
                if task is not None:
                    await task
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval_s)
            except TimeoutError:
                pass
        logger.info("IPC watcher stopped")

    def stop(self) -> None:
        """Ask ``run()`` to return after the current pass."""
        self._stopped.set()

    def pending_files(self) -> list[Path]:
        """All ``.json`` files waiting in messages/ and tasks/ directories."""
        found: list[Path] = []
        for group_dir in self._group_dirs():
            for sub in ("messages", "tasks"):
                found.extend(sorted((group_dir / sub).glob("*.json")))
        return found

    def _group_dirs(self) -> list[Path]:
        try:
            return sorted(d for d in self.ipc_base.iterdir() if d.is_dir())
        except OSError as exc:
            logger.error("Error reading IPC directory %s: %s", self.ipc_base, exc)
            return []

    async def _drain_all(self) -> int:
        handled = 0
        registered = self.deps.registered_groups()
        for group_dir in self._group_dirs():
            source_group = group_dir.name
            for path in sorted((group_dir / "messages").glob("*.json")):
                await self._handle_file(path, source_group, registered, self._apply_message)
                handled += 1
            for path in sorted((group_dir / "tasks").glob("*.json")):
                await self._handle_file(path, source_group, registered, self._apply_task)
                handled += 1
        return handled

    async def _handle_file(
        self,
        path: Path,
        source_group: str,
        registered: dict[str, RegisteredGroup],
        apply: Callable[..., Coroutine[Any, Any, None]],
    ) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise IpcPayloadError("IPC document must be a JSON object")
            await apply(data, source_group, registered)
        except Exception as exc:
            logger.error(
                "Error processing IPC file %s from %s: %s", path.name, source_group, exc
            )
            self._quarantine(path, source_group)
            return
        path.unlink(missing_ok=True)

    def _quarantine(self, path: Path, source_group: str) -> None:
        """Move a failed file, unchanged, into the group's errors/ directory."""
        errors_dir = self.ipc_base / source_group / "errors"
        dest = errors_dir / path.name
        try:
            errors_dir.mkdir(parents=True, exist_ok=True)
            if dest.exists():
                dest = errors_dir / f"{path.parent.name}-{path.name}"
            path.rename(dest)
            logger.warning("Quarantined IPC file %s to %s", path.name, dest)
        except OSError as exc:
            logger.error("Failed to quarantine IPC file %s: %s", path, exc)

    # --- Messages ---

    async def _apply_message(
        self,
        data: dict[str, Any],
        source_group: str,
        registered: dict[str, RegisteredGroup],
    ) -> None:
        chat_jid, text = data.get("chatJid"), data.get("text")
        if data.get("type") != "message" or not isinstance(chat_jid, str) or not chat_jid:
            raise IpcPayloadError("message requires type 'message' and a chatJid")
        if not isinstance(text, str) or not text:
            raise IpcPayloadError("message requires non-empty text")

        target = registered.get(chat_jid)
        is_main = source_group == MAIN_GROUP_FOLDER
        if not (is_main or (target is not None and target.folder == source_group)):
            logger.warning(
                "Unauthorized IPC message blocked: source=%s target=%s", source_group, chat_jid
            )
            return
        await self.deps.send_message(chat_jid, text)
        logger.info("IPC message sent to %s from %s", chat_jid, source_group)

    # --- Tasks ---

    async def _apply_task(
        self,
        data: dict[str, Any],
        source_group: str,
        registered: dict[str, RegisteredGroup],
    ) -> None:
        await process_task_command(data, source_group, self.store, self.deps.timezone)


def _requester(data: dict[str, Any], source_group: str) -> tuple[str, bool] | None:
    """Resolve who is asking for a task mutation.

    The source directory is authoritative. A non-main source may not speak
    for another folder, and ``isMain: false`` in the payload drops main
    privileges.

    Returns:
        ``(folder, is_main)``, or None when the claim is spoofed.
    """
    source_is_main = source_group == MAIN_GROUP_FOLDER
    claimed = data.get("groupFolder") or source_group
    if not source_is_main and claimed != source_group:
        return None
    return claimed, source_is_main and data.get("isMain", True) is not False


async def process_task_command(
    data: dict[str, Any],
    source_group: str,
    store: Any,
    timezone: str = "UTC",
) -> None:
    """Apply one task command from a group's tasks/ directory.

    Authorization failures are logged and otherwise silent.

    Args:
        data: Parsed task document.
        source_group: Folder the file was found in.
        store: Task store.
        timezone: Timezone for cron schedules.
    """
    task_type = data.get("type")
    requester = _requester(data, source_group)
    if requester is None:
        logger.warning(
            "IPC %s denied: %s claimed groupFolder=%s",
            task_type,
            source_group,
            data.get("groupFolder"),
        )
        return
    folder, is_main = requester

    match task_type:
        case "schedule_task":
            _schedule_task(data, folder, store, timezone)
        case "pause_task":
            _set_task_status(data, folder, is_main, "paused", store)
        case "resume_task":
            _set_task_status(data, folder, is_main, "active", store)
        case "cancel_task":
            task = _authorized_task(data, folder, is_main, store, "cancel_task")
            if task is not None:
                store.delete_task(task.id)
                logger.info("Task %s cancelled by %s", task.id, folder)
        case _:
            logger.warning("Unknown IPC task type %r from %s", task_type, source_group)


def _schedule_task(data: dict[str, Any], folder: str, store: Any, timezone: str) -> None:
    prompt = data.get("prompt")
    schedule_type = data.get("schedule_type")
    schedule_value = data.get("schedule_value")
    chat_jid = data.get("chatJid")
    if not (prompt and schedule_type and schedule_value and chat_jid):
        raise IpcPayloadError(
            "schedule_task requires prompt, schedule_type, schedule_value and chatJid"
        )

    next_run = calculate_next_run(schedule_type, str(schedule_value), timezone)
    if next_run is None:
        logger.warning(
            "schedule_task from %s ignored: invalid %s schedule %r",
            folder,
            schedule_type,
            schedule_value,
        )
        return

    context_mode = data.get("context_mode")
    task = ScheduledTask(
        id=generate_task_id(),
        group_folder=folder,
        chat_jid=chat_jid,
        prompt=prompt,
        schedule_type=schedule_type,
        schedule_value=str(schedule_value),
        context_mode=context_mode if context_mode in ("group", "isolated") else "isolated",
        next_run=next_run,
        status="active",
        created_at=datetime.now(UTC).isoformat(),
    )
    store.create_task(task)
    logger.info(
        "Task %s scheduled for %s (%s %s, next run %s)",
        task.id,
        folder,
        schedule_type,
        schedule_value,
        next_run,
    )


def _authorized_task(
    data: dict[str, Any], folder: str, is_main: bool, store: Any, action: str
) -> ScheduledTask | None:
    task_id = data.get("taskId")
    if not task_id:
        raise IpcPayloadError(f"{action} requires taskId")
    task = store.get_task_by_id(task_id)
    if task is None:
        logger.warning("IPC %s: task %s not found", action, task_id)
        return None
    if not (is_main or task.group_folder == folder):
        logger.warning(
            "Unauthorized IPC %s blocked: %s attempted task %s owned by %s",
            action,
            folder,
            task_id,
            task.group_folder,
        )
        return None
    return task


def _set_task_status(
    data: dict[str, Any], folder: str, is_main: bool, status: str, store: Any
) -> None:
    action = "pause_task" if status == "paused" else "resume_task"
    task = _authorized_task(data, folder, is_main, store, action)
    if task is not None:
        store.update_task(task.id, status=status)
        logger.info("Task %s %s by %s", task.id, status, folder)


# end src/nanoclaw/ipc.py
