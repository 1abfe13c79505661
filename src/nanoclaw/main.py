# start src/nanoclaw/main.py
"""NanoClaw orchestrator entry point.

Wires the messaging channel, the per-group queue, the agent runner, and the
IPC watcher together, and persists sessions and registered groups.

Usage:
    python -m nanoclaw.main
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import logging.handlers
import signal
import sys
from pathlib import Path

from nanoclaw.channels.base import Channel
from nanoclaw.config import AppConfig, Credentials, load_config, load_credentials
from nanoclaw.config_loader import CONFIG_FILENAME, NanoClawConfig, load_nanoclaw_config_or_exit
from nanoclaw.container import cleanup_orphans, ensure_container_system, ensure_image
from nanoclaw.db.operations import TaskStore
from nanoclaw.ipc import IpcDeps, IpcWatcher, write_groups_snapshot, write_tasks_snapshot
from nanoclaw.queue import GroupQueue
from nanoclaw.router import format_messages, format_outbound, has_trigger, needs_trigger
from nanoclaw.runner import AgentRunner, create_runner
from nanoclaw.supervisor import ProcessSupervisor
from nanoclaw.types import (
    AgentInput,
    AgentOutput,
    AvailableGroup,
    NewMessage,
    RegisteredGroup,
)

logger = logging.getLogger(__name__)


class NoOpChannel(Channel):
    """Channel used when no messaging adapter is attached. Outbound text is logged."""

    @property
    def name(self) -> str:
        return "noop"

    async def connect(self) -> None:
        logger.warning("No messaging channel attached; outbound messages are only logged")

    async def send_message(self, jid: str, text: str) -> None:
        logger.info("[noop] -> %s: %s", jid, text)

    def is_connected(self) -> bool:
        return True

    def owns_jid(self, jid: str) -> bool:
        return True

    async def disconnect(self) -> None:
        return


class NanoClawOrchestrator:
    """Ties the subsystems together for one host process.

    Configuration objects are passed in explicitly; nothing is read from
    module globals.

    Args:
        config: Operator configuration (config.yml).
        nanoclaw_config: Execution mode, host security, and MCP servers.
        credentials: Agent credentials, delivered to agents on stdin.
        project_root: Root that relative paths in ``config`` resolve against.
        channel: Messaging adapter. Defaults to NoOpChannel.
        store: Persistence. Defaults to ``<store_dir>/messages.db``.
        runner: Agent runner. Defaults to the strategy selected by
            ``executionMode``.
    """

    def __init__(
        self,
        config: AppConfig,
        nanoclaw_config: NanoClawConfig,
        credentials: Credentials,
        *,
        project_root: Path,
        channel: Channel | None = None,
        store: TaskStore | None = None,
        runner: AgentRunner | None = None,
    ) -> None:
        self.config = config
        self.nanoclaw_config = nanoclaw_config
        self.project_root = project_root
        self.groups_dir = project_root / config.paths.groups_dir
        self.data_dir = project_root / config.paths.data_dir
        self.ipc_base = self.data_dir / "ipc"

        self.channel: Channel = channel or NoOpChannel()
        self.store = store or TaskStore(project_root / config.paths.store_dir / "messages.db")
        self.supervisor = ProcessSupervisor(
            max_concurrent=config.container.max_concurrent,
            runtime=config.container.runtime,
            kill_grace_s=config.container.kill_grace_s,
        )
        self.runner = runner or create_runner(
            config,
            nanoclaw_config,
            project_root=project_root,
            groups_dir=self.groups_dir,
            data_dir=self.data_dir,
            supervisor=self.supervisor,
            secrets=credentials.as_secrets(),
            main_group_jid=self.main_group_jid,
        )
        self.queue = GroupQueue(
            max_concurrent=config.container.max_concurrent,
            process_messages_fn=self._process_group_messages,
        )
        self.watcher = IpcWatcher(
            self.ipc_base,
            IpcDeps(
                send_message=self._send,
                registered_groups=lambda: self.registered_groups,
                timezone=config.timezone,
            ),
            self.store,
            poll_interval_s=config.timing.ipc_poll_interval_s,
        )

        self.sessions: dict[str, str] = {}  # group_folder -> session_id
        self.registered_groups: dict[str, RegisteredGroup] = {}  # jid -> group
        self._pending: dict[str, list[NewMessage]] = {}  # jid -> unprocessed messages
        self._stopped = asyncio.Event()
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the subsystems and block until shutdown."""
        if self.nanoclaw_config.execution_mode == "container":
            self._prepare_container_runtime()

        self.load_state()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

        await self.channel.connect()
        watcher_task = asyncio.create_task(self.watcher.run())
        logger.info(
            "NanoClaw running (mode=%s, channel=%s, groups=%d)",
            self.nanoclaw_config.execution_mode,
            self.channel.name,
            len(self.registered_groups),
        )
        await self._stopped.wait()
        await watcher_task

    def _prepare_container_runtime(self) -> None:
        runtime = self.config.container.runtime
        ensure_container_system(runtime)
        cleanup_orphans(runtime)
        if not ensure_image(
            self.config.container.image, runtime, self.project_root / "container"
        ):
            logger.warning(
                "Agent image %s unavailable; container runs will fail until it is built",
                self.config.container.image,
            )

    def _on_signal(self, sig: signal.Signals) -> None:
        asyncio.create_task(self.shutdown(sig.name))

    async def shutdown(self, reason: str = "requested") -> None:
        """Stop agents, the queue, the watcher, and the channel. Idempotent."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("NanoClaw shutting down (%s)...", reason)

        self.watcher.stop()
        await self.supervisor.shutdown()
        await self.queue.shutdown(timeout_s=self.config.container.kill_grace_s + 1.0)
        try:
            await self.channel.disconnect()
        except Exception as exc:
            logger.warning("Channel disconnect error: %s", exc)
        self.store.close()

        logger.info("NanoClaw shutdown complete")
        self._stopped.set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def load_state(self) -> None:
        """Load sessions and registered groups from the store."""
        self.sessions = self.store.get_all_sessions()
        self.registered_groups = self.store.get_all_registered_groups()
        logger.info(
            "State loaded: %d registered group(s), %d session(s)",
            len(self.registered_groups),
            len(self.sessions),
        )

    def register_group(self, jid: str, group: RegisteredGroup) -> None:
        """Persist a registered group and create its workspace."""
        self.store.set_registered_group(jid, group)
        self.registered_groups[jid] = group
        (self.groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered: %s -> %s", jid, group.folder)

    def main_group_jid(self) -> str | None:
        """Chat id of the main group, if one is registered."""
        for jid, group in self.registered_groups.items():
            if group.is_main:
                return jid
        return None

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_inbound(self, chat_jid: str, messages: list[NewMessage]) -> bool:
        """Buffer messages from a chat and request a turn if warranted.

        Returns:
            True if a turn was requested.
        """
        group = self.registered_groups.get(chat_jid)
        if group is None:
            logger.debug(
                "Ignoring %d message(s) from unregistered chat %s", len(messages), chat_jid
            )
            return False
        buffered = self._pending.setdefault(chat_jid, [])
        buffered.extend(messages)
        if needs_trigger(group) and not has_trigger(buffered, self.config.trigger_pattern):
            return False
        self.queue.enqueue(chat_jid)
        return True

    async def _process_group_messages(self, chat_jid: str) -> bool:
        """Run one turn over a chat's buffered messages.

        Returns:
            False when the turn failed; the messages are put back for the retry.
        """
        group = self.registered_groups.get(chat_jid)
        messages = self._pending.pop(chat_jid, [])
        if group is None or not messages:
            return True

        await self.channel.set_typing(chat_jid, True)
        try:
            output = await self.run_agent(group, format_messages(messages), chat_jid)
        finally:
            await self.channel.set_typing(chat_jid, False)

        if output.status == "error":
            # Older messages go back in front of anything that arrived meanwhile.
            self._pending[chat_jid] = messages + self._pending.get(chat_jid, [])
            return False
        if output.result:
            await self._send(chat_jid, output.result)
        return True

    # ------------------------------------------------------------------
    # Agent turns
    # ------------------------------------------------------------------

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        is_scheduled_task: bool = False,
    ) -> AgentOutput:
        """Run one agent turn for a group and persist its new session.

        Args:
            group: The group the turn is for.
            prompt: Prompt text (formatted messages or a task prompt).
            chat_jid: Chat the turn answers.
            is_scheduled_task: Whether a scheduled task triggered the turn.
        """
        await self._write_snapshots(group)
        agent_input = AgentInput(
            prompt=prompt,
            session_id=self.sessions.get(group.folder),
            group_folder=group.folder,
            chat_jid=chat_jid,
            is_main=group.is_main,
            is_scheduled_task=is_scheduled_task,
        )
        output = await self.runner.run(group, agent_input)
        if output.new_session_id:
            self.sessions[group.folder] = output.new_session_id
            self.store.set_session(group.folder, output.new_session_id)
        return output

    async def _write_snapshots(self, group: RegisteredGroup) -> None:
        available = await self._available_groups() if group.is_main else []
        try:
            write_tasks_snapshot(
                self.ipc_base, group.folder, group.is_main, self.store.get_all_tasks()
            )
            write_groups_snapshot(self.ipc_base, group.folder, group.is_main, available)
        except OSError as exc:
            logger.warning("Could not write IPC snapshots for %s: %s", group.folder, exc)

    async def _available_groups(self) -> list[AvailableGroup]:
        groups = await self.channel.get_available_groups()
        return [
            g.model_copy(update={"is_registered": g.jid in self.registered_groups})
            for g in groups
        ]

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, chat_jid: str, text: str) -> None:
        """Clean up agent text and deliver it through the channel."""
        assistant = self.config.assistant
        prefix = "" if assistant.has_own_number else f"{assistant.name}: "
        outbound = format_outbound(text, prefix)
        if not outbound:
            return
        await self.channel.send_message(chat_jid, outbound)


# ------------------------------------------------------------------
# Logging setup
# ------------------------------------------------------------------


def setup_logging(config: AppConfig, project_root: Path | None = None) -> None:
    """Configure stdlib logging from application config.

    Attaches a stderr handler and, when ``config.logging.file`` is set, a
    RotatingFileHandler. A relative log file resolves against ``project_root``
    (or the working directory).
    """
    log_level = logging.getLevelName(config.logging.level)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if not config.logging.file:
        return
    log_file = Path(config.logging.file)
    if not log_file.is_absolute():
        log_file = (project_root or Path.cwd()) / log_file
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        logger.warning("Could not open log file %s: %s", log_file, exc)
        return
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    logger.debug("Log file: %s", log_file)


# ------------------------------------------------------------------
# Entry points
# ------------------------------------------------------------------


async def main_async(project_root: Path | None = None) -> None:
    """Load configuration and run the orchestrator until shutdown."""
    # src/nanoclaw/main.py -> project root
    root = project_root or Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yml")
    setup_logging(config, root)
    nanoclaw_config = load_nanoclaw_config_or_exit(root / CONFIG_FILENAME)
    credentials = load_credentials(root / "credentials.yml")

    orchestrator = NanoClawOrchestrator(
        config, nanoclaw_config, credentials, project_root=root
    )
    await orchestrator.run()


def main() -> None:
    """Synchronous entry point for ``python -m nanoclaw.main``."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main_async())


if __name__ == "__main__":
    main()
# end src/nanoclaw/main.py
