# start src/nanoclaw/runner.py
"""Agent runner contract shared by the container and host strategies.

One call to ``AgentRunner.run()`` spawns one agent process for one turn:
the AgentInput goes in on stdin, the AgentOutput comes back between two
sentinel markers on stdout. ``run()`` never raises; spawn errors, non-zero
exits, timeouts, and unparsable output all become ``status="error"``.

Each invocation is tracked by an ``AgentRun`` state machine::

    IDLE -> SPAWNING -> RUNNING -> COMPLETED | TIMED_OUT
    IDLE | SPAWNING -> SPAWN_FAILED
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from nanoclaw.supervisor import ProcessHandle, ProcessSupervisor
from nanoclaw.types import AgentInput, AgentOutput, RegisteredGroup

if TYPE_CHECKING:
    from nanoclaw.config import AppConfig
    from nanoclaw.config_loader import NanoClawConfig

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---NANOCLAW_OUTPUT_END---"

READ_CHUNK_BYTES = 4096
STDERR_TAIL_CHARS = 200


class RunState(enum.Enum):
    """Lifecycle of one agent invocation."""

    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"


_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.SPAWNING, RunState.SPAWN_FAILED}),
    RunState.SPAWNING: frozenset({RunState.RUNNING, RunState.SPAWN_FAILED}),
    RunState.RUNNING: frozenset({RunState.COMPLETED, RunState.TIMED_OUT}),
    RunState.COMPLETED: frozenset(),
    RunState.TIMED_OUT: frozenset(),
    RunState.SPAWN_FAILED: frozenset(),
}


class RunStateError(RuntimeError):
    """An AgentRun was driven through a transition it does not allow."""


class LaunchError(Exception):
    """A runner strategy could not prepare the agent process."""


def parse_agent_output(stdout: str) -> AgentOutput:
    """Extract the AgentOutput from an agent's stdout.

    The JSON between the first start marker and the next end marker is the
    result. Without markers the last non-empty line is tried instead.

    Returns:
        The parsed output, or an error output describing the parse failure.
    """
    start = stdout.find(OUTPUT_START_MARKER)
    end = stdout.find(OUTPUT_END_MARKER, start + len(OUTPUT_START_MARKER)) if start != -1 else -1
    if start != -1 and end != -1:
        json_str = stdout[start + len(OUTPUT_START_MARKER) : end].strip()
    else:
        lines = [line for line in stdout.splitlines() if line.strip()]
        json_str = lines[-1].strip() if lines else ""

    try:
        return AgentOutput.model_validate_json(json_str)
    except ValueError as exc:
        return AgentOutput.failure(f"Failed to parse agent output: {exc}")


class AgentRun:
    """State and accumulated output of one agent invocation.

    Feed it stdout/stderr text as it arrives and drive the transitions; call
    ``result()`` once it has reached a final state.

    Args:
        label: Human label used in error messages (e.g. ``Host agent``).
        max_output_size: Stdout cap in characters, or None for no cap.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        label: str,
        max_output_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.label = label
        self.max_output_size = max_output_size
        self._clock = clock
        self.state = RunState.IDLE
        self.pid: int | None = None
        self.exit_code: int | None = None
        self.timeout_ms: int | None = None
        self.spawn_error: str | None = None
        self.stdout_truncated = False
        self.stderr_lines: list[str] = []
        self._stdout_parts: list[str] = []
        self._stdout_len = 0
        self._stderr_partial = ""
        self._started_at: float | None = None
        self._ended_at: float | None = None

    def _transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RunStateError(
                f"{self.label}: cannot go from {self.state.value} to {target.value}"
            )
        self.state = target

    @property
    def finished(self) -> bool:
        """True once the run reached a final state."""
        return not _TRANSITIONS[self.state]

    @property
    def stdout(self) -> str:
        """Accumulated (possibly truncated) stdout."""
        return "".join(self._stdout_parts)

    @property
    def stderr(self) -> str:
        """Accumulated stderr, including a trailing partial line."""
        lines = self.stderr_lines + ([self._stderr_partial] if self._stderr_partial else [])
        return "\n".join(lines)

    @property
    def duration_ms(self) -> int:
        """Milliseconds from spawn to the final state (or now)."""
        if self._started_at is None:
            return 0
        end = self._ended_at if self._ended_at is not None else self._clock()
        return int((end - self._started_at) * 1000)

    def begin_spawn(self) -> None:
        """IDLE -> SPAWNING."""
        self._transition(RunState.SPAWNING)
        self._started_at = self._clock()

    def spawned(self, pid: int | None) -> None:
        """SPAWNING -> RUNNING."""
        self._transition(RunState.RUNNING)
        self.pid = pid

    def spawn_failed(self, message: str) -> None:
        """IDLE or SPAWNING -> SPAWN_FAILED."""
        self._transition(RunState.SPAWN_FAILED)
        self.spawn_error = message
        self._ended_at = self._clock()

    def feed_stdout(self, text: str) -> None:
        """Append stdout text, honoring the output cap."""
        if self.stdout_truncated or not text:
            return
        if self.max_output_size is not None:
            remaining = self.max_output_size - self._stdout_len
            if len(text) > remaining:
                text = text[:remaining]
                self.stdout_truncated = True
                logger.warning(
                    "%s stdout truncated at %d characters", self.label, self.max_output_size
                )
        self._stdout_parts.append(text)
        self._stdout_len += len(text)

    def feed_stderr(self, text: str) -> list[str]:
        """Append stderr text.

        Returns:
            The lines completed by this chunk.
        """
        pieces = (self._stderr_partial + text).split("\n")
        self._stderr_partial = pieces.pop()
        completed = [line.rstrip("\r") for line in pieces]
        self.stderr_lines.extend(completed)
        return completed

    def timed_out(self, timeout_ms: int) -> None:
        """RUNNING -> TIMED_OUT."""
        self._transition(RunState.TIMED_OUT)
        self.timeout_ms = timeout_ms

    def exited(self, exit_code: int | None) -> None:
        """Record the exit code; RUNNING -> COMPLETED unless already timed out."""
        self.exit_code = exit_code
        if self.state is RunState.RUNNING:
            self._transition(RunState.COMPLETED)
        self._ended_at = self._clock()

    def result(self) -> AgentOutput:
        """The AgentOutput for a finished run.

        Raises:
            RunStateError: If the run has not reached a final state.
        """
        match self.state:
            case RunState.SPAWN_FAILED:
                return AgentOutput.failure(self.spawn_error or f"{self.label} failed to start")
            case RunState.TIMED_OUT:
                return AgentOutput.failure(f"{self.label} timed out after {self.timeout_ms}ms")
            case RunState.COMPLETED:
                if self.exit_code != 0:
                    tail = self.stderr[-STDERR_TAIL_CHARS:]
                    return AgentOutput.failure(
                        f"{self.label} exited with code {self.exit_code}: {tail}"
                    )
                return parse_agent_output(self.stdout)
            case _:
                raise RunStateError(f"{self.label}: no result in state {self.state.value}")


@dataclass
class LaunchSpec:
    """Everything needed to spawn one agent process.

    Attributes:
        argv: Program and arguments.
        cwd: Working directory, or None to inherit.
        env: Full environment, or None to inherit.
        container_name: Container name, or None for a host subprocess.
        details: Extra lines for verbose run logs (mounts, path variables).
    """

    argv: list[str]
    cwd: Path | None = None
    env: dict[str, str] | None = None
    container_name: str | None = None
    details: list[str] = field(default_factory=list)


class AgentRunner(ABC):
    """Base class for the agent execution strategies.

    Args:
        groups_dir: Root of the per-group workspaces.
        data_dir: Root of IPC and session state.
        supervisor: Shared process registry and concurrency ceiling.
        default_timeout_ms: Timeout when the group has no override.
        kill_grace_s: Wait between graceful stop and kill on timeout.
        verbose: Write full detail into every run log.
        mcp_servers: Raw MCP server definitions attached to every AgentInput.
        secrets: Credentials delivered on stdin, never logged.
    """

    mode: str = ""
    label: str = "Agent"
    log_prefix: str = "agent"
    max_output_size: int | None = None

    def __init__(
        self,
        *,
        groups_dir: Path,
        data_dir: Path,
        supervisor: ProcessSupervisor,
        default_timeout_ms: int = 1800000,
        kill_grace_s: float | None = None,
        verbose: bool = False,
        mcp_servers: Mapping[str, dict[str, Any]] | None = None,
        secrets: Mapping[str, str] | None = None,
    ) -> None:
        self.groups_dir = groups_dir
        self.data_dir = data_dir
        self.supervisor = supervisor
        self.default_timeout_ms = default_timeout_ms
        self.kill_grace_s = supervisor.kill_grace_s if kill_grace_s is None else kill_grace_s
        self.verbose = verbose
        self.mcp_servers = dict(mcp_servers) if mcp_servers else None
        self.secrets = dict(secrets) if secrets else None

    @property
    def ipc_base(self) -> Path:
        """Root IPC directory."""
        return self.data_dir / "ipc"

    def timeout_ms_for(self, group: RegisteredGroup) -> int:
        """Per-group timeout override, falling back to the default."""
        if group.container_config and group.container_config.timeout_ms:
            return group.container_config.timeout_ms
        return self.default_timeout_ms

    def prepare_input(self, group: RegisteredGroup, agent_input: AgentInput) -> AgentInput:
        """Attach MCP servers and secrets. Strategies add their own fields."""
        update: dict[str, Any] = {}
        if self.mcp_servers and agent_input.mcp_servers is None:
            update["mcp_servers"] = self.mcp_servers
        if self.secrets and agent_input.secrets is None:
            update["secrets"] = self.secrets
        return agent_input.model_copy(update=update) if update else agent_input

    @abstractmethod
    def launch(self, group: RegisteredGroup, agent_input: AgentInput) -> LaunchSpec:
        """Build the process launch for one turn.

        Raises:
            LaunchError: If the environment cannot be prepared.
        """

    def inspect_run(
        self, group: RegisteredGroup, agent_input: AgentInput, run: AgentRun
    ) -> list[str]:
        """Post-run hook. Returns extra lines for the run log."""
        return []

    async def run(self, group: RegisteredGroup, agent_input: AgentInput) -> AgentOutput:
        """Run one agent turn for ``group``.

        Returns:
            The agent's output, or an error output. Never raises.
        """
        run = AgentRun(self.label, self.max_output_size)
        try:
            return await self._run(group, agent_input, run)
        except Exception as exc:
            logger.exception("Unexpected error running agent for %s", group.folder)
            if not run.finished:
                return AgentOutput.failure(f"{self.label} error: {exc}")
            return run.result()

    async def _run(
        self, group: RegisteredGroup, agent_input: AgentInput, run: AgentRun
    ) -> AgentOutput:
        agent_input = self.prepare_input(group, agent_input)
        try:
            spec = self.launch(group, agent_input)
        except LaunchError as exc:
            run.spawn_failed(str(exc))
            logger.error("Cannot start agent for %s: %s", group.folder, exc)
            return run.result()

        if not self.supervisor.reserve():
            run.spawn_failed(f"Concurrency limit reached ({self.supervisor.active_count} running)")
            logger.warning("Rejected agent run for %s: %s", group.folder, run.spawn_error)
            return run.result()

        timeout_ms = self.timeout_ms_for(group)
        logger.info(
            "Spawning %s for %s (session=%s, timeout=%dms)",
            self.label.lower(),
            group.folder,
            agent_input.session_id or "new",
            timeout_ms,
        )
        run.begin_spawn()
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.env,
            )
        except Exception as exc:
            # OSError for a missing binary, ValueError for a NUL in argv or env.
            self.supervisor.release()
            run.spawn_failed(f"{self.label} spawn error: {exc}")
            logger.error("Failed to spawn agent for %s: %s", group.folder, exc)
            self._write_log(group, agent_input, spec, run, run.result(), [])
            return run.result()

        handle = ProcessHandle(
            process=proc, container_name=spec.container_name, group_folder=group.folder
        )
        self.supervisor.register(handle)
        run.spawned(proc.pid)
        try:
            payload = agent_input.to_wire().encode()
            pump = asyncio.create_task(self._communicate(proc, run, group, payload))
            done, _ = await asyncio.wait({pump}, timeout=timeout_ms / 1000)
            if not done:
                run.timed_out(timeout_ms)
                logger.error(
                    "%s for %s timed out after %dms, stopping", self.label, group.folder, timeout_ms
                )
                await self.supervisor.terminate(handle, self.kill_grace_s)
                done, _ = await asyncio.wait({pump}, timeout=self.kill_grace_s + 1.0)
                if not done:
                    pump.cancel()
            exit_code = await pump if done else proc.returncode
        finally:
            self.supervisor.unregister(handle)

        run.exited(exit_code)
        output = run.result()
        extra = self.inspect_run(group, agent_input, run)
        self._write_log(group, agent_input, spec, run, output, extra)

        if output.status == "ok":
            logger.info(
                "%s for %s completed in %dms", self.label, group.folder, run.duration_ms
            )
        else:
            logger.error("%s for %s failed: %s", self.label, group.folder, output.error)
        return output

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        run: AgentRun,
        group: RegisteredGroup,
        payload: bytes,
    ) -> int:
        """Write stdin, read both output streams to EOF, and reap the process."""

        async def write_stdin() -> None:
            assert proc.stdin is not None
            try:
                proc.stdin.write(payload)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning("Agent for %s closed stdin early: %s", group.folder, exc)
            finally:
                proc.stdin.close()

        async def read_stdout() -> None:
            assert proc.stdout is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while chunk := await proc.stdout.read(READ_CHUNK_BYTES):
                run.feed_stdout(decoder.decode(chunk))
            run.feed_stdout(decoder.decode(b"", final=True))

        async def read_stderr() -> None:
            assert proc.stderr is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while chunk := await proc.stderr.read(READ_CHUNK_BYTES):
                for line in run.feed_stderr(decoder.decode(chunk)):
                    if line:
                        logger.debug("[%s] %s", group.folder, line)

        await asyncio.gather(write_stdin(), read_stdout(), read_stderr())
        return await proc.wait()

    def _write_log(
        self,
        group: RegisteredGroup,
        agent_input: AgentInput,
        spec: LaunchSpec,
        run: AgentRun,
        output: AgentOutput,
        extra: list[str],
    ) -> Path | None:
        """Write the per-run log under ``<groups_dir>/<folder>/logs``."""
        now = datetime.now(UTC)
        logs_dir = self.groups_dir / group.folder / "logs"
        log_file = logs_dir / f"{self.log_prefix}-{now.strftime('%Y%m%dT%H%M%S%f')}.log"
        timed_out = run.state is RunState.TIMED_OUT
        title = f"=== {self.label} Run Log{' (TIMEOUT)' if timed_out else ''} ==="
        lines = [
            title,
            f"Timestamp: {now.isoformat()}",
            f"Group: {group.name}",
            f"Folder: {group.folder}",
            f"IsMain: {agent_input.is_main}",
            f"Mode: {self.mode}",
            f"State: {run.state.value}",
            f"Duration: {run.duration_ms}ms",
            f"Exit Code: {run.exit_code}",
            f"Status: {output.status}",
        ]
        if output.error:
            lines.append(f"Error: {output.error}")
        if self.max_output_size is not None:
            lines.append(f"Stdout Truncated: {run.stdout_truncated}")
        lines.append("")

        if self.verbose or output.status == "error":
            lines += [
                "=== Input ===",
                agent_input.to_log(),
                "",
                "=== Command ===",
                " ".join(spec.argv),
                "",
                *spec.details,
                "",
                "=== Stderr ===",
                run.stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if run.stdout_truncated else ''} ===",
                run.stdout,
            ]
        else:
            lines += [
                f"Prompt length: {len(agent_input.prompt)} chars",
                f"Session ID: {agent_input.session_id or 'new'}",
            ]
        if extra:
            lines += ["", *extra]

        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            log_file.write_text("\n".join(lines) + "\n")
        except OSError as exc:
            logger.warning("Failed to write run log for %s: %s", group.folder, exc)
            return None
        logger.debug("Run log written to %s", log_file)
        return log_file


def create_runner(
    config: AppConfig,
    nanoclaw_config: NanoClawConfig,
    *,
    project_root: Path,
    groups_dir: Path,
    data_dir: Path,
    supervisor: ProcessSupervisor,
    secrets: Mapping[str, str] | None = None,
    main_group_jid: Callable[[], str | None] = lambda: None,
) -> AgentRunner:
    """Build the runner strategy selected by ``executionMode``."""
    common: dict[str, Any] = {
        "groups_dir": groups_dir,
        "data_dir": data_dir,
        "supervisor": supervisor,
        "default_timeout_ms": config.container.timeout_ms,
        "kill_grace_s": config.container.kill_grace_s,
        "verbose": config.logging.verbose,
        "mcp_servers": nanoclaw_config.raw_mcp_servers(),
        "secrets": secrets,
    }
    if nanoclaw_config.execution_mode == "host":
        from nanoclaw.host_runner import HostRunner
        from nanoclaw.security import SecurityReporter

        return HostRunner(
            entry_point=project_root / config.host.agent_runner,
            interpreter=config.host.python,
            host_security=nanoclaw_config.host_security,
            reporter=SecurityReporter(
                groups_dir=groups_dir,
                ipc_base=data_dir / "ipc",
                main_group_jid=main_group_jid,
            ),
            **common,
        )

    from nanoclaw.container import ContainerRunner

    return ContainerRunner(
        project_root=project_root,
        image=config.container.image,
        runtime=config.container.runtime,
        max_output_size=config.container.max_output_size_bytes,
        **common,
    )


# end src/nanoclaw/runner.py
