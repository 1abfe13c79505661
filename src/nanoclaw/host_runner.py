# start src/nanoclaw/host_runner.py
"""Host strategy for running agent turns.

Runs the agent runner entry point as a plain subprocess of the host. The
child gets an allowlisted environment only, plus NANOCLAW_* path variables
pointing at its group, global, and IPC directories. Output is not capped.

Non-main groups carry a SecurityPolicy in their AgentInput, and every run
of theirs is scanned for sandbox denials afterwards.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

from nanoclaw.config_loader import HostSecurityConfig
from nanoclaw.runner import AgentRun, AgentRunner, LaunchError, LaunchSpec
from nanoclaw.security import SecurityReporter, resolve_security
from nanoclaw.types import AgentInput, RegisteredGroup

logger = logging.getLogger(__name__)

ALLOWED_ENV_VARS = (
    "PATH",
    "HOME",
    "TERM",
    "SHELL",
    "USER",
    "LANG",
    "LC_ALL",
    "CLAUDE_CODE_OAUTH_TOKEN",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "CLAUDE_CODE_USE_BEDROCK",
    "AWS_REGION",
    "AWS_BEDROCK_CROSS_REGION",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "ASSISTANT_NAME",
)

PATH_ENV_VARS = (
    "NANOCLAW_GROUP_DIR",
    "NANOCLAW_GLOBAL_DIR",
    "NANOCLAW_IPC_DIR",
    "CLAUDE_CONFIG_DIR",
)


def build_host_env(
    group_dir: Path,
    global_dir: Path,
    ipc_dir: Path,
    parent_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for a host-mode agent subprocess.

    Only ALLOWED_ENV_VARS are copied from the parent environment.

    Args:
        group_dir: The group's workspace.
        global_dir: Shared global directory.
        ipc_dir: The group's IPC directory.
        parent_env: Environment to copy from. Defaults to os.environ.
    """
    source = os.environ if parent_env is None else parent_env
    env = {name: source[name] for name in ALLOWED_ENV_VARS if name in source}
    home = env.get("HOME") or str(Path.home())
    env.update(
        {
            "NANOCLAW_MODE": "host",
            "NANOCLAW_GROUP_DIR": str(group_dir),
            "NANOCLAW_GLOBAL_DIR": str(global_dir),
            "NANOCLAW_IPC_DIR": str(ipc_dir),
            "CLAUDE_CONFIG_DIR": str(Path(home) / ".claude"),
        }
    )
    return env


class HostRunner(AgentRunner):
    """Runs each agent turn as a native subprocess.

    Args:
        entry_point: Agent runner script.
        interpreter: Python used to run it. Defaults to sys.executable.
        host_security: The ``hostSecurity`` config block.
        reporter: Sandbox violation reporter, or None to skip scanning.
        **kwargs: Passed to AgentRunner.
    """

    mode = "host"
    label = "Host agent"
    log_prefix = "host"

    def __init__(
        self,
        *,
        entry_point: Path,
        interpreter: str | None = None,
        host_security: HostSecurityConfig | None = None,
        reporter: SecurityReporter | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.entry_point = entry_point
        self.interpreter = interpreter or sys.executable
        self.host_security = host_security
        self.reporter = reporter

    def prepare_input(self, group: RegisteredGroup, agent_input: AgentInput) -> AgentInput:
        agent_input = super().prepare_input(group, agent_input)
        policy = resolve_security(agent_input.is_main, self.host_security)
        if policy is None:
            return agent_input
        return agent_input.model_copy(update={"security": policy})

    def launch(self, group: RegisteredGroup, agent_input: AgentInput) -> LaunchSpec:
        if not self.entry_point.is_file():
            raise LaunchError(f"Agent entry point not found: {self.entry_point}")

        group_dir = self.groups_dir / group.folder
        global_dir = self.groups_dir / "global"
        ipc_dir = self.ipc_base / group.folder
        for directory in (group_dir, global_dir):
            directory.mkdir(parents=True, exist_ok=True)
        for sub in ("messages", "tasks", "errors"):
            (ipc_dir / sub).mkdir(parents=True, exist_ok=True)

        env = build_host_env(group_dir, global_dir, ipc_dir)
        security = agent_input.security
        logger.debug(
            "Host agent for %s: sandbox=%s tools=%s",
            group.folder,
            security.sandbox if security else "off (main)",
            security.tools if security and security.tools else "all",
        )
        return LaunchSpec(
            argv=[self.interpreter, str(self.entry_point)],
            cwd=group_dir,
            env=env,
            details=[
                "=== Environment (paths) ===",
                *(f"{name}={env[name]}" for name in PATH_ENV_VARS),
                f"NANOCLAW_MODE={env['NANOCLAW_MODE']}",
            ],
        )

    def inspect_run(
        self, group: RegisteredGroup, agent_input: AgentInput, run: AgentRun
    ) -> list[str]:
        if self.reporter is None or agent_input.is_main or agent_input.security is None:
            return []
        if self.reporter.check(group, run.stdout, run.stderr):
            return ["=== Sandbox ===", "Violation detected; see sandbox-violation log"]
        return []


# end src/nanoclaw/host_runner.py
