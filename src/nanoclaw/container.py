# start src/nanoclaw/container.py
"""Container strategy for running agent turns.

Each turn runs ``<runtime> run -i --rm`` against the agent image with the
group's workspace, session state, and IPC directory bind-mounted. The agent
runner sources are mounted read-only so edits take effect without a rebuild.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Any

from nanoclaw.runner import AgentRunner, LaunchSpec
from nanoclaw.types import AgentInput, RegisteredGroup, VolumeMount

logger = logging.getLogger(__name__)

CONTAINER_NAME_PREFIX = "nanoclaw-"


def build_volume_mounts(
    group: RegisteredGroup,
    is_main: bool,
    groups_dir: Path,
    data_dir: Path,
    project_root: Path,
) -> list[VolumeMount]:
    """Build the bind mounts for one agent container.

    The main group also gets the project root read-write; other groups get
    the shared global directory read-only when it exists.

    Args:
        group: The group whose agent is being started.
        is_main: Whether this is the main group.
        groups_dir: Absolute path to the groups/ directory.
        data_dir: Absolute path to the data/ directory.
        project_root: Absolute path to the project root.

    Returns:
        Mounts in the order they are passed to the runtime.
    """
    mounts: list[VolumeMount] = []

    if is_main:
        mounts.append(VolumeMount(host_path=str(project_root), container_path="/workspace/project"))

    group_dir = groups_dir / group.folder
    group_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(host_path=str(group_dir), container_path="/workspace/group"))

    global_dir = groups_dir / "global"
    if not is_main and global_dir.exists():
        mounts.append(
            VolumeMount(
                host_path=str(global_dir), container_path="/workspace/global", readonly=True
            )
        )

    sessions_dir = data_dir / "sessions" / group.folder / ".claude"
    sessions_dir.mkdir(parents=True, exist_ok=True)
    _ensure_settings_file(sessions_dir)
    mounts.append(VolumeMount(host_path=str(sessions_dir), container_path="/home/node/.claude"))

    ipc_dir = data_dir / "ipc" / group.folder
    for sub in ("messages", "tasks", "errors"):
        (ipc_dir / sub).mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(host_path=str(ipc_dir), container_path="/workspace/ipc"))

    mounts.append(
        VolumeMount(
            host_path=str(project_root / "container" / "agent-runner" / "src"),
            container_path="/app/src",
            readonly=True,
        )
    )
    # The agent imports nanoclaw.mcp_filter from here.
    mounts.append(
        VolumeMount(
            host_path=str(project_root / "src" / "nanoclaw"),
            container_path="/app/src/nanoclaw",
            readonly=True,
        )
    )
    return mounts


def _ensure_settings_file(sessions_dir: Path) -> None:
    """Create the agent settings.json in a group's session directory if absent."""
    settings_file = sessions_dir / "settings.json"
    if settings_file.exists():
        return
    settings = {
        "env": {
            "CLAUDE_CODE_ADDITIONAL_DIRECTORIES_CLAUDE_MD": "1",
            "CLAUDE_CODE_DISABLE_AUTO_MEMORY": "0",
        }
    }
    settings_file.write_text(json.dumps(settings, indent=2) + "\n")


def build_container_args(
    mounts: list[VolumeMount],
    container_name: str,
    image: str,
    runtime: str = "container",
) -> list[str]:
    """Build the container CLI invocation.

    Read-only mounts use ``--mount ...,readonly``; the rest use ``-v``.
    """
    args = [runtime, "run", "-i", "--rm", "--name", container_name]
    for mount in mounts:
        if mount.readonly:
            args += [
                "--mount",
                f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
            ]
        else:
            args += ["-v", f"{mount.host_path}:{mount.container_path}"]
    args += ["-e", "NANOCLAW_MODE=container", image]
    return args


def container_name_for(group_folder: str) -> str:
    """Unique container name for a turn, e.g. ``nanoclaw-family-chat-1718000000000``."""
    safe = re.sub(r"[^a-zA-Z0-9-]", "-", group_folder)
    return f"{CONTAINER_NAME_PREFIX}{safe}-{int(time.time() * 1000)}"


class ContainerRunner(AgentRunner):
    """Runs each agent turn in a fresh container.

    Args:
        project_root: Absolute path to the project root.
        image: Default image; groups may override it.
        runtime: Container CLI binary.
        max_output_size: Stdout cap for container runs.
        **kwargs: Passed to AgentRunner.
    """

    mode = "container"
    label = "Container"
    log_prefix = "container"

    def __init__(
        self,
        *,
        project_root: Path,
        image: str = "nanoclaw-agent:latest",
        runtime: str = "container",
        max_output_size: int = 10485760,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.project_root = project_root
        self.image = image
        self.runtime = runtime
        self.max_output_size = max_output_size

    def launch(self, group: RegisteredGroup, agent_input: AgentInput) -> LaunchSpec:
        mounts = build_volume_mounts(
            group, agent_input.is_main, self.groups_dir, self.data_dir, self.project_root
        )
        image = (group.container_config and group.container_config.image) or self.image
        name = container_name_for(group.folder)
        logger.debug("Container %s for %s uses %d mounts", name, group.folder, len(mounts))
        return LaunchSpec(
            argv=build_container_args(mounts, name, image, self.runtime),
            container_name=name,
            details=[
                "=== Mounts ===",
                *(
                    f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                    for m in mounts
                ),
            ],
        )


# --- Runtime management (startup) ---


def ensure_container_system(runtime: str = "container") -> None:
    """Check that the container runtime is available, starting it if needed.

    Raises:
        RuntimeError: If the runtime cannot be found or started.
    """
    try:
        subprocess.run(
            [runtime, "system", "status"], capture_output=True, check=True, timeout=10
        )
        logger.debug("Container runtime already running")
        return
    except FileNotFoundError as exc:
        _print_runtime_error(f"'{runtime}' is not installed or not on PATH")
        raise RuntimeError(f"Container runtime '{runtime}' not found") from exc
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired):
        logger.info("Starting container runtime...")

    try:
        subprocess.run([runtime, "system", "start"], capture_output=True, check=True, timeout=30)
        logger.info("Container runtime started")
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
        _print_runtime_error(f"'{runtime} system start' failed")
        raise RuntimeError("Container runtime is required but failed to start") from exc


def _print_runtime_error(reason: str) -> None:
    lines = [
        "ERROR: Container runtime failed to start",
        reason,
        "Agents cannot run without it. Install the runtime or set",
        '"executionMode": "host" in nanoclaw.config.jsonc.',
    ]
    width = max(len(line) for line in lines) + 2
    print("\n┌" + "─" * width + "┐")
    for line in lines:
        print(f"│ {line.ljust(width - 2)} │")
    print("└" + "─" * width + "┘\n")


def cleanup_orphans(runtime: str = "container") -> list[str]:
    """Stop NanoClaw containers left running by a previous host process.

    Returns:
        Names of the containers that were stopped.
    """
    try:
        result = subprocess.run(
            [runtime, "ls", "--format", "json"],
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        )
        containers = json.loads(result.stdout or "[]")
    except (OSError, subprocess.SubprocessError, ValueError) as exc:
        logger.warning("Failed to list containers for orphan cleanup: %s", exc)
        return []

    orphans = [
        c.get("configuration", {}).get("id", "")
        for c in containers
        if isinstance(c, dict) and c.get("status") == "running"
    ]
    orphans = [name for name in orphans if name.startswith(CONTAINER_NAME_PREFIX)]
    for name in orphans:
        try:
            subprocess.run([runtime, "stop", name], capture_output=True, check=False)
        except OSError as exc:
            logger.warning("Failed to stop orphaned container %s: %s", name, exc)
    if orphans:
        logger.info("Stopped %d orphaned container(s): %s", len(orphans), ", ".join(orphans))
    return orphans


def ensure_image(image: str, runtime: str = "container", build_context: Path | None = None) -> bool:
    """Make sure the agent image exists, building it when a context is given.

    Returns:
        True if the image is available afterwards.
    """
    inspect = subprocess.run(
        [runtime, "image", "inspect", image], capture_output=True, check=False
    )
    if inspect.returncode == 0:
        return True
    if build_context is None or not build_context.exists():
        logger.error("Agent image %s not found and no build context at %s", image, build_context)
        return False
    logger.info("Building agent image %s from %s", image, build_context)
    build = subprocess.run(
        [runtime, "build", "-t", image, str(build_context)], capture_output=True, text=True
    )
    if build.returncode != 0:
        logger.error("Building %s failed: %s", image, build.stderr[-500:])
        return False
    return True


# end src/nanoclaw/container.py
