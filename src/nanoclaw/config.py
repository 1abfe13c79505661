# start src/nanoclaw/config.py
"""Operator configuration for NanoClaw.

Loads config.yml and credentials.yml at startup and validates them into
Pydantic models. The runner-facing nanoclaw.config.jsonc lives in
nanoclaw.config_loader; both are loaded once in main() and handed to the
components that need them.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class AssistantConfig(BaseModel):
    """How the assistant presents itself in chats.

    Attributes:
        name: Display name, used for the ``@name`` trigger and reply prefix.
        has_own_number: Whether replies come from a dedicated account.
            Without one, outbound text is prefixed with ``name: ``.
    """

    name: str = "Andy"
    has_own_number: bool = False


class TimingConfig(BaseModel):
    """Polling cadence, in milliseconds.

    Attributes:
        ipc_poll_interval_ms: Delay between IPC drain passes.
    """

    ipc_poll_interval_ms: int = Field(default=1000, gt=0)

    @property
    def ipc_poll_interval_s(self) -> float:
        """Poll delay for asyncio.sleep()."""
        return self.ipc_poll_interval_ms / 1000.0


class ContainerSettings(BaseModel):
    """Agent process limits and container runtime settings.

    Attributes:
        image: Agent container image name.
        runtime: Container CLI binary (Apple ``container`` or ``docker``).
        timeout_ms: Default hard timeout for one agent turn in milliseconds.
        max_output_size_bytes: Stdout cap for container runs.
        max_concurrent: Maximum number of simultaneously running agents.
        kill_grace_ms: Grace period between the graceful stop and the kill.
    """

    image: str = "nanoclaw-agent:latest"
    runtime: str = "container"
    timeout_ms: int = Field(default=1800000, gt=0)
    max_output_size_bytes: int = Field(default=10485760, gt=0)
    max_concurrent: int = Field(default=5, ge=1)
    kill_grace_ms: int = Field(default=5000, ge=0)

    @property
    def kill_grace_s(self) -> float:
        """Kill grace period in seconds."""
        return self.kill_grace_ms / 1000.0


class HostSettings(BaseModel):
    """Settings for host-mode agent subprocesses.

    Attributes:
        agent_runner: Agent entry point, relative to the project root.
        python: Interpreter used to run the entry point. Defaults to the
            interpreter running NanoClaw.
    """

    agent_runner: str = "container/agent-runner/src/main.py"
    python: str | None = None


class PathsConfig(BaseModel):
    """Working directories, relative to the project root.

    Attributes:
        store_dir: Holds the SQLite store.
        groups_dir: One workspace per group folder, plus ``global``.
        data_dir: IPC directories and per-group agent sessions.
    """

    store_dir: str = "store"
    groups_dir: str = "groups"
    data_dir: str = "data"


class LoggingConfig(BaseModel):
    """Host log level and destinations.

    Attributes:
        level: Standard logging level name.
        file: Rotating log file, relative to the project root.
        verbose_runs: Write full input/stdout/stderr into every run log.
    """

    level: str = "INFO"
    file: str = "logs/nanoclaw.log"
    verbose_runs: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(_cls, v: str) -> str:  # noqa: N804
        """Normalise to upper case and reject unknown names."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL"
            )
        return level

    @property
    def verbose(self) -> bool:
        """True when run logs should carry full detail."""
        return self.verbose_runs or self.level == "DEBUG"


class AppConfig(BaseModel):
    """Root operator configuration loaded from config.yml.

    Attributes:
        assistant: Name and prefix behaviour.
        timing: Poll cadence.
        container: Agent process limits and container runtime settings.
        host: Host-mode subprocess settings.
        paths: Working directories.
        logging: Host logging.
        timezone: Timezone string for cron evaluation (e.g., 'America/New_York').
    """

    assistant: AssistantConfig = Field(default_factory=AssistantConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    container: ContainerSettings = Field(default_factory=ContainerSettings)
    host: HostSettings = Field(default_factory=HostSettings)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    timezone: str = "UTC"

    @property
    def trigger_pattern(self) -> re.Pattern[str]:
        """``@name`` at the start of a message, case-insensitive."""
        escaped = re.escape(self.assistant.name)
        return re.compile(rf"^@{escaped}\b", re.IGNORECASE)


class Credentials(BaseModel):
    """Agent credentials, kept out of config.yml.

    Attributes:
        anthropic_api_key: Forwarded to the agent as ``ANTHROPIC_API_KEY``.
        claude_code_oauth_token: Forwarded as ``CLAUDE_CODE_OAUTH_TOKEN``.
    """

    anthropic_api_key: str = ""
    claude_code_oauth_token: str = ""

    def as_secrets(self) -> dict[str, str]:
        """Return the non-empty credentials keyed by their environment variable names."""
        secrets = {
            "ANTHROPIC_API_KEY": self.anthropic_api_key,
            "CLAUDE_CODE_OAUTH_TOKEN": self.claude_code_oauth_token,
        }
        return {k: v for k, v in secrets.items() if v}


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load and validate operator configuration from config.yml.

    Args:
        config_path: Defaults to ``./config.yml``.

    Returns:
        The validated configuration.

    Raises:
        FileNotFoundError: The file is missing.
        ValueError: A value failed validation.
    """
    path = config_path or Path("config.yml")
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    return AppConfig.model_validate(data)


def load_credentials(credentials_path: Path | None = None) -> Credentials:
    """Read agent credentials, tolerating a missing file.

    Args:
        credentials_path: Defaults to ``./credentials.yml``.

    Returns:
        The credentials, all empty when the file is absent.
    """
    path = credentials_path or Path("credentials.yml")
    if not path.exists():
        return Credentials()
    with path.open() as f:
        data = yaml.safe_load(f) or {}
    return Credentials.model_validate(data)


# end src/nanoclaw/config.py
