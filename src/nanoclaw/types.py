# start src/nanoclaw/types.py
"""Domain models shared across NanoClaw.

Wire-facing models (AgentInput, AgentOutput, snapshots) serialize with
camelCase keys; the agent runner reads and writes the same shapes.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAIN_GROUP_FOLDER = "main"


class _WireModel(BaseModel):
    """Base for models exchanged with the agent process as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContainerConfig(_WireModel):
    """Per-group overrides for agent execution.

    Attributes:
        timeout_ms: Hard timeout for this group's turns, in milliseconds.
        image: Container image to use instead of the configured default.
    """

    timeout_ms: int | None = Field(default=None, alias="timeout", gt=0)
    image: str | None = None


class RegisteredGroup(_WireModel):
    """A chat opted into agent handling.

    Attributes:
        name: Display name of the chat.
        folder: Filesystem-safe identifier; ``main`` is the privileged group.
        trigger: Activation pattern shown to users (e.g. ``@Andy``).
        added_at: ISO timestamp of registration.
        container_config: Optional per-group execution overrides.
        requires_trigger: When False every message starts a turn.
    """

    name: str
    folder: str
    trigger: str = ""
    added_at: str = ""
    container_config: ContainerConfig | None = None
    requires_trigger: bool | None = None

    @property
    def is_main(self) -> bool:
        """True for the privileged main group."""
        return self.folder == MAIN_GROUP_FOLDER


class SecurityPolicy(_WireModel):
    """Restrictions applied to a non-main group's agent.

    Attributes:
        sandbox: Run the agent under the OS-level sandbox.
        tools: Positive tool allowlist. None means every tool is available.
    """

    sandbox: bool = True
    tools: list[str] | None = None


class AgentInput(_WireModel):
    """Payload written to the agent process on stdin, one per turn."""

    prompt: str
    session_id: str | None = None
    group_folder: str
    chat_jid: str
    is_main: bool
    is_scheduled_task: bool = False
    security: SecurityPolicy | None = None
    mcp_servers: dict[str, dict[str, Any]] | None = None
    secrets: dict[str, str] | None = None

    def to_wire(self) -> str:
        """Serialize to the camelCase JSON document sent over stdin."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_log(self) -> str:
        """Serialize for run logs: no secrets, MCP servers reduced to their names."""
        data = self.model_dump(
            by_alias=True, exclude_none=True, exclude={"secrets", "mcp_servers"}
        )
        if self.mcp_servers:
            data["mcpServers"] = sorted(self.mcp_servers)
        return json.dumps(data, indent=2)


class AgentOutput(_WireModel):
    """Result of one agent turn.

    Attributes:
        status: ``ok`` or ``error``.
        result: Text to deliver to the chat, or None.
        error: Failure description for operators.
        new_session_id: Session to resume on the next turn.
    """

    status: Literal["ok", "error"]
    result: str | None = None
    error: str | None = None
    new_session_id: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(_cls, v: Any) -> Any:  # noqa: N804
        """Older agent runners report ``success`` instead of ``ok``."""
        return "ok" if v == "success" else v

    @classmethod
    def failure(cls, message: str) -> AgentOutput:
        """Build an error output with a null result."""
        return cls(status="error", result=None, error=message)


class ScheduledTask(BaseModel):
    """A task created by an agent through the IPC channel.

    Attributes:
        id: Unique task identifier.
        group_folder: Folder of the owning group.
        chat_jid: Chat the task reports to.
        prompt: Prompt the agent runs when the task fires.
        schedule_type: One of cron, interval, once.
        schedule_value: Cron expression, interval in ms, or ISO timestamp.
        context_mode: ``group`` reuses the group session, ``isolated`` does not.
        next_run: ISO timestamp of the next run.
        last_run: ISO timestamp of the last run.
        last_result: Summary of the last run.
        status: active, paused, or completed.
        created_at: ISO creation timestamp.
    """

    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str
    context_mode: Literal["group", "isolated"] = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: Literal["active", "paused", "completed"] = "active"
    created_at: str


class AvailableGroup(_WireModel):
    """A chat the messaging adapter can see, for the main group's snapshot."""

    jid: str
    name: str
    last_activity: str = ""
    is_registered: bool = False


class NewMessage(BaseModel):
    """An inbound chat message handed over by the messaging adapter."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False
    is_bot_message: bool = False


class VolumeMount(BaseModel):
    """A bind mount for the agent container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Mount point inside the container.
        readonly: Mount read-only when True.
    """

    host_path: str
    container_path: str
    readonly: bool = False


# end src/nanoclaw/types.py
