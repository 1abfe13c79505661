# start src/nanoclaw/security.py
"""Trust policy for agent runs and sandbox-violation reporting.

The main group always runs with full trust. Every other group gets a
SecurityPolicy: sandboxed unless the config disables it, with an optional
positive tool allowlist.

Violation detection matches OS sandbox error text and is a best-effort
heuristic for alerting. It is not what enforces the sandbox.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from nanoclaw.config_loader import HostSecurityConfig
from nanoclaw.ipc import enqueue_outbound_message
from nanoclaw.runner import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from nanoclaw.types import MAIN_GROUP_FOLDER, RegisteredGroup, SecurityPolicy

logger = logging.getLogger(__name__)

# Lowercase denial text emitted by the OS sandbox.
SANDBOX_VIOLATION_PATTERNS = (
    "not allowed by sandbox",
    "deny(default)",
    "seatbelt",
    "operation not permitted",
)

AUDIT_EXCERPT_CHARS = 500
ALERT_EXCERPT_CHARS = 300


def resolve_security(
    is_main: bool, host_security: HostSecurityConfig | None
) -> SecurityPolicy | None:
    """Compute the restrictions for one group.

    Args:
        is_main: Whether the group is the main group.
        host_security: The ``hostSecurity`` config block, if any.

    Returns:
        None for the main group, otherwise the policy for the group.
    """
    if is_main:
        return None
    if host_security is None:
        return SecurityPolicy(sandbox=True)
    tools = list(host_security.tools) if host_security.tools is not None else None
    return SecurityPolicy(sandbox=host_security.sandbox, tools=tools)


def is_sandbox_violation(output: str) -> bool:
    """True if the text contains a known sandbox denial signature."""
    lowered = output.lower()
    return any(pattern in lowered for pattern in SANDBOX_VIOLATION_PATTERNS)


def scannable_output(stdout: str, stderr: str) -> str:
    """Combine a run's output for scanning, minus the agent's own result.

    The framed result carries the model's reply and is left out. Without
    markers the last non-empty stdout line is the result.
    """
    start = stdout.find(OUTPUT_START_MARKER)
    end = stdout.find(OUTPUT_END_MARKER, start + len(OUTPUT_START_MARKER)) if start != -1 else -1
    if start != -1 and end != -1:
        noise = stdout[:start] + stdout[end + len(OUTPUT_END_MARKER) :]
    else:
        lines = stdout.rstrip().splitlines()
        noise = "\n".join(lines[:-1])
    return noise + "\n" + stderr


@dataclass
class SecurityReporter:
    """Writes audit entries and alerts the main group about violations.

    Attributes:
        groups_dir: Root of the per-group workspaces (audit logs go to
            ``<groups_dir>/<folder>/logs``).
        ipc_base: IPC root used to enqueue the alert message.
        main_group_jid: Callable returning the main group's chat id, if known.
    """

    groups_dir: Path
    ipc_base: Path
    main_group_jid: Callable[[], str | None]

    def check(self, group: RegisteredGroup, stdout: str, stderr: str) -> bool:
        """Scan a finished run and report a violation if one is found.

        Never raises; audit or alert failures are logged.

        Returns:
            True if a violation was detected.
        """
        if not is_sandbox_violation(scannable_output(stdout, stderr)):
            return False
        excerpt = stderr[-AUDIT_EXCERPT_CHARS:]
        logger.warning("Sandbox violation detected for group %s", group.folder)
        self._write_audit(group, excerpt)
        self._send_alert(group, excerpt)
        return True

    def _write_audit(self, group: RegisteredGroup, excerpt: str) -> None:
        now = datetime.now(UTC)
        logs_dir = self.groups_dir / group.folder / "logs"
        path = logs_dir / f"sandbox-violation-{now.strftime('%Y%m%dT%H%M%S%f')}.log"
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(
                "\n".join(
                    [
                        "=== Sandbox Violation ===",
                        f"Timestamp: {now.isoformat()}",
                        f"Group: {group.name}",
                        f"Folder: {group.folder}",
                        "",
                        "=== Stderr (tail) ===",
                        excerpt,
                    ]
                )
                + "\n"
            )
        except OSError as exc:
            logger.warning("Could not write sandbox audit log for %s: %s", group.folder, exc)

    def _send_alert(self, group: RegisteredGroup, excerpt: str) -> None:
        main_jid = self.main_group_jid()
        if not main_jid:
            logger.warning(
                "Sandbox alert for %s not sent: main group chat is unknown", group.folder
            )
            return
        text = (
            f'[SANDBOX ALERT] Agent in "{group.name}" hit a restriction:\n'
            f"{excerpt[:ALERT_EXCERPT_CHARS]}"
        )
        try:
            enqueue_outbound_message(self.ipc_base, MAIN_GROUP_FOLDER, main_jid, text)
        except OSError as exc:
            logger.warning("Sandbox alert for %s not sent: %s", group.folder, exc)


# end src/nanoclaw/security.py
