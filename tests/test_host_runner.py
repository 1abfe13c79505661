# start tests/test_host_runner.py
"""Tests for nanoclaw.host_runner module.

The agent entry point is replaced by small scripts written into tmp_path
and run with the current interpreter.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from nanoclaw.config_loader import HostSecurityConfig
from nanoclaw.host_runner import HostRunner, build_host_env
from nanoclaw.security import SecurityReporter
from nanoclaw.supervisor import ProcessSupervisor
from nanoclaw.types import AgentInput, RegisteredGroup

REPORT_SCRIPT = """
import json, os, sys
data = json.load(sys.stdin)
report = {
    "cwd": os.getcwd(),
    "mode": os.environ.get("NANOCLAW_MODE"),
    "ipc": os.environ.get("NANOCLAW_IPC_DIR"),
    "leak": os.environ.get("NANOCLAW_TEST_LEAK"),
    "security": data.get("security"),
}
print("---NANOCLAW_OUTPUT_START---")
print(json.dumps({"status": "ok", "result": json.dumps(report)}))
print("---NANOCLAW_OUTPUT_END---")
"""

VIOLATION_SCRIPT = """
import sys
sys.stdin.read()
sys.stderr.write("cat: /etc/shadow: Operation not permitted\\n")
print('{"status": "ok", "result": "tried"}')
"""

AGENT_RUNNER_PATH = (
    Path(__file__).resolve().parents[1] / "container" / "agent-runner" / "src" / "main.py"
)

# Builds the real SDK options for a restricted group, then reports success.
AGENT_OPTIONS_SCRIPT = f"""
import importlib.util, json, sys
spec = importlib.util.spec_from_file_location("agent_runner", {str(AGENT_RUNNER_PATH)!r})
agent = importlib.util.module_from_spec(spec)
spec.loader.exec_module(agent)
agent.build_options(json.load(sys.stdin), None)
agent.write_output("ok", result="4", new_session_id="s1")
"""


@pytest.fixture
def family() -> RegisteredGroup:
    return RegisteredGroup(name="Family", folder="family", trigger="@Andy")


@pytest.fixture
def main_group() -> RegisteredGroup:
    return RegisteredGroup(name="Main", folder="main", trigger="@Andy")


def make_input(group: RegisteredGroup) -> AgentInput:
    return AgentInput(
        prompt="hi",
        group_folder=group.folder,
        chat_jid=f"{group.folder}@g.us",
        is_main=group.is_main,
    )


def make_runner(
    tmp_path: Path,
    script: str | None,
    host_security: HostSecurityConfig | None = None,
    main_jid: str | None = "main@g.us",
) -> HostRunner:
    entry = tmp_path / "agent.py"
    if script is not None:
        entry.write_text(script)
    groups_dir = tmp_path / "groups"
    data_dir = tmp_path / "data"
    return HostRunner(
        entry_point=entry,
        interpreter=sys.executable,
        host_security=host_security,
        reporter=SecurityReporter(
            groups_dir=groups_dir, ipc_base=data_dir / "ipc", main_group_jid=lambda: main_jid
        ),
        groups_dir=groups_dir,
        data_dir=data_dir,
        supervisor=ProcessSupervisor(kill_grace_s=0.5),
    )


class TestBuildHostEnv:
    """Only allowlisted variables reach the agent."""

    def test_allowlist_and_paths(self, tmp_path: Path) -> None:
        parent = {
            "PATH": "/usr/bin",
            "HOME": "/home/me",
            "ANTHROPIC_API_KEY": "k",
            "AWS_SECRET_ACCESS_KEY": "aws",
            "DATABASE_URL": "postgres://secret",
        }
        env = build_host_env(tmp_path / "g", tmp_path / "global", tmp_path / "ipc", parent)
        assert env["PATH"] == "/usr/bin"
        assert env["ANTHROPIC_API_KEY"] == "k"
        assert env["AWS_SECRET_ACCESS_KEY"] == "aws"
        assert "DATABASE_URL" not in env
        assert env["NANOCLAW_MODE"] == "host"
        assert env["NANOCLAW_GROUP_DIR"] == str(tmp_path / "g")
        assert env["NANOCLAW_GLOBAL_DIR"] == str(tmp_path / "global")
        assert env["NANOCLAW_IPC_DIR"] == str(tmp_path / "ipc")
        assert env["CLAUDE_CONFIG_DIR"] == "/home/me/.claude"


class TestHostRunner:
    """Tests for HostRunner.run()."""

    @pytest.mark.asyncio
    async def test_runs_in_group_dir_with_clean_env(
        self, tmp_path: Path, family: RegisteredGroup, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NANOCLAW_TEST_LEAK", "should-not-pass")
        runner = make_runner(tmp_path, REPORT_SCRIPT)
        output = await runner.run(family, make_input(family))
        assert output.status == "ok"
        report = json.loads(output.result)
        assert Path(report["cwd"]).resolve() == (tmp_path / "groups" / "family").resolve()
        assert report["mode"] == "host"
        assert report["ipc"] == str(tmp_path / "data" / "ipc" / "family")
        assert report["leak"] is None
        assert (tmp_path / "data" / "ipc" / "family" / "tasks").is_dir()
        assert (tmp_path / "groups" / "global").is_dir()

    @pytest.mark.asyncio
    async def test_non_main_gets_default_policy(
        self, tmp_path: Path, family: RegisteredGroup
    ) -> None:
        output = await make_runner(tmp_path, REPORT_SCRIPT).run(family, make_input(family))
        assert json.loads(output.result)["security"] == {"sandbox": True}

    @pytest.mark.asyncio
    async def test_configured_policy(self, tmp_path: Path, family: RegisteredGroup) -> None:
        runner = make_runner(
            tmp_path, REPORT_SCRIPT, HostSecurityConfig(sandbox=False, tools=("Read", "Glob"))
        )
        output = await runner.run(family, make_input(family))
        assert json.loads(output.result)["security"] == {
            "sandbox": False,
            "tools": ["Read", "Glob"],
        }

    @pytest.mark.asyncio
    async def test_main_has_no_policy(self, tmp_path: Path, main_group: RegisteredGroup) -> None:
        runner = make_runner(tmp_path, REPORT_SCRIPT, HostSecurityConfig(sandbox=True))
        output = await runner.run(main_group, make_input(main_group))
        assert json.loads(output.result)["security"] is None

    @pytest.mark.asyncio
    async def test_missing_entry_point(self, tmp_path: Path, family: RegisteredGroup) -> None:
        output = await make_runner(tmp_path, None).run(family, make_input(family))
        assert output.status == "error"
        assert output.error == f"Agent entry point not found: {tmp_path / 'agent.py'}"

    @pytest.mark.asyncio
    async def test_missing_interpreter(self, tmp_path: Path, family: RegisteredGroup) -> None:
        runner = make_runner(tmp_path, REPORT_SCRIPT)
        runner.interpreter = str(tmp_path / "no-python")
        output = await runner.run(family, make_input(family))
        assert output.status == "error"
        assert output.error.startswith("Host agent spawn error:")
        assert runner.supervisor.active_count == 0

    @pytest.mark.asyncio
    async def test_sandbox_violation_reported(
        self, tmp_path: Path, family: RegisteredGroup
    ) -> None:
        output = await make_runner(tmp_path, VIOLATION_SCRIPT).run(family, make_input(family))
        assert output.status == "ok"
        logs_dir = tmp_path / "groups" / "family" / "logs"
        assert len(list(logs_dir.glob("sandbox-violation-*.log"))) == 1
        run_log = next(logs_dir.glob("host-*.log")).read_text()
        assert "=== Sandbox ===" in run_log
        alerts = list((tmp_path / "data" / "ipc" / "main" / "messages").glob("*.json"))
        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_clean_restricted_run_not_reported(
        self, tmp_path: Path, family: RegisteredGroup
    ) -> None:
        pytest.importorskip("claude_agent_sdk")
        output = await make_runner(tmp_path, AGENT_OPTIONS_SCRIPT).run(family, make_input(family))
        assert output.status == "ok"
        assert output.result == "4"
        assert output.new_session_id == "s1"
        logs_dir = tmp_path / "groups" / "family" / "logs"
        assert not list(logs_dir.glob("sandbox-violation-*.log"))
        assert "=== Sandbox ===" not in next(logs_dir.glob("host-*.log")).read_text()
        assert not (tmp_path / "data" / "ipc" / "main" / "messages").exists()

    @pytest.mark.asyncio
    async def test_main_is_not_scanned(self, tmp_path: Path, main_group: RegisteredGroup) -> None:
        await make_runner(tmp_path, VIOLATION_SCRIPT).run(main_group, make_input(main_group))
        logs_dir = tmp_path / "groups" / "main" / "logs"
        assert not list(logs_dir.glob("sandbox-violation-*.log"))


# end tests/test_host_runner.py
