# start tests/test_config.py
"""Tests for nanoclaw.config module.

Covers load_config, load_credentials, and the sub-config defaults and
unit conversions.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from nanoclaw.config import (
    AppConfig,
    ContainerSettings,
    Credentials,
    LoggingConfig,
    TimingConfig,
    load_config,
    load_credentials,
)

# ---------------------------------------------------------------------------
# Tests: load_config()
# ---------------------------------------------------------------------------


class TestLoadConfig:
    """Tests for the load_config() function."""

    def test_load_config_with_valid_yaml(self, tmp_path: Path) -> None:
        """Valid YAML file is parsed and returned as AppConfig."""
        config_file = tmp_path / "config.yml"
        config_file.write_text("assistant:\n  name: TestBot\n")
        config = load_config(config_file)
        assert config.assistant.name == "TestBot"

    def test_missing_file_raises_file_not_found(self, tmp_path: Path) -> None:
        """A missing config.yml is a startup error."""
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            load_config(tmp_path / "nonexistent.yml")

    def test_empty_yaml_gives_defaults(self, tmp_path: Path) -> None:
        """An empty file yields the default configuration."""
        config_file = tmp_path / "config.yml"
        config_file.write_text("")
        config = load_config(config_file)
        assert config.assistant.name == "Andy"
        assert config.timezone == "UTC"
        assert config.container.max_concurrent == 5

    def test_nested_keys(self, tmp_path: Path) -> None:
        """Nested YAML keys map to nested fields."""
        config_file = tmp_path / "config.yml"
        config_file.write_text(
            "timing:\n  ipc_poll_interval_ms: 250\n"
            "container:\n  max_concurrent: 2\n  runtime: docker\n"
            "host:\n  python: /usr/bin/python3\n"
        )
        config = load_config(config_file)
        assert config.timing.ipc_poll_interval_ms == 250
        assert config.container.max_concurrent == 2
        assert config.container.runtime == "docker"
        assert config.host.python == "/usr/bin/python3"

    def test_invalid_level_raises(self, tmp_path: Path) -> None:
        """An unknown log level fails validation."""
        config_file = tmp_path / "config.yml"
        config_file.write_text("logging:\n  level: LOUD\n")
        with pytest.raises(ValidationError):
            load_config(config_file)

    def test_zero_max_concurrent_rejected(self, tmp_path: Path) -> None:
        """The concurrency ceiling must be at least one."""
        config_file = tmp_path / "config.yml"
        config_file.write_text("container:\n  max_concurrent: 0\n")
        with pytest.raises(ValidationError):
            load_config(config_file)


# ---------------------------------------------------------------------------
# Tests: load_credentials()
# ---------------------------------------------------------------------------


class TestLoadCredentials:
    """Tests for load_credentials() and Credentials.as_secrets()."""

    def test_missing_file_gives_empty_credentials(self, tmp_path: Path) -> None:
        """No credentials file is not an error."""
        creds = load_credentials(tmp_path / "credentials.yml")
        assert creds == Credentials()
        assert creds.as_secrets() == {}

    def test_as_secrets_uses_env_names(self, tmp_path: Path) -> None:
        """Only non-empty values are exported, under their environment names."""
        creds_file = tmp_path / "credentials.yml"
        creds_file.write_text("anthropic_api_key: sk-test\n")
        creds = load_credentials(creds_file)
        assert creds.as_secrets() == {"ANTHROPIC_API_KEY": "sk-test"}

    def test_both_secrets(self) -> None:
        """Both tokens are exported when set."""
        creds = Credentials(anthropic_api_key="a", claude_code_oauth_token="b")
        assert creds.as_secrets() == {
            "ANTHROPIC_API_KEY": "a",
            "CLAUDE_CODE_OAUTH_TOKEN": "b",
        }


# ---------------------------------------------------------------------------
# Tests: sub-configs
# ---------------------------------------------------------------------------


class TestUnitConversions:
    """Millisecond settings expose second accessors."""

    def test_ipc_poll_interval_s(self) -> None:
        assert TimingConfig(ipc_poll_interval_ms=1500).ipc_poll_interval_s == 1.5

    def test_container_seconds(self) -> None:
        settings = ContainerSettings(kill_grace_ms=2500)
        assert settings.kill_grace_s == 2.5


class TestLoggingConfig:
    """Tests for LoggingConfig validation and the verbose switch."""

    def test_level_is_normalized(self) -> None:
        """Lower-case level names are upper-cased."""
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_verbose_from_debug(self) -> None:
        """DEBUG level implies verbose run logs."""
        assert LoggingConfig(level="DEBUG").verbose is True
        assert LoggingConfig(level="INFO").verbose is False

    def test_verbose_runs_flag(self) -> None:
        """verbose_runs forces verbose logs at any level."""
        assert LoggingConfig(level="WARNING", verbose_runs=True).verbose is True


class TestTriggerPattern:
    """Tests for AppConfig.trigger_pattern."""

    def test_matches_at_start_case_insensitive(self) -> None:
        pattern = AppConfig().trigger_pattern
        assert pattern.search("@andy what's up")
        assert pattern.search("@Andy")

    def test_requires_word_boundary(self) -> None:
        """A longer name starting with the assistant's name does not match."""
        pattern = AppConfig().trigger_pattern
        assert not pattern.search("@Andrew hi")
        assert not pattern.search("hi @Andy")

    def test_name_is_escaped(self) -> None:
        """Regex metacharacters in the name are literal."""
        config = AppConfig.model_validate({"assistant": {"name": "A.I"}})
        assert config.trigger_pattern.search("@A.I hello")
        assert not config.trigger_pattern.search("@AxI hello")


# end tests/test_config.py
