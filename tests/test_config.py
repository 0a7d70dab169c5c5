from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from agent_supervisor.config import (
    DEFAULT_COMMAND_TEMPLATE,
    DEFAULT_MODEL,
    ExecutionSettings,
    RetrySettings,
    Settings,
)

pytestmark = [
    allure.epic("Agent Supervisor"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_SUPERVISOR_"):
            monkeypatch.delenv(name)


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    settings = Settings.from_env()

    assert settings.execution.model == DEFAULT_MODEL
    assert settings.execution.command_template == DEFAULT_COMMAND_TEMPLATE
    assert settings.execution.heartbeat_enabled is False
    assert settings.retry.max_attempts == 3
    assert settings.retry.billing_base_seconds == 300
    assert settings.retry.retry_max_seconds == 1800
    assert settings.checkpoint.auto_init is True
    assert settings.audit.audit_root == tmp_path / ".agent_supervisor" / "audit"
    assert settings.audit.error_log_path is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_MODEL", "claude-opus-test")
    monkeypatch.setenv("AGENT_SUPERVISOR_HEARTBEAT", "yes")
    monkeypatch.setenv("AGENT_SUPERVISOR_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("AGENT_SUPERVISOR_GIT_AUTO_INIT", "off")
    monkeypatch.setenv("AGENT_SUPERVISOR_ERROR_LOG", str(tmp_path / "errors.jsonl"))

    settings = Settings.from_env(audit_root=tmp_path / "audit")

    assert settings.execution.model == "claude-opus-test"
    assert settings.execution.heartbeat_enabled is True
    assert settings.retry.max_attempts == 5
    assert settings.checkpoint.auto_init is False
    assert settings.audit.audit_root == tmp_path / "audit"
    assert settings.audit.error_log_path == tmp_path / "errors.jsonl"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_HEARTBEAT", "maybe")

    with pytest.raises(ValueError, match="AGENT_SUPERVISOR_HEARTBEAT"):
        Settings.from_env()


def test_validate_requires_prompt_placeholder() -> None:
    settings = Settings(execution=ExecutionSettings(command_template="claude --model {model}"))

    with pytest.raises(ValueError, match="must include \\{prompt\\} or \\{prompt_file\\}"):
        settings.validate()


def test_validate_accepts_prompt_file_placeholder() -> None:
    Settings(execution=ExecutionSettings(command_template="agent --file {prompt_file}")).validate()


def test_validate_rejects_non_positive_attempts() -> None:
    with pytest.raises(ValueError, match="AGENT_SUPERVISOR_MAX_ATTEMPTS"):
        Settings(retry=RetrySettings(max_attempts=0)).validate()


def test_validate_rejects_negative_delays() -> None:
    with pytest.raises(ValueError, match="AGENT_SUPERVISOR_RETRY_MAX_SECONDS"):
        Settings(retry=RetrySettings(retry_max_seconds=-1)).validate()


def test_empty_audit_root_disables_audit_trail(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_AUDIT_ROOT", "  ")

    assert Settings.from_env().audit.audit_root is None


def test_explicit_audit_root_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_AUDIT_ROOT", "")

    assert Settings.from_env(audit_root=tmp_path).audit.audit_root == tmp_path
