"""Runtime configuration for supervised agent execution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --output-format stream-json --verbose "
    "--model {model} --max-turns {max_turns} --permission-mode {permission_mode} "
    "-- {prompt}"
)


@dataclass(slots=True)
class ExecutionSettings:
    """External execution service settings."""

    model: str = DEFAULT_MODEL
    max_turns: int = 10_000
    permission_mode: str = "bypassPermissions"
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    heartbeat_enabled: bool = False
    heartbeat_interval_seconds: float = 30.0


@dataclass(slots=True)
class RetrySettings:
    """Attempt budget and backoff settings."""

    max_attempts: int = 3
    retry_base_seconds: float = 10.0
    rate_limit_base_seconds: float = 30.0
    billing_base_seconds: float = 300.0
    retry_max_seconds: float = 1_800.0


@dataclass(slots=True)
class CheckpointSettings:
    """Workspace version-control settings."""

    git_executable: str = "git"
    auto_init: bool = True
    author_name: str = "Agent Supervisor"
    author_email: str = "agent-supervisor@localhost"
    timeout_seconds: int = 120


@dataclass(slots=True)
class AuditSettings:
    """Audit trail settings."""

    audit_root: Path | None = field(default_factory=lambda: default_audit_root())
    prompt_preview_chars: int = 500
    error_log_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)

    @classmethod
    def from_env(cls, audit_root: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        return cls(
            execution=ExecutionSettings(
                model=os.getenv("AGENT_SUPERVISOR_MODEL", DEFAULT_MODEL),
                max_turns=int(os.getenv("AGENT_SUPERVISOR_MAX_TURNS", "10000")),
                permission_mode=os.getenv(
                    "AGENT_SUPERVISOR_PERMISSION_MODE",
                    "bypassPermissions",
                ),
                command_template=os.getenv(
                    "AGENT_SUPERVISOR_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                heartbeat_enabled=_env_bool("AGENT_SUPERVISOR_HEARTBEAT", default=False),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("AGENT_SUPERVISOR_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("AGENT_SUPERVISOR_RETRY_BASE_SECONDS", "10")),
                rate_limit_base_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_RATE_LIMIT_BASE_SECONDS", "30"),
                ),
                billing_base_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_BILLING_BASE_SECONDS", "300"),
                ),
                retry_max_seconds=float(os.getenv("AGENT_SUPERVISOR_RETRY_MAX_SECONDS", "1800")),
            ),
            checkpoint=CheckpointSettings(
                git_executable=os.getenv("AGENT_SUPERVISOR_GIT_EXECUTABLE", "git"),
                auto_init=_env_bool("AGENT_SUPERVISOR_GIT_AUTO_INIT", default=True),
            ),
            audit=AuditSettings(
                audit_root=audit_root if audit_root is not None else _env_audit_root(),
                error_log_path=_env_path("AGENT_SUPERVISOR_ERROR_LOG"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.execution.max_turns <= 0:
            raise ValueError("AGENT_SUPERVISOR_MAX_TURNS must be a positive integer.")
        if self.execution.heartbeat_interval_seconds <= 0:
            raise ValueError("AGENT_SUPERVISOR_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        template = self.execution.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "AGENT_SUPERVISOR_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.retry.max_attempts <= 0:
            raise ValueError("AGENT_SUPERVISOR_MAX_ATTEMPTS must be a positive integer.")
        for name, value in (
            ("AGENT_SUPERVISOR_RETRY_BASE_SECONDS", self.retry.retry_base_seconds),
            ("AGENT_SUPERVISOR_RATE_LIMIT_BASE_SECONDS", self.retry.rate_limit_base_seconds),
            ("AGENT_SUPERVISOR_BILLING_BASE_SECONDS", self.retry.billing_base_seconds),
            ("AGENT_SUPERVISOR_RETRY_MAX_SECONDS", self.retry.retry_max_seconds),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def default_audit_root() -> Path:
    """Per-user audit location, kept out of any workspace the caller runs from."""

    return Path.home() / ".agent_supervisor" / "audit"


def _env_audit_root() -> Path | None:
    value = os.getenv("AGENT_SUPERVISOR_AUDIT_ROOT")
    if value is None:
        return default_audit_root()
    value = value.strip()
    return Path(value).expanduser() if value else None
