"""Domain models for supervised agent attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class ErrorClassification(str, Enum):
    """Normalized error classes used by retry policy."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    BILLING_RETRYABLE = "billing-retryable"


@dataclass(slots=True)
class ExecutionConfig:
    """Per-call configuration passed into the execution driver."""

    model: str
    max_turns: int = 10_000
    permission_mode: str = "bypassPermissions"
    tool_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    heartbeat_enabled: bool = False
    heartbeat_interval_seconds: float = 30.0
    description: str = "agent task"
    error_log_path: Path | None = None


@dataclass(slots=True)
class AgentTask:
    """One unit of supervised work bound to its own workspace."""

    task_id: str
    description: str
    prompt: str
    workspace_dir: Path
    agent_kind: str | None = None
    context: str = ""


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of a single execution driver call."""

    success: bool
    duration_ms: int
    turns: int
    cost_usd: float
    text: str | None = None
    partial_cost_usd: float | None = None
    api_error_detected: bool = False
    error: str | None = None
    error_kind: str | None = None
    retryable: bool | None = None


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Immutable workspace snapshot identified by a git revision."""

    id: str
    label: str
    created_at: datetime

    @property
    def short_id(self) -> str:
        return self.id[:7]


@dataclass(slots=True)
class Attempt:
    """Lifecycle record of one execute/validate/commit-or-rollback pass."""

    attempt_number: int
    started_at: datetime
    is_final_attempt: bool
    checkpoint_id: str | None = None
    ended_at: datetime | None = None
    duration_ms: int = 0
    cost_usd: float = 0.0
    turn_count: int = 0
    success: bool = False
    error_message: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None

    def finish(  # noqa: PLR0913
        self,
        *,
        success: bool,
        duration_ms: int | None = None,
        cost_usd: float = 0.0,
        turn_count: int = 0,
        error_message: str | None = None,
        checkpoint_id: str | None = None,
    ) -> None:
        """Close the attempt. Raises if it was already closed."""

        if self.is_closed:
            raise RuntimeError(f"Attempt {self.attempt_number} is already closed.")
        self.ended_at = utc_now()
        if duration_ms is None:
            duration_ms = int((self.ended_at - self.started_at).total_seconds() * 1000)
        self.duration_ms = duration_ms
        self.cost_usd = cost_usd
        self.turn_count = turn_count
        self.success = success
        self.error_message = error_message
        if checkpoint_id is not None:
            self.checkpoint_id = checkpoint_id

    def to_record(self) -> dict[str, object]:
        """Serialize for the audit trail."""

        return {
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "cost_usd": self.cost_usd,
            "turn_count": self.turn_count,
            "success": self.success,
            "error_message": self.error_message,
            "checkpoint_id": self.checkpoint_id,
            "is_final_attempt": self.is_final_attempt,
        }
