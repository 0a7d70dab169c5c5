"""Exception hierarchy for supervised agent execution."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from agent_supervisor.execution.models import ExecutionResult


class SupervisorError(RuntimeError):
    """Base class for supervisor errors."""


class AgentExecutionError(SupervisorError):
    """Execution attempt failure with the telemetry gathered before it failed.

    ``retryable`` is a hint from the layer that raised the error. ``None``
    leaves the decision to the failure classifier.
    """

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        kind: str = "execution",
        retryable: bool | None = None,
        duration_ms: int = 0,
        cost_usd: float = 0.0,
        turns: int = 0,
        partial_results: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.duration_ms = duration_ms
        self.cost_usd = cost_usd
        self.turns = turns
        self.partial_results = partial_results

    @classmethod
    def from_result(cls, result: ExecutionResult) -> AgentExecutionError:
        """Build an error from an unsuccessful execution result."""

        return cls(
            result.error or "Agent execution was unsuccessful",
            kind=result.error_kind or "execution",
            retryable=result.retryable,
            duration_ms=result.duration_ms,
            cost_usd=result.partial_cost_usd or result.cost_usd,
            turns=result.turns,
        )


class ValidationExhaustedError(AgentExecutionError):
    """Deliverable validation failed on the final attempt."""

    def __init__(
        self,
        *,
        description: str,
        workspace_dir: Path,
        attempts_exhausted: int,
    ) -> None:
        super().__init__(
            f"Agent {description} failed output validation after {attempts_exhausted} "
            "attempts. Required deliverable files were not created.",
            kind="validation",
            retryable=False,
        )
        self.description = description
        self.workspace_dir = workspace_dir
        self.attempts_exhausted = attempts_exhausted


class BackendRunError(SupervisorError):
    """Backend start/transport error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CheckpointError(SupervisorError):
    """Base exception for workspace checkpoint operations."""


class GitNotFoundError(CheckpointError):
    """Git is not installed or not in PATH."""


class NotAGitRepoError(CheckpointError):
    """The workspace is not the root of a git repository."""


class GitOperationError(CheckpointError):
    """A git command exited with an error."""

    def __init__(self, message: str, *, command: str, returncode: int, stderr: str) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class DeliverableWriteError(SupervisorError):
    """Deliverable directory or file could not be written."""
