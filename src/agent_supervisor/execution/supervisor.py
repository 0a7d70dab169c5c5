"""Retry supervisor: checkpoint -> execute -> validate -> commit-or-rollback -> audit."""

from __future__ import annotations

import json
import logging
import random
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

from agent_supervisor.config import CheckpointSettings, RetrySettings, Settings
from agent_supervisor.execution.audit import AuditRecorder, AuditSession, NullAuditRecorder
from agent_supervisor.execution.backend.base import ExecutionService
from agent_supervisor.execution.backend.cli_backend import CliStreamBackend
from agent_supervisor.execution.checkpoint import CheckpointManager, GitCheckpointManager
from agent_supervisor.execution.driver import ExecutionDriver
from agent_supervisor.execution.errors import AgentExecutionError, ValidationExhaustedError
from agent_supervisor.execution.failure_classifier import (
    RetryDelays,
    classify_error,
    compute_retry_delay,
)
from agent_supervisor.execution.models import (
    AgentTask,
    Attempt,
    ExecutionConfig,
    ExecutionResult,
    utc_now,
)
from agent_supervisor.execution.validator import ValidatorGate

logger = logging.getLogger(__name__)

VALIDATION_FAILED_REASON = "Output validation failed"
API_ERROR_VALIDATION_REASON = "API error + validation failure"
RETRY_CONTEXT_LIMIT = 4_000

CheckpointFactory = Callable[[Path], CheckpointManager]
AuditFactory = Callable[[AgentTask], AuditRecorder]


class AgentDriver(Protocol):
    def execute(
        self,
        prompt: str,
        workspace_dir: Path,
        config: ExecutionConfig,
    ) -> ExecutionResult: ...


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and backoff parameters."""

    max_attempts: int = 3
    delays: RetryDelays = field(default_factory=RetryDelays)
    max_delay_seconds: float = 1_800.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            delays=RetryDelays(
                transient_seconds=settings.retry_base_seconds,
                rate_limit_seconds=settings.rate_limit_base_seconds,
                billing_seconds=settings.billing_base_seconds,
            ),
            max_delay_seconds=settings.retry_max_seconds,
        )


class RetrySupervisor:
    """Runs one task to success, fatal abort, or attempts exhausted.

    Attempts run strictly one after another because each one mutates, and may
    roll back, the task's workspace.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        driver: AgentDriver,
        validator: ValidatorGate,
        execution_config: ExecutionConfig,
        policy: RetryPolicy | None = None,
        checkpoint_factory: CheckpointFactory | None = None,
        audit_factory: AuditFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        reserved_paths: Sequence[Path] = (),
    ) -> None:
        self.driver = driver
        self.validator = validator
        self.execution_config = execution_config
        self.policy = policy or RetryPolicy()
        self.checkpoint_factory = checkpoint_factory or GitCheckpointManager
        self.audit_factory = audit_factory or (lambda _task: NullAuditRecorder())
        self.sleep = sleep
        self._random = rng or random.Random()  # noqa: S311
        self.reserved_paths = tuple(reserved_paths)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        validator: ValidatorGate | None = None,
        service: ExecutionService | None = None,
        tool_servers: dict[str, dict[str, Any]] | None = None,
    ) -> RetrySupervisor:
        """Wire a supervisor from application settings."""

        execution = settings.execution
        audit_root = settings.audit.audit_root
        return cls(
            driver=ExecutionDriver(service or CliStreamBackend(execution.command_template)),
            validator=validator or ValidatorGate(),
            execution_config=ExecutionConfig(
                model=execution.model,
                max_turns=execution.max_turns,
                permission_mode=execution.permission_mode,
                tool_servers=dict(tool_servers or {}),
                heartbeat_enabled=execution.heartbeat_enabled,
                heartbeat_interval_seconds=execution.heartbeat_interval_seconds,
                error_log_path=settings.audit.error_log_path,
            ),
            policy=RetryPolicy.from_settings(settings.retry),
            checkpoint_factory=_git_checkpoint_factory(settings.checkpoint),
            audit_factory=(
                _audit_session_factory(audit_root, settings.audit.prompt_preview_chars)
                if audit_root is not None
                else None
            ),
            reserved_paths=[
                path for path in (audit_root, settings.audit.error_log_path) if path is not None
            ],
        )

    def run_with_retry(self, task: AgentTask, max_attempts: int | None = None) -> ExecutionResult:
        """Run ``task`` with checkpoints and retries and return the validated result."""

        attempts_budget = self.policy.max_attempts if max_attempts is None else max_attempts
        if attempts_budget < 1:
            raise ValueError(f"max_attempts must be >= 1, got {attempts_budget}")
        ensure_outside_workspace(task.workspace_dir, self.reserved_paths)

        checkpoints = self.checkpoint_factory(task.workspace_dir)
        audit = self._open_audit(task)
        logger.info("Starting %s with %d max attempts", task.description, attempts_budget)
        try:
            return self._run_attempts(
                task=task,
                attempts_budget=attempts_budget,
                checkpoints=checkpoints,
                audit=audit,
            )
        finally:
            _safe_audit("close", audit.close)

    def _run_attempts(
        self,
        *,
        task: AgentTask,
        attempts_budget: int,
        checkpoints: CheckpointManager,
        audit: AuditRecorder,
    ) -> ExecutionResult:
        config = replace(self.execution_config, description=task.description)
        retry_context = task.context
        last_error: Exception | None = None

        for attempt_number in range(1, attempts_budget + 1):
            is_final = attempt_number == attempts_budget
            checkpoint = checkpoints.create_checkpoint(task.description, attempt_number)
            prompt = compose_prompt(task.prompt, retry_context)
            attempt = Attempt(
                attempt_number=attempt_number,
                started_at=utc_now(),
                is_final_attempt=is_final,
                checkpoint_id=checkpoint.id,
            )
            _safe_audit(
                "attempt start",
                audit.record_attempt_start,
                task.task_id,
                prompt,
                attempt_number,
            )

            try:
                result = self.driver.execute(prompt, task.workspace_dir, config)
                if not result.success:
                    raise AgentExecutionError.from_result(result)
            except Exception as error:  # noqa: BLE001
                last_error = error
                classification = classify_error(error, delays=self.policy.delays)
                cleanup_reason = (
                    "non-retryable error cleanup"
                    if classification.is_fatal
                    else "final failure cleanup"
                    if is_final
                    else "retryable error cleanup"
                )
                self._rollback_and_close(
                    checkpoints=checkpoints,
                    audit=audit,
                    task=task,
                    attempt=attempt,
                    reason=cleanup_reason,
                    error_message=str(error) or type(error).__name__,
                    duration_ms=getattr(error, "duration_ms", None),
                    cost_usd=getattr(error, "cost_usd", 0.0),
                    turns=getattr(error, "turns", 0),
                )
                if classification.is_fatal:
                    logger.error(
                        "%s failed with non-retryable error (%s): %s",
                        task.description,
                        classification.reason_code,
                        error,
                    )
                    raise
                if is_final:
                    logger.error(
                        "%s failed after %d attempts. Final error: %s",
                        task.description,
                        attempts_budget,
                        error,
                    )
                    break

                delay_seconds = compute_retry_delay(
                    classification,
                    attempt_number=attempt_number,
                    max_seconds=self.policy.max_delay_seconds,
                    rng=self._random,
                )
                logger.warning(
                    "%s failed (attempt %d/%d, %s): %s. Workspace rolled back, retrying in %.1fs",
                    task.description,
                    attempt_number,
                    attempts_budget,
                    classification.error_class.value,
                    error,
                    delay_seconds,
                )
                partial_results = getattr(error, "partial_results", None)
                if partial_results:
                    retry_context = compose_retry_context(task.context, partial_results)
                self.sleep(delay_seconds)
                continue

            if self.validator.validate(result, task.agent_kind, task.workspace_dir):
                self._commit_and_close(
                    checkpoints=checkpoints,
                    audit=audit,
                    task=task,
                    attempt=attempt,
                    result=result,
                )
                if result.api_error_detected:
                    logger.warning("%s validated despite API error warnings", task.description)
                logger.info(
                    "%s completed successfully on attempt %d/%d",
                    task.description,
                    attempt_number,
                    attempts_budget,
                )
                return result

            reason = (
                API_ERROR_VALIDATION_REASON
                if result.api_error_detected
                else VALIDATION_FAILED_REASON
            )
            last_error = AgentExecutionError(
                reason,
                kind="validation",
                retryable=True,
                duration_ms=result.duration_ms,
                cost_usd=result.partial_cost_usd or result.cost_usd,
                turns=result.turns,
            )
            logger.warning("%s completed but %s", task.description, reason.lower())
            self._rollback_and_close(
                checkpoints=checkpoints,
                audit=audit,
                task=task,
                attempt=attempt,
                reason="validation failure",
                error_message=reason,
                duration_ms=result.duration_ms,
                cost_usd=result.partial_cost_usd or result.cost_usd,
                turns=result.turns,
            )
            if is_final:
                raise ValidationExhaustedError(
                    description=task.description,
                    workspace_dir=task.workspace_dir,
                    attempts_exhausted=attempts_budget,
                ) from last_error

        if last_error is None:
            raise RuntimeError("Attempt loop finished without a result or an error.")
        raise last_error

    def _rollback_and_close(  # noqa: PLR0913
        self,
        *,
        checkpoints: CheckpointManager,
        audit: AuditRecorder,
        task: AgentTask,
        attempt: Attempt,
        reason: str,
        error_message: str,
        duration_ms: int | None,
        cost_usd: float,
        turns: int,
    ) -> None:
        try:
            checkpoints.rollback(reason)
        finally:
            attempt.finish(
                success=False,
                duration_ms=duration_ms or None,
                cost_usd=cost_usd,
                turn_count=turns,
                error_message=error_message,
            )
            _safe_audit("attempt end", audit.record_attempt_end, task.task_id, attempt)

    def _commit_and_close(
        self,
        *,
        checkpoints: CheckpointManager,
        audit: AuditRecorder,
        task: AgentTask,
        attempt: Attempt,
        result: ExecutionResult,
    ) -> None:
        committed_id: str | None = None
        try:
            committed_id = checkpoints.commit_success(task.description).id
        except Exception:
            try:
                checkpoints.rollback("success commit failure")
            except Exception:  # noqa: BLE001
                logger.warning("Rollback after failed success commit failed", exc_info=True)
            raise
        finally:
            attempt.finish(
                success=committed_id is not None,
                duration_ms=result.duration_ms or None,
                cost_usd=result.cost_usd,
                turn_count=result.turns,
                error_message=None if committed_id is not None else "Success commit failed",
                checkpoint_id=committed_id,
            )
            _safe_audit("attempt end", audit.record_attempt_end, task.task_id, attempt)

    def _open_audit(self, task: AgentTask) -> AuditRecorder:
        try:
            return self.audit_factory(task)
        except Exception:  # noqa: BLE001
            logger.warning("Audit recorder unavailable for %s", task.task_id, exc_info=True)
            return NullAuditRecorder()


def compose_prompt(prompt: str, context: str) -> str:
    """Prefix the prompt with context when there is any."""

    return f"{context}\n\n{prompt}" if context else prompt


def compose_retry_context(
    context: str,
    partial_results: dict[str, Any],
    *,
    limit: int = RETRY_CONTEXT_LIMIT,
) -> str:
    """Original context plus a bounded summary of the previous attempt's partial results."""

    summary = json.dumps(partial_results, ensure_ascii=False, sort_keys=True, default=str)
    if len(summary) > limit:
        summary = summary[:limit] + "..."
    addition = f"Previous partial results: {summary}"
    return f"{context}\n\n{addition}" if context else addition


def _safe_audit(label: str, record: Callable[..., object], *args: object) -> None:
    try:
        written = record(*args)
    except Exception:  # noqa: BLE001
        logger.warning("Audit %s raised; continuing without it", label, exc_info=True)
        return
    if written is False:
        logger.debug("Audit %s was not persisted", label)


def _git_checkpoint_factory(settings: CheckpointSettings) -> CheckpointFactory:
    def _factory(workspace_dir: Path) -> CheckpointManager:
        return GitCheckpointManager(workspace_dir, settings)

    return _factory


def _audit_session_factory(audit_root: Path, prompt_preview_chars: int) -> AuditFactory:
    def _factory(task: AgentTask) -> AuditRecorder:
        session = AuditSession(
            audit_root,
            task.task_id,
            description=task.description,
            agent_kind=task.agent_kind,
            prompt_preview_chars=prompt_preview_chars,
        )
        session.initialize()
        return session

    return _factory


def ensure_outside_workspace(workspace_dir: Path, paths: Iterable[Path]) -> None:
    """Reject supervisor output paths that a workspace rollback would rewrite."""

    workspace = workspace_dir.resolve()
    for path in paths:
        if path.expanduser().resolve().is_relative_to(workspace):
            raise ValueError(
                f"{path} is inside workspace {workspace}; "
                "checkpoints would track it and rollbacks would erase it.",
            )
