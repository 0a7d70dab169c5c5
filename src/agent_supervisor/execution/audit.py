"""Append-only audit trail of attempt lifecycle events.

Recording is best effort: every write failure is logged and reported through
the boolean return value, never raised. The supervisor behaves the same with
or without a working sink.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from types import TracebackType
from typing import Any, Protocol

from agent_supervisor.execution.models import Attempt, utc_now
from agent_supervisor.execution.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

AUDIT_FILENAME = "audit.jsonl"
_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


class AuditRecorder(Protocol):
    """Fire-and-forget recorder bound to one task."""

    def record_attempt_start(self, task_id: str, prompt: str, attempt_number: int) -> bool: ...

    def record_attempt_end(self, task_id: str, attempt: Attempt) -> bool: ...

    def close(self) -> None: ...


class NullAuditRecorder:
    """Recorder used when no audit sink is configured."""

    def record_attempt_start(self, task_id: str, prompt: str, attempt_number: int) -> bool:
        return True

    def record_attempt_end(self, task_id: str, attempt: Attempt) -> bool:
        return True

    def close(self) -> None:
        return None


class AuditSession:
    """JSON Lines audit session for one task: ``<audit_root>/<task_id>/audit.jsonl``."""

    def __init__(
        self,
        audit_root: Path,
        task_id: str,
        *,
        description: str = "",
        agent_kind: str | None = None,
        prompt_preview_chars: int = 500,
    ) -> None:
        self.audit_root = audit_root
        self.task_id = task_id
        self.description = description
        self.agent_kind = agent_kind
        self.prompt_preview_chars = prompt_preview_chars
        self._attempts = 0
        self._total_cost_usd = 0.0
        self._closed = False

    @property
    def path(self) -> Path:
        return audit_log_path(self.audit_root, self.task_id)

    def initialize(self) -> bool:
        return self._append(
            {
                "event": "session_start",
                "task_id": self.task_id,
                "description": self.description,
                "agent_kind": self.agent_kind,
            },
        )

    def record_attempt_start(self, task_id: str, prompt: str, attempt_number: int) -> bool:
        return self._append(
            {
                "event": "attempt_start",
                "task_id": task_id,
                "attempt_number": attempt_number,
                "prompt_chars": len(prompt),
                "prompt_preview": sanitize_preview(prompt, max_chars=self.prompt_preview_chars),
            },
        )

    def record_attempt_end(self, task_id: str, attempt: Attempt) -> bool:
        self._attempts += 1
        self._total_cost_usd += attempt.cost_usd
        record: dict[str, Any] = {"event": "attempt_end", "task_id": task_id}
        record.update(attempt.to_record())
        if attempt.error_message is not None:
            record["error_message"] = sanitize_preview(attempt.error_message)
        return self._append(record)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._append(
            {
                "event": "session_end",
                "task_id": self.task_id,
                "attempts": self._attempts,
                "total_cost_usd": round(self._total_cost_usd, 6),
            },
        )

    def __enter__(self) -> AuditSession:
        self.initialize()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def _append(self, record: dict[str, Any]) -> bool:
        payload = {"timestamp": utc_now().isoformat(), **record}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(payload, ensure_ascii=False, default=str)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Audit write failed for %s (%s): %s", self.task_id, record["event"], error)
            return False
        return True


def audit_log_path(audit_root: Path, task_id: str) -> Path:
    """Location of the audit log for ``task_id``."""

    segment = _UNSAFE_SEGMENT.sub("_", task_id).strip("._") or "task"
    return audit_root / segment / AUDIT_FILENAME


def read_audit_log(audit_root: Path, task_id: str) -> list[dict[str, Any]]:
    """Load audit records for a task, skipping lines that are not JSON objects."""

    path = audit_log_path(audit_root, task_id)
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    for line in path.read_text("utf-8").splitlines():
        if not line.strip():
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            records.append(payload)
    return records
