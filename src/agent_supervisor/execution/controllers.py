"""Controllers for supervisor CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_supervisor.config import Settings
from agent_supervisor.execution.audit import audit_log_path, read_audit_log
from agent_supervisor.execution.deliverables import save_deliverable
from agent_supervisor.execution.errors import CheckpointError
from agent_supervisor.execution.failure_classifier import classify_error
from agent_supervisor.execution.models import AgentTask
from agent_supervisor.execution.supervisor import RetrySupervisor
from agent_supervisor.execution.validator import ValidatorGate, deliverables_present

logger = logging.getLogger(__name__)

_DEFAULT_AGENT_KIND = "cli"


@dataclass(slots=True)
class RunTaskCommand:
    """CLI inputs for one supervised run."""

    workspace_dir: Path
    prompt: str
    task_id: str | None
    description: str
    agent_kind: str | None
    context: str
    required_deliverables: tuple[str, ...]
    max_attempts: int | None
    audit_root: Path | None
    tool_servers_file: Path | None


@dataclass(slots=True)
class RunTaskResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class AuditShowCommand:
    """CLI inputs for audit trail inspection."""

    task_id: str
    audit_root: Path | None


@dataclass(slots=True)
class SaveDeliverableCommand:
    """CLI inputs for deliverable save command."""

    workspace_dir: Path
    filename: str
    content: str


class SupervisorCliController:
    """Coordinates supervised runs, audit inspection and deliverable writes."""

    def run(self, command: RunTaskCommand) -> RunTaskResult:
        settings = Settings.from_env(audit_root=command.audit_root)
        settings.validate()

        task = AgentTask(
            task_id=command.task_id or uuid4().hex,
            description=command.description,
            prompt=command.prompt,
            workspace_dir=command.workspace_dir.resolve(),
            agent_kind=command.agent_kind,
            context=command.context,
        )
        validator = ValidatorGate()
        if command.required_deliverables:
            task.agent_kind = task.agent_kind or _DEFAULT_AGENT_KIND
            validator.register(task.agent_kind, deliverables_present(*command.required_deliverables))

        supervisor = RetrySupervisor.from_settings(
            settings,
            validator=validator,
            tool_servers=_load_tool_servers(command.tool_servers_file),
        )
        lines = [
            f"Task {task.task_id}: {task.description} (workspace={task.workspace_dir})",
        ]
        try:
            result = supervisor.run_with_retry(task, max_attempts=command.max_attempts)
        except CheckpointError as error:
            lines.append(f"Workspace checkpoint failed: {error}")
            return RunTaskResult(lines=lines, success=False)
        except Exception as error:  # noqa: BLE001
            logger.debug("Task %s failed", task.task_id, exc_info=True)
            classification = classify_error(error)
            lines.append(
                f"Task failed ({classification.error_class.value}, "
                f"{classification.reason_code}): {error}",
            )
            lines.extend(_audit_hint(settings, task.task_id))
            return RunTaskResult(lines=lines, success=False)

        lines.append(
            "Task succeeded: "
            f"turns={result.turns} cost=${result.cost_usd:.4f} "
            f"duration={result.duration_ms}ms "
            f"api_error_detected={'yes' if result.api_error_detected else 'no'}",
        )
        if result.text:
            lines.append(f"Result: {result.text}")
        lines.extend(_audit_hint(settings, task.task_id))
        return RunTaskResult(lines=lines, success=True)

    def audit(self, command: AuditShowCommand) -> list[str]:
        settings = Settings.from_env(audit_root=command.audit_root)
        audit_root = settings.audit.audit_root
        if audit_root is None:
            return ["Audit trail is disabled."]
        records = read_audit_log(audit_root, command.task_id)
        if not records:
            return [f"No audit records for task {command.task_id}."]

        lines = [f"Audit trail: {audit_log_path(audit_root, command.task_id)}"]
        for record in records:
            lines.append(_format_audit_record(record))
        return lines

    def save_deliverable(self, command: SaveDeliverableCommand) -> list[str]:
        path = save_deliverable(command.workspace_dir, command.filename, command.content)
        return [f"Saved deliverable: {path} ({len(command.content.encode('utf-8'))} bytes)"]


def _load_tool_servers(path: Path | None) -> dict[str, dict[str, Any]]:
    if path is None:
        return {}
    payload = json.loads(path.read_text("utf-8"))
    if isinstance(payload, dict) and isinstance(payload.get("mcpServers"), dict):
        payload = payload["mcpServers"]
    if not isinstance(payload, dict):
        raise ValueError(f"Tool server config must be a JSON object: {path}")
    return payload


def _audit_hint(settings: Settings, task_id: str) -> list[str]:
    if settings.audit.audit_root is None:
        return []
    return [f"Audit trail: {audit_log_path(settings.audit.audit_root, task_id)}"]


def _format_audit_record(record: dict[str, Any]) -> str:
    event = record.get("event", "?")
    timestamp = record.get("timestamp", "-")
    if event == "attempt_start":
        return (
            f"  {timestamp} attempt {record.get('attempt_number')} started "
            f"prompt_chars={record.get('prompt_chars')}"
        )
    if event == "attempt_end":
        status = "success" if record.get("success") else "failure"
        checkpoint = record.get("checkpoint_id") or "-"
        line = (
            f"  {timestamp} attempt {record.get('attempt_number')} {status} "
            f"duration={record.get('duration_ms')}ms "
            f"turns={record.get('turn_count')} cost=${float(record.get('cost_usd') or 0):.4f} "
            f"checkpoint={checkpoint[:7]}"
        )
        if record.get("error_message"):
            line += f" error={record['error_message']}"
        return line
    if event == "session_end":
        return (
            f"  {timestamp} session end attempts={record.get('attempts')} "
            f"total_cost=${float(record.get('total_cost_usd') or 0):.4f}"
        )
    return f"  {timestamp} {event}"
