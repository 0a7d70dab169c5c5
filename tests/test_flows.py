from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_supervisor.config import AuditSettings, RetrySettings, Settings
from agent_supervisor.execution.audit import read_audit_log
from agent_supervisor.execution.deliverables import save_deliverable
from agent_supervisor.execution.errors import ValidationExhaustedError
from agent_supervisor.execution.models import AgentTask
from agent_supervisor.execution.validator import deliverables_present
from agent_supervisor.flows import supervise_agent_task

pytestmark = [
    allure.epic("Agent Supervisor"),
    allure.feature("Workflow Integration"),
]


def _settings(audit_root: Path, max_attempts: int = 1) -> Settings:
    return Settings(
        retry=RetrySettings(max_attempts=max_attempts, retry_base_seconds=0),
        audit=AuditSettings(audit_root=audit_root),
    )


def _agent_task(workspace: Path) -> AgentTask:
    return AgentTask(
        task_id="flow-1",
        description="flow task",
        prompt="Produce the summary.",
        workspace_dir=workspace,
        agent_kind="summary",
    )


def test_supervise_agent_task_runs_supervisor(
    workspace: Path,
    audit_root: Path,
    scripted_service,
    events,
) -> None:
    def _script(request):
        save_deliverable(request.working_directory, "summary.md", "done")
        return [events.assistant("summarizing"), events.result("summary ready", cost=0.3)]

    result = supervise_agent_task.fn(
        agent_task=_agent_task(workspace),
        settings=_settings(audit_root),
        validators={"summary": deliverables_present("summary.md")},
        service=scripted_service([_script]),
    )

    assert result.success is True
    assert result.text == "summary ready"
    assert read_audit_log(audit_root, "flow-1")[-1]["event"] == "session_end"


def test_supervise_agent_task_raises_when_validation_is_exhausted(
    workspace: Path,
    audit_root: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service([[events.assistant("nothing"), events.result("no file")]])

    with pytest.raises(ValidationExhaustedError):
        supervise_agent_task.fn(
            agent_task=_agent_task(workspace),
            settings=_settings(audit_root),
            validators={"summary": deliverables_present("summary.md")},
            service=service,
        )
