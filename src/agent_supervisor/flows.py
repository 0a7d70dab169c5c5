"""Prefect entry points for supervised agent tasks.

A durable scheduler runs ``agent_task_flow``; each task goes through
``supervise_agent_task``, which owns the whole retry loop. Prefect task retries
stay disabled so a failed task is never re-run on top of a rolled-back
workspace with a fresh attempt budget.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from prefect import flow, task

from agent_supervisor.config import Settings
from agent_supervisor.execution.backend.base import ExecutionService
from agent_supervisor.execution.models import AgentTask, ExecutionResult
from agent_supervisor.execution.supervisor import RetrySupervisor
from agent_supervisor.execution.validator import AgentValidator, ValidatorGate

logger = logging.getLogger(__name__)


@task(name="supervise-agent-task", retries=0)
def supervise_agent_task(
    *,
    agent_task: AgentTask,
    settings: Settings | None = None,
    validators: Mapping[str, AgentValidator] | None = None,
    service: ExecutionService | None = None,
    max_attempts: int | None = None,
) -> ExecutionResult:
    """Run one agent task under the retry supervisor."""

    effective_settings = settings or Settings.from_env()
    effective_settings.validate()
    supervisor = RetrySupervisor.from_settings(
        effective_settings,
        validator=ValidatorGate(validators),
        service=service,
    )
    return supervisor.run_with_retry(agent_task, max_attempts=max_attempts)


@flow(name="agent_task_flow", validate_parameters=False)
def agent_task_flow(
    *,
    agent_tasks: list[AgentTask],
    settings: Settings | None = None,
    validators: Mapping[str, AgentValidator] | None = None,
) -> dict[str, ExecutionResult]:
    """Run agent tasks one after another; the first failure fails the flow."""

    results: dict[str, ExecutionResult] = {}
    for agent_task in agent_tasks:
        logger.info("Supervising %s (%s)", agent_task.task_id, agent_task.description)
        results[agent_task.task_id] = supervise_agent_task(
            agent_task=agent_task,
            settings=settings,
            validators=validators,
        )
    return results
