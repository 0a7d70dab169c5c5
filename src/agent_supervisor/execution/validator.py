"""Deliverable validation gate keyed by agent kind."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path

from agent_supervisor.execution.deliverables import DELIVERABLES_DIRNAME
from agent_supervisor.execution.models import ExecutionResult

logger = logging.getLogger(__name__)

AgentValidator = Callable[[Path], bool]


class ValidatorGate:
    """Confirms that a successful execution left its required deliverables behind."""

    def __init__(self, validators: Mapping[str, AgentValidator] | None = None) -> None:
        self._validators: dict[str, AgentValidator] = dict(validators or {})

    def register(self, agent_kind: str, validator: AgentValidator) -> None:
        self._validators[agent_kind] = validator

    def validate(
        self,
        result: ExecutionResult,
        agent_kind: str | None,
        workspace_dir: Path,
    ) -> bool:
        """Fail closed on unsuccessful or empty results; unmapped kinds pass through."""

        if not result.success or not result.text:
            logger.info("Validation failed: agent execution was unsuccessful or empty")
            return False

        validator = self._validators.get(agent_kind) if agent_kind else None
        if validator is None:
            logger.info("No validator registered for agent kind %r - assuming success", agent_kind)
            return True

        try:
            passed = bool(validator(workspace_dir))
        except Exception:  # noqa: BLE001
            logger.exception("Validator for %r raised; treating as validation failure", agent_kind)
            return False

        if passed:
            logger.info("Validation passed for %r: required deliverables present", agent_kind)
        else:
            logger.info("Validation failed for %r: missing required deliverables", agent_kind)
        return passed


def deliverables_present(*filenames: str) -> AgentValidator:
    """Predicate passing when every file exists and is non-empty under ``deliverables/``."""

    if not filenames:
        raise ValueError("At least one deliverable filename is required.")

    def _validator(workspace_dir: Path) -> bool:
        deliverables_dir = workspace_dir / DELIVERABLES_DIRNAME
        for filename in filenames:
            path = deliverables_dir / filename
            if not path.is_file() or path.stat().st_size == 0:
                logger.debug("Missing deliverable %s", path)
                return False
        return True

    return _validator
