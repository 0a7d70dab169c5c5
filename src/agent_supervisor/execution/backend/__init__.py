"""Execution service backend implementations."""

from agent_supervisor.execution.backend.base import (
    EventStream,
    ExecutionRequest,
    ExecutionService,
    IterableEventStream,
)
from agent_supervisor.execution.backend.cli_backend import CliEventStream, CliStreamBackend

__all__ = [
    "CliEventStream",
    "CliStreamBackend",
    "EventStream",
    "ExecutionRequest",
    "ExecutionService",
    "IterableEventStream",
]
