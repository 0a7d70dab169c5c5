"""Execution service interface consumed by the driver."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from agent_supervisor.execution.events import StreamEvent


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to start one execution stream."""

    prompt: str
    working_directory: Path
    model_id: str
    max_turns: int
    permission_mode: str
    tool_servers: dict[str, dict[str, Any]] = field(default_factory=dict)


class EventStream(Protocol):
    """Finite, non-restartable, cancelable sequence of stream events."""

    def __iter__(self) -> Iterator[StreamEvent]: ...

    def close(self) -> None:
        """Stop producing events and release backend resources."""


class ExecutionService(Protocol):
    """Protocol implemented by execution service backends."""

    def stream(self, request: ExecutionRequest) -> EventStream:
        """Start execution and return its event stream."""


class IterableEventStream:
    """Event stream over an in-memory or generator source."""

    def __init__(self, events: Iterable[StreamEvent]) -> None:
        self._iterator = iter(events)
        self.closed = False

    def __iter__(self) -> Iterator[StreamEvent]:
        for event in self._iterator:
            if self.closed:
                return
            yield event

    def close(self) -> None:
        self.closed = True
