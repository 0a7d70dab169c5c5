"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from typing import Any

import pytest

from agent_supervisor.execution.backend.base import ExecutionRequest, IterableEventStream
from agent_supervisor.execution.events import StreamEvent, event_from_payload

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_supervisor.execution.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

Script = list[Any] | BaseException | Callable[[ExecutionRequest], Any]


class EventFactory:
    """Builds stream events from stream-json shaped payloads."""

    @staticmethod
    def assistant(text: str, *tools: str) -> StreamEvent:
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        content.extend({"type": "tool_use", "name": tool, "input": {}} for tool in tools)
        return event_from_payload({"type": "assistant", "message": {"content": content}})

    @staticmethod
    def result(text: str = "done", cost: float = 0.1) -> StreamEvent:
        return event_from_payload(
            {"type": "result", "subtype": "success", "result": text, "total_cost_usd": cost},
        )

    @staticmethod
    def error(message: str) -> StreamEvent:
        return event_from_payload({"type": "error", "error": {"message": message}})


class ScriptedService:
    """In-memory execution service replaying one script per ``stream`` call.

    A script is a list of events (exceptions inside it are raised mid-stream),
    an exception raised from ``stream`` itself, or a callable receiving the
    request and returning either of those. Callables can edit the workspace
    the way a real agent would.
    """

    def __init__(self, scripts: Iterable[Script]) -> None:
        self._scripts = list(scripts)
        self.requests: list[ExecutionRequest] = []
        self.streams: list[IterableEventStream] = []

    def stream(self, request: ExecutionRequest) -> IterableEventStream:
        self.requests.append(request)
        if not self._scripts:
            raise AssertionError("ScriptedService has no script left")
        script = self._scripts.pop(0)
        if callable(script):
            script = script(request)
        if isinstance(script, BaseException):
            raise script
        stream = IterableEventStream(_replay(script))
        self.streams.append(stream)
        return stream


def _replay(items: list[Any]) -> Iterator[StreamEvent]:
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


@pytest.fixture()
def events() -> type[EventFactory]:
    return EventFactory


@pytest.fixture()
def scripted_service() -> type[ScriptedService]:
    return ScriptedService


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Workspace with one tracked seed file; git is initialised lazily by the supervisor."""

    path = tmp_path / "workspace"
    path.mkdir()
    (path / "README.md").write_text("seed\n", "utf-8")
    return path


@pytest.fixture()
def audit_root(tmp_path: Path) -> Path:
    return tmp_path / "audit"


@pytest.fixture()
def git_log() -> Callable[[Path], list[str]]:
    """Commit subjects of a workspace repository, newest first."""

    def _log(path: Path) -> list[str]:
        completed = subprocess.run(
            ["git", "log", "--format=%s"],
            cwd=path,
            capture_output=True,
            text=True,
            check=True,
        )
        return completed.stdout.splitlines()

    return _log


@pytest.fixture()
def echo_agent_command() -> str:
    """Command template running the scripted stream-json echo agent."""

    return ECHO_AGENT_COMMAND_TEMPLATE
