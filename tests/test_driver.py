from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from agent_supervisor.execution.backend.base import ExecutionRequest, IterableEventStream
from agent_supervisor.execution.driver import ExecutionDriver
from agent_supervisor.execution.errors import AgentExecutionError, BackendRunError
from agent_supervisor.execution.events import StreamEvent
from agent_supervisor.execution.models import ExecutionConfig

pytestmark = [
    allure.epic("Agent Supervisor"),
    allure.feature("Execution Driver"),
]


def _config(**overrides: object) -> ExecutionConfig:
    return ExecutionConfig(
        model="test-model",
        description="driver test",
        **overrides,  # type: ignore[arg-type]
    )


def test_execute_counts_turns_and_cost(tmp_path: Path, scripted_service, events) -> None:
    service = scripted_service(
        [
            [
                events.assistant("Planning"),
                events.assistant("Writing", "save_deliverable"),
                events.result("Report written", cost=0.37),
            ],
        ],
    )

    result = ExecutionDriver(service).execute("write the report", tmp_path, _config())

    assert result.success is True
    assert result.turns == 2
    assert result.cost_usd == pytest.approx(0.37)
    assert result.partial_cost_usd == pytest.approx(0.37)
    assert result.text == "Report written"
    assert result.api_error_detected is False
    request = service.requests[0]
    assert request.prompt == "write the report"
    assert request.working_directory == tmp_path
    assert request.model_id == "test-model"
    assert service.streams[0].closed is True


def test_terminal_result_stops_consumption(tmp_path: Path, scripted_service, events) -> None:
    service = scripted_service(
        [[events.assistant("one"), events.result("done"), events.assistant("ignored")]],
    )

    result = ExecutionDriver(service).execute("p", tmp_path, _config())

    assert result.turns == 1


def test_transient_inline_error_sets_flag_and_continues(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service(
        [
            [
                events.assistant("Working"),
                events.error("Overloaded, please slow down"),
                events.assistant("Still working"),
                events.result("done"),
            ],
        ],
    )

    result = ExecutionDriver(service).execute("p", tmp_path, _config())

    assert result.success is True
    assert result.api_error_detected is True
    assert result.turns == 2


def test_api_error_text_in_assistant_turn_sets_flag(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service(
        [[events.assistant("API Error: 500 Internal server error"), events.result("done")]],
    )

    result = ExecutionDriver(service).execute("p", tmp_path, _config())

    assert result.api_error_detected is True


def test_fatal_inline_error_raises_and_closes_stream(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service(
        [
            [
                events.assistant("Starting"),
                events.error("authentication failed: invalid api key"),
                events.result("never reached"),
            ],
        ],
    )

    with pytest.raises(AgentExecutionError, match="authentication failed") as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    assert error_info.value.kind == "api_error"
    assert error_info.value.turns == 1
    assert service.streams[0].closed is True


def test_billing_inline_error_raises_billing_error(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service([[events.error("Credit balance is too low")]])

    with pytest.raises(AgentExecutionError) as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    assert error_info.value.kind == "billing"
    assert error_info.value.retryable is True


def test_stream_without_terminal_result_is_retryable(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service([[events.assistant("Working", "Edit")]])

    with pytest.raises(AgentExecutionError) as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    error = error_info.value
    assert error.kind == "incomplete_stream"
    assert error.retryable is True
    assert error.partial_results == {
        "turns": 1,
        "last_assistant_text": "Working",
        "tools_used": ["Edit"],
    }


def test_billing_cap_result_is_raised_as_billing_error(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service(
        [[events.assistant("Hi"), events.result("Spending cap reached, resets at 5pm", cost=0)]],
    )

    with pytest.raises(AgentExecutionError, match="Spending cap likely reached") as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    assert error_info.value.kind == "billing"
    assert error_info.value.retryable is True


def test_free_short_result_without_keywords_succeeds(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service([[events.assistant("Hi"), events.result("Nothing to do", cost=0)]])

    result = ExecutionDriver(service).execute("p", tmp_path, _config())

    assert result.success is True
    assert result.cost_usd == 0


def test_backend_start_failure_is_wrapped(tmp_path: Path, scripted_service) -> None:
    service = scripted_service([BackendRunError("command not found: claude", transient=False)])

    with pytest.raises(AgentExecutionError) as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    assert error_info.value.kind == "backend"
    assert error_info.value.retryable is False
    assert isinstance(error_info.value.__cause__, BackendRunError)


def test_mid_stream_connection_error_keeps_partial_results(
    tmp_path: Path,
    scripted_service,
    events,
) -> None:
    service = scripted_service(
        [[events.assistant("Halfway there", "Write"), ConnectionError("connection reset")]],
    )

    with pytest.raises(AgentExecutionError) as error_info:
        ExecutionDriver(service).execute("p", tmp_path, _config())

    error = error_info.value
    assert error.retryable is True
    assert error.turns == 1
    assert error.partial_results is not None
    assert error.partial_results["last_assistant_text"] == "Halfway there"


def test_error_log_is_appended_on_failure(tmp_path: Path, scripted_service, events) -> None:
    error_log = tmp_path / "logs" / "errors.jsonl"
    service = scripted_service([[events.error("forbidden: sk-abcdefghijkl123")]])

    with pytest.raises(AgentExecutionError):
        ExecutionDriver(service).execute("p", tmp_path, _config(error_log_path=error_log))

    record = json.loads(error_log.read_text("utf-8").strip())
    assert record["agent"] == "driver test"
    assert record["error"]["kind"] == "api_error"
    assert "sk-abcdefghijkl123" not in record["error"]["message"]


class _SlowService:
    def __init__(self, events: list[StreamEvent], pause_seconds: float) -> None:
        self._events = events
        self._pause_seconds = pause_seconds

    def stream(self, request: ExecutionRequest) -> IterableEventStream:
        return IterableEventStream(self._slow())

    def _slow(self) -> Iterator[StreamEvent]:
        for event in self._events:
            time.sleep(self._pause_seconds)
            yield event


def test_heartbeat_logs_progress_while_waiting(
    tmp_path: Path,
    events,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="agent_supervisor.execution.driver")
    service = _SlowService([events.assistant("slow"), events.result("done")], pause_seconds=0.3)

    result = ExecutionDriver(service).execute(
        "p",
        tmp_path,
        _config(heartbeat_enabled=True, heartbeat_interval_seconds=0.05),
    )

    assert result.success is True
    assert result.turns == 1
    assert any("running..." in record.getMessage() for record in caplog.records)


def test_heartbeat_propagates_stream_errors(tmp_path: Path, scripted_service, events) -> None:
    service = scripted_service([[events.assistant("x"), TimeoutError("read timed out")]])

    with pytest.raises(AgentExecutionError) as error_info:
        ExecutionDriver(service).execute(
            "p",
            tmp_path,
            _config(heartbeat_enabled=True, heartbeat_interval_seconds=0.05),
        )

    assert error_info.value.retryable is True
