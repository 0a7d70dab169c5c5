"""Single-call execution driver: consume the event stream, tally turns and cost."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_supervisor.execution.backend.base import EventStream, ExecutionRequest, ExecutionService
from agent_supervisor.execution.errors import AgentExecutionError, BackendRunError
from agent_supervisor.execution.events import (
    EventKind,
    StreamEvent,
    looks_like_billing_cap,
    mentions_api_error,
)
from agent_supervisor.execution.failure_classifier import classify_error
from agent_supervisor.execution.models import (
    ErrorClassification,
    ExecutionConfig,
    ExecutionResult,
    utc_now,
)
from agent_supervisor.execution.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

_PARTIAL_TEXT_CHARS = 1_000


@dataclass(slots=True)
class _StreamTrace:
    """Counters accumulated while one stream is consumed."""

    turn_count: int = 0
    cost_usd: float = 0.0
    result_text: str | None = None
    last_assistant_text: str = ""
    tools_used: list[str] = field(default_factory=list)
    api_error_detected: bool = False
    completed: bool = False

    def partial_results(self) -> dict[str, Any] | None:
        if self.turn_count == 0:
            return None
        return {
            "turns": self.turn_count,
            "last_assistant_text": sanitize_preview(
                self.last_assistant_text,
                max_chars=_PARTIAL_TEXT_CHARS,
            ),
            "tools_used": sorted(set(self.tools_used)),
        }


@dataclass(slots=True)
class _PumpFailure:
    error: Exception


_END_OF_STREAM = object()


class ExecutionDriver:
    """Runs one execution stream to completion. Never retries."""

    def __init__(self, service: ExecutionService) -> None:
        self.service = service

    def execute(self, prompt: str, workspace_dir: Path, config: ExecutionConfig) -> ExecutionResult:
        """Execute ``prompt`` in ``workspace_dir`` and return a successful result.

        Raises:
            AgentExecutionError: on any failure, carrying the duration, cost,
                turn count and partial results gathered before it happened.
        """

        started = time.monotonic()
        trace = _StreamTrace()
        request = ExecutionRequest(
            prompt=prompt,
            working_directory=workspace_dir,
            model_id=config.model,
            max_turns=config.max_turns,
            permission_mode=config.permission_mode,
            tool_servers=dict(config.tool_servers),
        )
        logger.info(
            "Running agent: %s (model=%s, max_turns=%d, cwd=%s)",
            config.description,
            config.model,
            config.max_turns,
            workspace_dir,
        )

        try:
            stream = self.service.stream(request)
            try:
                self._consume(stream, trace=trace, config=config, started=started)
            finally:
                stream.close()

            if not trace.completed:
                raise AgentExecutionError(
                    "Execution stream ended without a terminal result",
                    kind="incomplete_stream",
                    retryable=True,
                )
            if looks_like_billing_cap(
                turn_count=trace.turn_count,
                cost_usd=trace.cost_usd,
                result_text=trace.result_text,
            ):
                raise AgentExecutionError(
                    f"Spending cap likely reached (turns={trace.turn_count}, cost=$0): "
                    f"{(trace.result_text or '')[:100]}",
                    kind="billing",
                    retryable=True,
                )
        except Exception as error:  # noqa: BLE001
            duration_ms = _elapsed_ms(started)
            wrapped = _as_execution_error(error, trace=trace, duration_ms=duration_ms)
            logger.warning(
                "Agent %s failed after %dms (turns=%d): %s",
                config.description,
                duration_ms,
                trace.turn_count,
                wrapped,
            )
            _write_error_log(config=config, prompt=prompt, error=wrapped, workspace_dir=workspace_dir)
            if wrapped is error:
                raise
            raise wrapped from error

        duration_ms = _elapsed_ms(started)
        if trace.api_error_detected:
            logger.warning(
                "API error detected in %s - deliverables will be validated before failing",
                config.description,
            )
        logger.info(
            "Agent %s completed in %dms (turns=%d, cost=$%.4f)",
            config.description,
            duration_ms,
            trace.turn_count,
            trace.cost_usd,
        )
        return ExecutionResult(
            success=True,
            duration_ms=duration_ms,
            turns=trace.turn_count,
            cost_usd=trace.cost_usd,
            text=trace.result_text,
            partial_cost_usd=trace.cost_usd,
            api_error_detected=trace.api_error_detected,
        )

    def _consume(
        self,
        stream: EventStream,
        *,
        trace: _StreamTrace,
        config: ExecutionConfig,
        started: float,
    ) -> None:
        events: Iterator[StreamEvent | None] = (
            _with_heartbeat(stream, interval_seconds=config.heartbeat_interval_seconds)
            if config.heartbeat_enabled
            else iter(stream)
        )
        for event in events:
            if event is None:
                logger.info(
                    "[%ds] %s running... (turn %d)",
                    int(time.monotonic() - started),
                    config.description,
                    trace.turn_count,
                )
                continue

            if event.kind == EventKind.ASSISTANT:
                trace.turn_count += 1
                trace.tools_used.extend(event.tool_names)
                if event.text:
                    trace.last_assistant_text = event.text
                if mentions_api_error(event.text):
                    trace.api_error_detected = True
                    logger.warning("API error reported in turn %d", trace.turn_count)
            elif event.kind == EventKind.TOOL:
                trace.tools_used.extend(event.tool_names)
            elif event.kind == EventKind.ERROR:
                _handle_inline_error(event, trace=trace)
            elif event.kind == EventKind.RESULT:
                trace.cost_usd += event.cost_usd or 0.0
                trace.result_text = event.text
                trace.completed = True
                return


def _handle_inline_error(event: StreamEvent, *, trace: _StreamTrace) -> None:
    if event.cost_usd:
        trace.cost_usd += event.cost_usd
    probe = AgentExecutionError(event.text, kind="api_error")
    classification = classify_error(probe)
    if classification.error_class == ErrorClassification.RETRYABLE:
        trace.api_error_detected = True
        logger.warning("Transient API error in stream, continuing: %s", event.text[:200])
        return
    if classification.error_class == ErrorClassification.BILLING_RETRYABLE:
        raise AgentExecutionError(event.text, kind="billing", retryable=True)
    raise probe


def _with_heartbeat(
    stream: EventStream,
    *,
    interval_seconds: float,
) -> Iterator[StreamEvent | None]:
    """Yield stream events, and ``None`` whenever no event arrived for an interval."""

    channel: queue.Queue[object] = queue.Queue()

    def _pump() -> None:
        try:
            for event in stream:
                channel.put(event)
        except Exception as error:  # noqa: BLE001
            channel.put(_PumpFailure(error))
            return
        channel.put(_END_OF_STREAM)

    threading.Thread(target=_pump, name="agent-event-pump", daemon=True).start()
    while True:
        try:
            item = channel.get(timeout=interval_seconds)
        except queue.Empty:
            yield None
            continue
        if item is _END_OF_STREAM:
            return
        if isinstance(item, _PumpFailure):
            raise item.error
        yield item  # type: ignore[misc]


def _as_execution_error(
    error: Exception,
    *,
    trace: _StreamTrace,
    duration_ms: int,
) -> AgentExecutionError:
    if isinstance(error, AgentExecutionError):
        wrapped = error
    elif isinstance(error, BackendRunError):
        wrapped = AgentExecutionError(str(error), kind="backend", retryable=error.transient)
    else:
        wrapped = AgentExecutionError(
            str(error) or type(error).__name__,
            kind=type(error).__name__,
            retryable=True if isinstance(error, (TimeoutError, ConnectionError)) else None,
        )
    wrapped.duration_ms = duration_ms
    wrapped.cost_usd = trace.cost_usd
    wrapped.turns = trace.turn_count
    if wrapped.partial_results is None:
        wrapped.partial_results = trace.partial_results()
    return wrapped


def _write_error_log(
    *,
    config: ExecutionConfig,
    prompt: str,
    error: AgentExecutionError,
    workspace_dir: Path,
) -> None:
    if config.error_log_path is None:
        return
    record = {
        "timestamp": utc_now().isoformat(),
        "agent": config.description,
        "error": {
            "kind": error.kind,
            "message": sanitize_preview(str(error)),
            "retryable": error.retryable,
        },
        "context": {
            "workspace_dir": str(workspace_dir),
            "prompt": sanitize_preview(prompt, max_chars=200),
            "turns": error.turns,
            "cost_usd": error.cost_usd,
        },
        "duration_ms": error.duration_ms,
    }
    try:
        config.error_log_path.parent.mkdir(parents=True, exist_ok=True)
        with config.error_log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
    except OSError as log_error:
        logger.warning("Failed to write error log %s: %s", config.error_log_path, log_error)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
