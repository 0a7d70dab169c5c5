"""Typed progress events read from the execution service stream."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

BILLING_KEYWORDS: tuple[str, ...] = ("spending", "cap", "limit", "budget", "resets")
_API_ERROR_MARKERS: tuple[str, ...] = ("api error",)


class EventKind(str, Enum):
    """Event families the driver reacts to."""

    ASSISTANT = "assistant"
    TOOL = "tool"
    ERROR = "error"
    RESULT = "result"
    SYSTEM = "system"
    OTHER = "other"


@dataclass(slots=True)
class StreamEvent:
    """One decoded event from the execution stream."""

    kind: EventKind
    text: str = ""
    cost_usd: float | None = None
    tool_names: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict)


def parse_event_line(line: str) -> StreamEvent | None:
    """Decode one stream-json line. Blank lines yield ``None``."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON stream line: %s", stripped[:120])
        return StreamEvent(kind=EventKind.OTHER, text=stripped)
    if not isinstance(payload, dict):
        return StreamEvent(kind=EventKind.OTHER, text=stripped)
    return event_from_payload(payload)


def event_from_payload(payload: dict[str, Any]) -> StreamEvent:  # noqa: PLR0911
    """Map a decoded message payload onto a typed event."""

    event_type = str(payload.get("type", ""))
    if event_type == "assistant":
        blocks = _content_blocks(payload)
        return StreamEvent(
            kind=EventKind.ASSISTANT,
            text="\n".join(
                str(block.get("text", "")) for block in blocks if block.get("type") == "text"
            ),
            tool_names=tuple(
                str(block.get("name", "")) for block in blocks if block.get("type") == "tool_use"
            ),
            raw=payload,
        )
    if event_type in {"tool_use", "tool_result", "user"}:
        return StreamEvent(
            kind=EventKind.TOOL,
            tool_names=_tool_names(payload),
            raw=payload,
        )
    if event_type == "error":
        return StreamEvent(kind=EventKind.ERROR, text=_error_text(payload), raw=payload)
    if event_type == "result":
        text = payload.get("result")
        cost = _float_or_none(payload.get("total_cost_usd", payload.get("cost_usd")))
        subtype = str(payload.get("subtype", ""))
        if payload.get("is_error") or subtype.startswith("error"):
            return StreamEvent(
                kind=EventKind.ERROR,
                text=str(text or subtype or "execution service reported an error"),
                cost_usd=cost,
                raw=payload,
            )
        return StreamEvent(
            kind=EventKind.RESULT,
            text=str(text) if text is not None else "",
            cost_usd=cost,
            raw=payload,
        )
    if event_type == "system":
        return StreamEvent(kind=EventKind.SYSTEM, raw=payload)
    return StreamEvent(kind=EventKind.OTHER, raw=payload)


def mentions_api_error(text: str) -> bool:
    """Assistant text that reports an upstream API error."""

    lowered = text.lower()
    return any(marker in lowered for marker in _API_ERROR_MARKERS)


def looks_like_billing_cap(*, turn_count: int, cost_usd: float, result_text: str | None) -> bool:
    """Guess whether a near-empty, free result is a provider spending-limit message.

    Legitimate agent work is never free and rarely ends within two turns, so a
    zero-cost result of at most two turns whose text mentions a billing keyword
    is treated as a spending-cap notice rather than real output.
    """

    if turn_count > 2 or cost_usd != 0:
        return False
    lowered = (result_text or "").lower()
    return any(keyword in lowered for keyword in BILLING_KEYWORDS)


def _content_blocks(payload: dict[str, Any]) -> list[dict[str, Any]]:
    message = payload.get("message")
    content: object = message.get("content") if isinstance(message, dict) else payload.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_names(payload: dict[str, Any]) -> tuple[str, ...]:
    name = payload.get("name")
    if isinstance(name, str) and name:
        return (name,)
    return tuple(
        str(block.get("name", ""))
        for block in _content_blocks(payload)
        if block.get("type") == "tool_use"
    )


def _error_text(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or error)
    if error:
        return str(error)
    return str(payload.get("message") or "unknown stream error")


def _float_or_none(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
