"""Stream events produced by the orchestrator and their SSE wire encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from .errors import ErrorKind


@dataclass(frozen=True)
class ContentDelta:
    """Model-generated text."""

    text: str


@dataclass(frozen=True)
class FunctionCallDetected:
    """A complete function call was assembled from provider deltas."""

    name: str
    raw_arguments: str


@dataclass(frozen=True)
class FunctionExecuting:
    """Emitted immediately before a plugin is dispatched."""

    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class FunctionCompleted:
    """A plugin returned a result."""

    name: str
    result: str
    duration_ms: int


@dataclass(frozen=True)
class FunctionFailed:
    """A call was rejected or failed; `recovered` marks a substituted fallback."""

    name: str
    error_kind: ErrorKind
    recovered: bool = False
    message: str = ""


@dataclass(frozen=True)
class Final:
    """Terminal event; `error` carries a sanitized reason when the stream was cut short."""

    error: str | None = None


StreamEvent = Union[ContentDelta, FunctionCallDetected, FunctionExecuting, FunctionCompleted, FunctionFailed, Final]


def _parsed_arguments(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def event_payload(event: StreamEvent) -> dict[str, Any]:
    """Render one event as the JSON object sent to clients."""
    if isinstance(event, ContentDelta):
        return {"type": "content", "content": event.text, "isFinal": False}
    if isinstance(event, FunctionCallDetected):
        payload: dict[str, Any] = {"type": "function_call", "functionName": event.name, "isFinal": False}
        arguments = _parsed_arguments(event.raw_arguments)
        if arguments is not None:
            payload["arguments"] = arguments
        return payload
    if isinstance(event, FunctionExecuting):
        return {
            "type": "function_executing",
            "functionName": event.name,
            "arguments": event.arguments,
            "isFinal": False,
        }
    if isinstance(event, FunctionCompleted):
        return {
            "type": "function_completed",
            "functionName": event.name,
            "result": event.result,
            "durationMs": event.duration_ms,
            "isFinal": False,
        }
    if isinstance(event, FunctionFailed):
        return {
            "type": "function_failed",
            "functionName": event.name,
            "error": event.message or event.error_kind.value,
            "errorKind": event.error_kind.value,
            "recovered": event.recovered,
            "isFinal": False,
        }
    if isinstance(event, Final):
        payload = {"type": "final", "isFinal": True}
        if event.error:
            payload["error"] = event.error
        return payload
    raise TypeError(f"Unsupported stream event {type(event).__name__}")


def sse_event(event: StreamEvent) -> bytes:
    """Encode one event as an SSE `data:` line."""
    return f"data: {json.dumps(event_payload(event), ensure_ascii=False)}\n\n".encode("utf-8")
