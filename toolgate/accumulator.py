"""Reassembly of function calls streamed as fragments across provider deltas."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from .provider import CallComplete, FunctionCallDelta

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class FunctionInvocation:
    """One complete function call ready for governed execution."""

    index: int
    call_id: str
    name: str
    arguments_json: str

    @property
    def arguments(self) -> dict[str, Any]:
        parsed = json.loads(self.arguments_json) if self.arguments_json.strip() else {}
        return parsed if isinstance(parsed, dict) else {"value": parsed}


@dataclass
class _PendingCall:
    index: int
    call_id: str | None = None
    name_parts: list[str] = field(default_factory=list)
    argument_parts: list[str] = field(default_factory=list)
    completed: bool = False

    @property
    def name(self) -> str:
        return "".join(self.name_parts).strip()

    @property
    def arguments_json(self) -> str:
        return "".join(self.argument_parts)


class FunctionCallAccumulator:
    """Merge function-call fragments into complete per-index invocations.

    An invocation is released only after the provider signals completion for
    its index, either with `CallComplete` or a fragment marked `complete`, and
    the buffered arguments are valid JSON. An empty buffer at completion is `{}`.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self._released: set[int] = set()

    @property
    def in_progress(self) -> bool:
        """True while at least one call is still being assembled."""
        return bool(self._pending)

    def feed(self, delta: FunctionCallDelta | CallComplete) -> FunctionInvocation | None:
        """Add one fragment; return the invocation once it is complete."""
        if delta.index in self._released:
            if isinstance(delta, FunctionCallDelta) and (delta.name or delta.arguments):
                LOG.warning("ignoring fragment for already dispatched call index=%s", delta.index)
            return None

        entry = self._pending.setdefault(delta.index, _PendingCall(index=delta.index))
        if isinstance(delta, CallComplete):
            entry.completed = True
        else:
            if delta.call_id:
                entry.call_id = delta.call_id
            if delta.name:
                entry.name_parts.append(delta.name)
            if delta.arguments:
                entry.argument_parts.append(delta.arguments)
            if delta.complete:
                entry.completed = True

        if not entry.completed or not entry.name:
            return None
        raw = entry.arguments_json
        if not raw.strip():
            return self._release(entry, "{}")
        try:
            json.loads(raw)
        except json.JSONDecodeError:
            return None
        return self._release(entry, raw)

    def _release(self, entry: _PendingCall, raw: str) -> FunctionInvocation:
        del self._pending[entry.index]
        self._released.add(entry.index)
        return FunctionInvocation(
            index=entry.index,
            call_id=entry.call_id or f"call_{uuid.uuid4().hex}",
            name=entry.name,
            arguments_json=raw,
        )

    def drain_incomplete(self) -> list[tuple[str, str]]:
        """Return `(name, raw_arguments)` for calls never assembled, and forget them."""
        leftovers = [
            (entry.name or "unknown", entry.arguments_json)
            for _, entry in sorted(self._pending.items())
            if entry.name_parts or entry.argument_parts
        ]
        self._pending.clear()
        return leftovers
