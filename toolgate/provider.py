"""Model completion provider interface.

Every provider adapter maps its streaming chunks into the closed delta union
defined here; the orchestrator never inspects provider-specific payloads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Protocol, Union

from .context import ExecutionContext


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class FunctionCallDelta:
    """A fragment of one function call, keyed by provider call index.

    `complete` marks the last fragment of the call, for providers that signal
    completion on the fragment itself instead of a separate `CallComplete`.
    """

    index: int
    name: str | None = None
    arguments: str | None = None
    call_id: str | None = None
    complete: bool = False


@dataclass(frozen=True)
class CallComplete:
    """The provider finished emitting the call at `index`."""

    index: int


ProviderDelta = Union[TextDelta, FunctionCallDelta, CallComplete]


class ModelCompletionProvider(Protocol):
    """Streaming chat-completion source consumed by the orchestrator."""

    def stream_completion(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        ctx: ExecutionContext,
    ) -> AsyncIterator[ProviderDelta]:
        """Stream deltas for one completion round."""
        ...
