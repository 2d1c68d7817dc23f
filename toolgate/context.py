"""Per-request execution context."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field


@dataclass
class ExecutionContext:
    """State threaded through every sub-call of one streaming request."""

    provider: str | None = None
    model: str | None = None
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        """Signal cancellation to the provider read, plugin calls and backoff delays."""
        self.cancelled.set()
