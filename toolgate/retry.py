"""Bounded exponential-backoff retry with a degraded fallback result."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

import httpx

from .errors import PluginArgumentError, PluginError, PluginNotFoundError

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExecutionOutcome(Generic[T]):
    """Result of one retried operation; `degraded` marks a fallback result."""

    result: T | str
    degraded: bool = False
    error: Exception | None = None
    attempts: int = 1
    transient: bool = False


def default_is_transient(exc: Exception) -> bool:
    """Classify plugin failures that are worth retrying."""
    if isinstance(exc, PluginError):
        return exc.transient
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        if status is None:
            return False
        return status == 429 or status >= 500
    return False


def fallback_response(plugin_name: str, exc: Exception, *, transient: bool) -> str:
    """Build a model-visible failure note that never exposes internal detail."""
    if isinstance(exc, PluginArgumentError):
        return f"The {plugin_name} plugin rejected the arguments: {exc}. Correct the arguments before calling it again."
    if isinstance(exc, PluginNotFoundError):
        return f"The {plugin_name} plugin is not available. Answer without it."
    if transient:
        return f"The {plugin_name} plugin is temporarily unavailable. Try again later or answer without it."
    return f"The {plugin_name} plugin could not complete the request. Answer without it."


class RetryExecutor:
    """Retry transient failures with exponential backoff, then degrade."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1` (attempt is zero-based)."""
        return min(self.max_delay, self.base_delay * (2**attempt))

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_transient: Callable[[Exception], bool] = default_is_transient,
        max_retries: int | None = None,
        *,
        name: str = "operation",
        correlation_id: str = "-",
    ) -> ExecutionOutcome[T]:
        """Run `operation`; never raises except for cancellation.

        `asyncio.CancelledError` is not an `Exception`, so it propagates
        straight through without retry or fallback.
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            started = time.monotonic()
            try:
                result = await operation()
            except Exception as exc:
                transient = is_transient(exc)
                if transient and attempt < retries:
                    delay = self.backoff_delay(attempt)
                    LOG.warning(
                        "transient failure name=%s correlation_id=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                        name,
                        correlation_id,
                        attempt + 1,
                        retries,
                        delay,
                        type(exc).__name__,
                    )
                    if delay > 0:
                        await self._sleep(delay)
                    attempt += 1
                    continue
                LOG.warning(
                    "%s name=%s correlation_id=%s attempts=%s error=%s",
                    "retries exhausted" if transient else "permanent failure",
                    name,
                    correlation_id,
                    attempt + 1,
                    type(exc).__name__,
                    exc_info=LOG.isEnabledFor(logging.DEBUG),
                )
                return ExecutionOutcome(
                    result=fallback_response(name, exc, transient=transient),
                    degraded=True,
                    error=exc,
                    attempts=attempt + 1,
                    transient=transient,
                )
            LOG.debug(
                "operation succeeded name=%s correlation_id=%s attempts=%s elapsed=%.3fs",
                name,
                correlation_id,
                attempt + 1,
                time.monotonic() - started,
            )
            return ExecutionOutcome(result=result, attempts=attempt + 1)
