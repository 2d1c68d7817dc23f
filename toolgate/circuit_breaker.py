"""Per-plugin circuit breaker."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .errors import CircuitOpenError
from .state_arena import PluginStateArena

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """State of one plugin's circuit."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Mutable circuit state owned by the breaker, one per plugin."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    trial_in_flight: bool = False


class CircuitBreaker:
    """Isolate repeatedly failing plugins.

    Closed -> Open after `failure_threshold` consecutive failures.
    Open -> Half-Open once `recovery_timeout` has passed since the last
    failure; exactly one trial call is let through. The trial's outcome
    closes or re-opens the circuit.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._states: PluginStateArena[CircuitBreakerState] = PluginStateArena(CircuitBreakerState)

    def _transition(self, plugin_name: str, entry: CircuitBreakerState, new_state: CircuitState) -> None:
        if entry.state == new_state:
            return
        old_state = entry.state
        entry.state = new_state
        LOG.warning(
            "circuit state change plugin=%s old=%s new=%s consecutive_failures=%s",
            plugin_name,
            old_state.value,
            new_state.value,
            entry.consecutive_failures,
        )

    async def _admit(self, plugin_name: str) -> bool:
        """Reject or admit one call; returns True when the call is the half-open trial."""
        async with self._states.hold(plugin_name) as entry:
            if entry.state == CircuitState.OPEN:
                elapsed = self._clock() - (entry.last_failure_at or 0.0)
                if elapsed < self.recovery_timeout:
                    raise CircuitOpenError(plugin_name, self.recovery_timeout - elapsed)
                self._transition(plugin_name, entry, CircuitState.HALF_OPEN)
                entry.trial_in_flight = True
                return True
            if entry.state == CircuitState.HALF_OPEN:
                if entry.trial_in_flight:
                    raise CircuitOpenError(plugin_name, 0.0)
                entry.trial_in_flight = True
                return True
            return False

    async def _record_success(self, plugin_name: str) -> None:
        async with self._states.hold(plugin_name) as entry:
            entry.consecutive_failures = 0
            entry.trial_in_flight = False
            self._transition(plugin_name, entry, CircuitState.CLOSED)

    async def _record_failure(self, plugin_name: str) -> None:
        async with self._states.hold(plugin_name) as entry:
            entry.consecutive_failures += 1
            entry.last_failure_at = self._clock()
            if entry.state == CircuitState.HALF_OPEN:
                entry.trial_in_flight = False
                self._transition(plugin_name, entry, CircuitState.OPEN)
            elif entry.state == CircuitState.CLOSED and entry.consecutive_failures >= self.failure_threshold:
                self._transition(plugin_name, entry, CircuitState.OPEN)

    async def _release_trial(self, plugin_name: str) -> None:
        async with self._states.hold(plugin_name) as entry:
            entry.trial_in_flight = False

    async def execute(
        self,
        plugin_name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        is_failure: Callable[[T], bool] | None = None,
        is_ignored: Callable[[T], bool] | None = None,
    ) -> T:
        """Run `operation` through the plugin's circuit.

        Raises `CircuitOpenError` without calling `operation` while the circuit
        is open. Exceptions from `operation` count as failures and propagate;
        `is_failure` lets a returned value count as one too, and a value matching
        `is_ignored` counts as neither. Cancellation and ignored values release
        a half-open trial slot without changing state.
        """
        is_trial = await self._admit(plugin_name)
        try:
            result = await operation()
        except Exception:
            await self._record_failure(plugin_name)
            raise
        except BaseException:
            if is_trial:
                await self._release_trial(plugin_name)
            raise
        if is_ignored is not None and is_ignored(result):
            if is_trial:
                await self._release_trial(plugin_name)
        elif is_failure is not None and is_failure(result):
            await self._record_failure(plugin_name)
        else:
            await self._record_success(plugin_name)
        return result

    async def state_of(self, plugin_name: str) -> CircuitBreakerState:
        """Copy of one plugin's current state."""
        async with self._states.hold(plugin_name) as entry:
            return CircuitBreakerState(
                state=entry.state,
                consecutive_failures=entry.consecutive_failures,
                last_failure_at=entry.last_failure_at,
                trial_in_flight=entry.trial_in_flight,
            )

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Diagnostic view of every plugin seen so far."""
        out: dict[str, dict[str, Any]] = {}
        for name in self._states.keys():
            entry = self._states.peek(name)
            if entry is None:
                continue
            out[name] = {"state": entry.state.value, "consecutive_failures": entry.consecutive_failures}
        return out
