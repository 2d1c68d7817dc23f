"""Sliding-window call budgets per plugin."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable

from .config import RateLimitRule
from .state_arena import PluginStateArena

LOG = logging.getLogger(__name__)


class RateLimiter:
    """Count invocations per plugin over a trailing window.

    Plugins without a configured rule always pass. Each plugin's window is
    guarded by its own lock so unrelated plugins never serialize.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rules = dict(rules)
        self._clock = clock
        self._windows: PluginStateArena[deque[float]] = PluginStateArena(deque)

    @staticmethod
    def _prune(window: deque[float], now: float, rule: RateLimitRule) -> None:
        cutoff = now - rule.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    async def is_within_limit(self, plugin_name: str) -> bool:
        """True when one more call would stay inside the budget."""
        rule = self._rules.get(plugin_name)
        if rule is None:
            return True
        async with self._windows.hold(plugin_name) as window:
            self._prune(window, self._clock(), rule)
            return len(window) < rule.limit

    async def record_invocation(self, plugin_name: str) -> None:
        """Record one call attempt."""
        rule = self._rules.get(plugin_name)
        if rule is None:
            return
        async with self._windows.hold(plugin_name) as window:
            now = self._clock()
            self._prune(window, now, rule)
            window.append(now)

    async def try_acquire(self, plugin_name: str) -> bool:
        """Check and record in one step under the plugin's lock."""
        rule = self._rules.get(plugin_name)
        if rule is None:
            return True
        async with self._windows.hold(plugin_name) as window:
            now = self._clock()
            self._prune(window, now, rule)
            if len(window) >= rule.limit:
                LOG.info(
                    "rate limit exceeded plugin=%s limit=%s window=%.0fs",
                    plugin_name,
                    rule.limit,
                    rule.window_seconds,
                )
                return False
            window.append(now)
            return True

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Current usage per rate-limited plugin."""
        now = self._clock()
        out: dict[str, dict[str, Any]] = {}
        for name, rule in sorted(self._rules.items()):
            window = self._windows.peek(name) or deque()
            used = sum(1 for ts in window if ts > now - rule.window_seconds)
            out[name] = {"limit": rule.limit, "window_seconds": rule.window_seconds, "used": used}
        return out
