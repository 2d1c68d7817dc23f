import asyncio

from toolgate.config import RateLimitRule
from toolgate.rate_limiter import RateLimiter


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _limiter(clock: _Clock) -> RateLimiter:
    return RateLimiter({"WeatherPlugin": RateLimitRule.parse("3/minute")}, clock=clock)


def test_fourth_call_within_window_is_rejected() -> None:
    clock = _Clock()
    limiter = _limiter(clock)

    async def _run() -> list[bool]:
        results = []
        for offset in (0.0, 10.0, 20.0, 30.0):
            clock.now = 1000.0 + offset
            results.append(await limiter.try_acquire("WeatherPlugin"))
        return results

    assert asyncio.run(_run()) == [True, True, True, False]


def test_window_slides_past_old_invocations() -> None:
    clock = _Clock()
    limiter = _limiter(clock)

    async def _run() -> tuple[bool, bool]:
        for offset in (0.0, 10.0, 20.0):
            clock.now = 1000.0 + offset
            await limiter.record_invocation("WeatherPlugin")
        clock.now = 1059.0
        blocked = await limiter.is_within_limit("WeatherPlugin")
        clock.now = 1060.0
        return blocked, await limiter.is_within_limit("WeatherPlugin")

    assert asyncio.run(_run()) == (False, True)


def test_unconfigured_plugins_are_unlimited() -> None:
    limiter = _limiter(_Clock())

    async def _run() -> bool:
        for _ in range(50):
            if not await limiter.try_acquire("TimePlugin"):
                return False
        return True

    assert asyncio.run(_run()) is True
    assert "TimePlugin" not in limiter.snapshot()


def test_concurrent_acquires_never_exceed_budget() -> None:
    limiter = _limiter(_Clock())

    async def _run() -> list[bool]:
        return await asyncio.gather(*(limiter.try_acquire("WeatherPlugin") for _ in range(20)))

    results = asyncio.run(_run())
    assert results.count(True) == 3


def test_snapshot_reports_usage() -> None:
    clock = _Clock()
    limiter = _limiter(clock)
    asyncio.run(limiter.try_acquire("WeatherPlugin"))

    assert limiter.snapshot() == {"WeatherPlugin": {"limit": 3, "window_seconds": 60.0, "used": 1}}
