import asyncio

import pytest

from toolgate.circuit_breaker import CircuitBreaker, CircuitState
from toolgate.errors import CircuitOpenError


class _Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _fail() -> str:
    raise RuntimeError("boom")


async def _ok() -> str:
    return "ok"


async def _trip(breaker: CircuitBreaker, name: str, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(name, _fail)


def test_opens_after_threshold_and_rejects_without_calling() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, clock=clock)
    calls = 0

    async def counted() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    async def _run() -> CircuitState:
        await _trip(breaker, "WeatherPlugin", 5)
        clock.now = 10.0
        with pytest.raises(CircuitOpenError) as excinfo:
            await breaker.execute("WeatherPlugin", counted)
        assert excinfo.value.retry_after == pytest.approx(20.0)
        return (await breaker.state_of("WeatherPlugin")).state

    assert asyncio.run(_run()) == CircuitState.OPEN
    assert calls == 0


def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker(failure_threshold=3, clock=_Clock())

    async def _run() -> CircuitState:
        await _trip(breaker, "TimePlugin", 2)
        await breaker.execute("TimePlugin", _ok)
        await _trip(breaker, "TimePlugin", 2)
        return (await breaker.state_of("TimePlugin")).state

    assert asyncio.run(_run()) == CircuitState.CLOSED


def test_half_open_trial_success_closes_circuit() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, clock=clock)

    async def _run() -> tuple[str, CircuitState]:
        await _trip(breaker, "WeatherPlugin", 2)
        clock.now = 31.0
        result = await breaker.execute("WeatherPlugin", _ok)
        return result, (await breaker.state_of("WeatherPlugin")).state

    assert asyncio.run(_run()) == ("ok", CircuitState.CLOSED)


def test_half_open_trial_failure_reopens_circuit() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30.0, clock=clock)

    async def _run() -> CircuitState:
        await _trip(breaker, "WeatherPlugin", 2)
        clock.now = 31.0
        await _trip(breaker, "WeatherPlugin", 1)
        clock.now = 40.0
        with pytest.raises(CircuitOpenError):
            await breaker.execute("WeatherPlugin", _ok)
        return (await breaker.state_of("WeatherPlugin")).state

    assert asyncio.run(_run()) == CircuitState.OPEN


def test_only_one_half_open_trial_in_flight() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=5.0, clock=clock)

    async def _run() -> None:
        await _trip(breaker, "WeatherPlugin", 1)
        clock.now = 6.0
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.execute("WeatherPlugin", slow))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await breaker.execute("WeatherPlugin", _ok)
        release.set()
        assert await trial == "ok"

    asyncio.run(_run())


def test_cancelled_trial_releases_slot() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=5.0, clock=clock)

    async def _run() -> str:
        await _trip(breaker, "WeatherPlugin", 1)
        clock.now = 6.0

        async def hang() -> str:
            await asyncio.Event().wait()
            return "never"

        trial = asyncio.create_task(breaker.execute("WeatherPlugin", hang))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial
        return await breaker.execute("WeatherPlugin", _ok)

    assert asyncio.run(_run()) == "ok"


def test_is_failure_counts_returned_values() -> None:
    breaker = CircuitBreaker(failure_threshold=2, clock=_Clock())

    async def _run() -> CircuitState:
        for _ in range(2):
            await breaker.execute("WeatherPlugin", _ok, is_failure=lambda result: result == "ok")
        return (await breaker.state_of("WeatherPlugin")).state

    assert asyncio.run(_run()) == CircuitState.OPEN
    assert breaker.snapshot() == {"WeatherPlugin": {"state": "open", "consecutive_failures": 2}}


def test_ignored_results_neither_trip_nor_reset_the_circuit() -> None:
    breaker = CircuitBreaker(failure_threshold=2, clock=_Clock())

    def ignored(result: str) -> bool:
        return result == "ok"

    async def _run() -> dict[str, object]:
        await _trip(breaker, "WeatherPlugin", 1)
        for _ in range(5):
            await breaker.execute("WeatherPlugin", _ok, is_failure=ignored, is_ignored=ignored)
        return breaker.snapshot()["WeatherPlugin"]

    assert asyncio.run(_run()) == {"state": "closed", "consecutive_failures": 1}


def test_ignored_result_releases_half_open_trial() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30.0, clock=clock)

    async def _run() -> tuple[CircuitState, str]:
        await _trip(breaker, "WeatherPlugin", 1)
        clock.now = 31.0
        await breaker.execute("WeatherPlugin", _ok, is_ignored=lambda result: True)
        state = (await breaker.state_of("WeatherPlugin")).state
        return state, await breaker.execute("WeatherPlugin", _ok)

    assert asyncio.run(_run()) == (CircuitState.HALF_OPEN, "ok")


def test_plugins_have_independent_circuits() -> None:
    breaker = CircuitBreaker(failure_threshold=1, clock=_Clock())

    async def _run() -> str:
        await _trip(breaker, "WeatherPlugin", 1)
        return await breaker.execute("TimePlugin", _ok)

    assert asyncio.run(_run()) == "ok"
