import asyncio

import httpx
import pytest

from toolgate.errors import PluginArgumentError, PluginError
from toolgate.retry import RetryExecutor, default_is_transient, fallback_response


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_backoff_is_exponential_and_capped() -> None:
    executor = RetryExecutor(base_delay=1.0, max_delay=5.0)
    assert [executor.backoff_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_transient_failures_are_retried_until_success() -> None:
    sleep = _RecordingSleep()
    executor = RetryExecutor(max_retries=3, base_delay=1.0, sleep=sleep)
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise PluginError("WeatherPlugin", "upstream hiccup", transient=True)
        return "sunny"

    outcome = asyncio.run(executor.execute_with_retry(flaky, name="WeatherPlugin"))

    assert outcome.result == "sunny"
    assert outcome.degraded is False
    assert outcome.attempts == 3
    assert sleep.delays == [1.0, 2.0]


def test_exhausted_retries_degrade_to_sanitized_fallback() -> None:
    sleep = _RecordingSleep()
    executor = RetryExecutor(max_retries=2, base_delay=0.5, sleep=sleep)

    async def always_down() -> str:
        raise PluginError("WeatherPlugin", "secret connection string leaked", transient=True)

    outcome = asyncio.run(executor.execute_with_retry(always_down, name="WeatherPlugin"))

    assert outcome.degraded is True
    assert outcome.transient is True
    assert outcome.attempts == 3
    assert "secret" not in outcome.result
    assert "temporarily unavailable" in outcome.result
    assert sleep.delays == [0.5, 1.0]


def test_permanent_failures_are_not_retried() -> None:
    sleep = _RecordingSleep()
    executor = RetryExecutor(max_retries=3, sleep=sleep)
    calls = 0

    async def broken() -> str:
        nonlocal calls
        calls += 1
        raise ValueError("bad")

    outcome = asyncio.run(executor.execute_with_retry(broken, name="TimePlugin"))

    assert calls == 1
    assert outcome.degraded is True
    assert outcome.transient is False
    assert isinstance(outcome.error, ValueError)
    assert sleep.delays == []


def test_per_call_max_retries_override() -> None:
    sleep = _RecordingSleep()
    executor = RetryExecutor(max_retries=5, sleep=sleep)

    async def down() -> str:
        raise TimeoutError()

    outcome = asyncio.run(executor.execute_with_retry(down, max_retries=0, name="TimePlugin"))
    assert outcome.attempts == 1
    assert sleep.delays == []


def test_cancellation_propagates_without_fallback() -> None:
    executor = RetryExecutor(max_retries=3)

    async def cancelled() -> str:
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(executor.execute_with_retry(cancelled, name="TimePlugin"))


def test_default_is_transient_classification() -> None:
    req = httpx.Request("GET", "http://plugin.local")
    assert default_is_transient(httpx.ConnectError("down", request=req)) is True
    assert default_is_transient(TimeoutError()) is True
    assert default_is_transient(
        httpx.HTTPStatusError("busy", request=req, response=httpx.Response(503, request=req))
    ) is True
    assert default_is_transient(
        httpx.HTTPStatusError("nope", request=req, response=httpx.Response(400, request=req))
    ) is False
    assert default_is_transient(PluginArgumentError("WeatherPlugin", "Missing location")) is False
    assert default_is_transient(KeyError("x")) is False


def test_fallback_response_keeps_argument_errors_actionable() -> None:
    text = fallback_response("WeatherPlugin", PluginArgumentError("WeatherPlugin", "Missing location"), transient=False)
    assert "Missing location" in text
