import asyncio
import json

import httpx
import pytest

from toolgate.builtin_plugins import BUILTIN_HANDLERS, default_plugin_configs
from toolgate.config import PluginConfig
from toolgate.context import ExecutionContext
from toolgate.errors import ConfigError, PluginArgumentError, PluginError, PluginNotFoundError
from toolgate.plugin_host import PluginHost
from toolgate.plugin_registry import PluginRegistry
from toolgate.retry import default_is_transient


def _host(**kwargs: object) -> PluginHost:
    return PluginHost(PluginRegistry.from_config(default_plugin_configs()), **kwargs)


def test_builtin_plugin_result_is_json_text() -> None:
    async def fake_weather(arguments: dict, _ctx: ExecutionContext) -> str:
        return f"Sunny in {arguments['location']}"

    host = _host(handlers={name: fake_weather for name in BUILTIN_HANDLERS})

    result = asyncio.run(host.invoke("WeatherPlugin", '{"location": "Tokyo"}', ExecutionContext()))

    assert json.loads(result) == "Sunny in Tokyo"


def test_unknown_plugin_and_bad_arguments_raise_permanent_errors() -> None:
    host = _host()
    ctx = ExecutionContext()

    with pytest.raises(PluginNotFoundError):
        asyncio.run(host.invoke("Missing", "{}", ctx))
    with pytest.raises(PluginArgumentError):
        asyncio.run(host.invoke("WeatherPlugin", "{not json", ctx))
    with pytest.raises(PluginArgumentError):
        asyncio.run(host.invoke("WeatherPlugin", "[1, 2]", ctx))
    with pytest.raises(PluginArgumentError) as excinfo:
        asyncio.run(host.invoke("WeatherPlugin", "{}", ctx))
    assert default_is_transient(excinfo.value) is False


def test_slow_plugin_times_out_as_transient() -> None:
    async def hang(_arguments: dict, _ctx: ExecutionContext) -> str:
        await asyncio.sleep(10)
        return "late"

    host = _host(call_timeout_seconds=0.01, handlers={name: hang for name in BUILTIN_HANDLERS})

    with pytest.raises(PluginError) as excinfo:
        asyncio.run(host.invoke("DateTimePlugin", "", ExecutionContext()))
    assert excinfo.value.transient is True


def test_unknown_builtin_handler_is_a_config_error() -> None:
    registry = PluginRegistry.from_config([PluginConfig(name="Ghost", handler="builtin:ghost")])
    with pytest.raises(ConfigError):
        PluginHost(registry)


def test_http_plugin_posts_arguments_with_correlation_id() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"temperature": 21})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = PluginRegistry.from_config(
        [
            PluginConfig(
                name="RemoteWeather",
                handler="http",
                url="http://plugins.local/weather",
                parameters=[{"name": "location"}],
            )
        ]
    )
    host = PluginHost(registry, http_client=client)
    ctx = ExecutionContext(correlation_id="corr-1")

    async def _run() -> str:
        try:
            return await host.invoke("RemoteWeather", '{"location": "Oslo"}', ctx)
        finally:
            await client.aclose()

    result = asyncio.run(_run())

    assert json.loads(result) == {"temperature": 21}
    assert json.loads(seen[0].content) == {"plugin": "RemoteWeather", "arguments": {"location": "Oslo"}}
    assert seen[0].headers["X-Correlation-Id"] == "corr-1"


def test_http_plugin_server_errors_are_transient() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    registry = PluginRegistry.from_config(
        [PluginConfig(name="RemoteWeather", handler="http", url="http://plugins.local/weather")]
    )
    host = PluginHost(registry, http_client=client)

    async def _run() -> None:
        try:
            await host.invoke("RemoteWeather", "{}", ExecutionContext())
        finally:
            await client.aclose()

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        asyncio.run(_run())
    assert default_is_transient(excinfo.value) is True
