"""Plugin dispatch to built-in handlers or HTTP endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from .builtin_plugins import BUILTIN_HANDLERS, PluginHandler
from .context import ExecutionContext
from .errors import ConfigError, PluginArgumentError, PluginError, PluginNotFoundError
from .plugin_registry import PluginDescriptor, PluginRegistry
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)


class PluginHost:
    """Resolve a plugin by name and invoke it with validated arguments."""

    def __init__(
        self,
        registry: PluginRegistry,
        *,
        call_timeout_seconds: float = 30.0,
        handlers: dict[str, PluginHandler] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.registry = registry
        self.call_timeout_seconds = call_timeout_seconds
        self._handlers = dict(BUILTIN_HANDLERS if handlers is None else handlers)
        self._client = http_client
        self._owns_client = http_client is None
        for descriptor in registry.descriptors():
            if descriptor.handler != "http" and descriptor.handler not in self._handlers:
                raise ConfigError(f"Plugin '{descriptor.name}' references unknown handler '{descriptor.handler}'")

    async def close(self) -> None:
        """Close HTTP resources owned by the host."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.call_timeout_seconds, connect=10.0))
        return self._client

    @staticmethod
    def _parse_arguments(descriptor: PluginDescriptor, arguments_json: str) -> dict[str, Any]:
        try:
            arguments = json.loads(arguments_json) if arguments_json.strip() else {}
        except json.JSONDecodeError as exc:
            raise PluginArgumentError(descriptor.name, "Arguments are not valid JSON") from exc
        if not isinstance(arguments, dict):
            raise PluginArgumentError(descriptor.name, "Arguments must be a JSON object")
        return arguments

    async def _call_http(self, descriptor: PluginDescriptor, arguments: dict[str, Any], ctx: ExecutionContext) -> Any:
        assert descriptor.url is not None
        response = await self._http_client().post(
            descriptor.url,
            json={"plugin": descriptor.name, "arguments": arguments},
            headers={"X-Correlation-Id": ctx.correlation_id},
        )
        response.raise_for_status()
        try:
            return response.json()
        except ValueError:
            return response.text

    async def invoke(self, name: str, arguments_json: str, ctx: ExecutionContext) -> str:
        """Run one plugin and return its result as JSON text."""
        descriptor = self.registry.get(name)
        if descriptor is None:
            raise PluginNotFoundError(name)
        arguments = self._parse_arguments(descriptor, arguments_json)
        descriptor.validate_arguments(arguments)

        LOG.info(
            "dispatching plugin call plugin=%s handler=%s correlation_id=%s timeout=%s",
            name,
            descriptor.handler,
            ctx.correlation_id,
            self.call_timeout_seconds,
        )
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("plugin call args plugin=%s args=%s", name, to_bounded_json(arguments))

        if descriptor.handler == "http":
            call = self._call_http(descriptor, arguments, ctx)
        else:
            call = self._handlers[descriptor.handler](arguments, ctx)
        try:
            result = await asyncio.wait_for(call, timeout=self.call_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise PluginError(name, f"Plugin call timed out after {self.call_timeout_seconds}s", transient=True) from exc

        LOG.info("plugin call finished plugin=%s correlation_id=%s", name, ctx.correlation_id)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("plugin call result plugin=%s result=%s", name, to_bounded_json(result))
        return json.dumps(result, ensure_ascii=False)
