"""Gateway service runtime: wires configuration into the orchestration pipeline."""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncGenerator, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .builtin_plugins import default_plugin_configs
from .circuit_breaker import CircuitBreaker
from .config import GatewayConfig
from .context import ExecutionContext
from .events import Final, sse_event
from .orchestrator import StreamOrchestrator
from .plugin_host import PluginHost
from .plugin_registry import PluginRegistry
from .provider import ModelCompletionProvider
from .rate_limiter import RateLimiter
from .retry import RetryExecutor
from .security import ConfirmationPredicate, SecurityPolicy, SecurityValidator
from .upstream import ProviderFactory

LOG = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = None


class ChatStreamRequest(BaseModel):
    """Body of `POST /api/chat/stream-with-tools`."""

    model_config = ConfigDict(populate_by_name=True)

    provider_id: str | None = Field(default=None, alias="providerId")
    model_id: str | None = Field(default=None, alias="modelId")
    messages: list[ChatMessage] = Field(min_length=1)
    available_plugins: list[str] | None = Field(default=None, alias="availablePlugins")


class GatewayService:
    """Runtime container for registry, governance components and providers."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        provider_lookup: Callable[[str | None], ModelCompletionProvider] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Build every component from one validated configuration."""
        self.cfg = cfg
        plugin_configs = cfg.plugins if cfg.plugins is not None else default_plugin_configs()
        self.registry = PluginRegistry.from_config(plugin_configs)
        self.policy = SecurityPolicy.from_config(cfg.security, self.registry)
        self.security = SecurityValidator(self.policy)
        self.rate_limiter = RateLimiter(self.policy.rate_limits)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=cfg.circuit_breaker.failure_threshold,
            recovery_timeout=cfg.circuit_breaker.recovery_timeout_seconds,
        )
        self.retry_executor = RetryExecutor(
            max_retries=cfg.retry.max_retries,
            base_delay=cfg.retry.base_delay_seconds,
            max_delay=cfg.retry.max_delay_seconds,
        )
        self.plugin_host = PluginHost(
            self.registry,
            call_timeout_seconds=float(cfg.plugin_call_timeout_seconds),
            http_client=http_client,
        )
        self.providers = ProviderFactory(cfg)
        self.orchestrator = StreamOrchestrator(
            provider_lookup=provider_lookup or self.providers.get,
            registry=self.registry,
            plugins=self.plugin_host,
            security=self.security,
            rate_limiter=self.rate_limiter,
            circuit_breaker=self.circuit_breaker,
            retry_executor=self.retry_executor,
            max_call_depth=cfg.orchestration.max_call_depth,
            event_buffer_size=cfg.orchestration.event_buffer_size,
        )

    async def start(self) -> None:
        """Log the effective plugin catalog and policy."""
        LOG.info(
            "toolgate ready plugins=%s allowlisted=%s disabled=%s providers=%s",
            ",".join(self.registry.names()) or "-",
            ",".join(sorted(self.policy.allowlist)) or "-",
            ",".join(sorted(self.policy.disabled)) or "-",
            ",".join(self.providers.names()) or "-",
        )

    async def close(self) -> None:
        """Shut down plugin HTTP resources."""
        await self.plugin_host.close()

    def plugin_catalog(self) -> list[dict[str, Any]]:
        """Describe every registered plugin for clients."""
        catalog = []
        for descriptor in self.registry.descriptors():
            catalog.append(
                {
                    "pluginName": descriptor.name,
                    "functionName": descriptor.name,
                    "description": descriptor.description,
                    "riskTier": descriptor.risk_tier.value,
                    "enabled": descriptor.name not in self.policy.disabled,
                    "parameters": [
                        {
                            "name": param.name,
                            "description": param.description,
                            "type": param.type,
                            "isRequired": param.required,
                        }
                        for param in descriptor.parameters
                    ],
                }
            )
        return catalog

    def provider_catalog(self) -> list[dict[str, Any]]:
        """Describe configured completion providers."""
        return [
            {"id": provider.name, "displayName": provider.display_name or provider.name}
            for provider in self.cfg.providers
        ]

    def provider_models(self, provider_id: str) -> list[dict[str, Any]]:
        """List the models of one provider; raises `KeyError` for unknown ids."""
        provider = self.cfg.provider(provider_id)
        return [{"id": model.id, "displayName": model.display_name or model.id} for model in provider.model_catalog()]

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "plugins": len(self.registry),
            "circuits": self.circuit_breaker.snapshot(),
            "rate_limits": self.rate_limiter.snapshot(),
        }

    async def stream_chat(
        self,
        request: ChatStreamRequest,
        *,
        confirm: ConfirmationPredicate | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Run one orchestrated request and yield SSE-encoded events."""
        ctx = ExecutionContext(provider=request.provider_id, model=request.model_id)
        messages = [message.model_dump(exclude_none=True) for message in request.messages]
        started = time.monotonic()
        LOG.info(
            "chat stream start correlation_id=%s provider=%s model=%s messages=%s plugins=%s",
            ctx.correlation_id,
            ctx.provider or "-",
            ctx.model or "-",
            len(messages),
            ",".join(request.available_plugins) if request.available_plugins is not None else "*",
        )
        events = self.orchestrator.stream(messages, request.available_plugins, ctx, confirm=confirm)
        final_error: str | None = None
        try:
            async for event in events:
                if isinstance(event, Final):
                    final_error = event.error
                yield sse_event(event)
        finally:
            ctx.cancel()
            await events.aclose()
            LOG.info(
                "chat stream done correlation_id=%s elapsed=%.3fs error=%s",
                ctx.correlation_id,
                time.monotonic() - started,
                final_error or "-",
            )

