"""Client wrapper for upstream OpenAI-compatible APIs and the provider adapter."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import replace
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from .config import GatewayConfig, ProviderConfig
from .context import ExecutionContext
from .provider import CallComplete, FunctionCallDelta, ProviderDelta, TextDelta
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)


class UpstreamClient:
    """Thin async HTTP client for one upstream model endpoint."""

    def __init__(self, cfg: ProviderConfig) -> None:
        """Create an upstream client from provider configuration."""
        self.cfg = cfg
        self._base_url = cfg.base_url.rstrip("/")
        self._timeout = httpx.Timeout(connect=10.0, read=300.0, write=120.0, pool=10.0)

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json", "Connection": "close"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance."""
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)

    def _retry_interval_seconds(self) -> float:
        return max(0.0, int(self.cfg.retry_interval_ms or 0) / 1000.0)

    @staticmethod
    def is_retryable_connect_error(exc: Exception) -> bool:
        """Decide whether one upstream error should trigger a reconnect."""
        if isinstance(exc, httpx.TransportError):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code if exc.response is not None else None
            if status is None:
                return False
            return status == 429 or status >= 500
        return False

    async def stream_chat_completion(
        self,
        payload: dict[str, Any],
        *,
        trace_id: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Run streaming upstream chat completion and yield decoded chunk objects.

        Connection failures are retried only before the first chunk arrived.
        """
        req_payload = dict(payload)
        req_payload["stream"] = True
        started = time.monotonic()
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s provider=%s payload=%s",
            tag,
            self.cfg.name,
            to_bounded_json(req_payload),
        )
        retries = int(self.cfg.connect_retries)
        retry_delay = self._retry_interval_seconds()

        attempt = 1
        while True:
            stream_client = self._build_client()
            response: httpx.Response | None = None
            chunk_count = 0
            try:
                response = await stream_client.send(
                    stream_client.build_request(
                        "POST",
                        "/v1/chat/completions",
                        headers=self._headers(),
                        json=req_payload,
                    ),
                    stream=True,
                )
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        LOG.debug(
                            "upstream stream done marker trace=%s elapsed=%.3fs chunks=%s",
                            tag,
                            time.monotonic() - started,
                            chunk_count,
                        )
                        return
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        # Tolerate occasional non-JSON lines in malformed streams.
                        continue
                    chunk_count += 1
                    yield chunk
                return
            except asyncio.CancelledError:
                LOG.debug(
                    "upstream stream cancelled trace=%s elapsed=%.3fs chunks=%s",
                    tag,
                    time.monotonic() - started,
                    chunk_count,
                )
                raise
            except Exception as exc:
                can_retry = (
                    chunk_count == 0
                    and self.is_retryable_connect_error(exc)
                    and (retries < 0 or attempt <= retries)
                )
                if not can_retry:
                    raise
                LOG.warning(
                    "upstream stream connect failed trace=%s attempt=%s retries=%s retry_in=%.3fs error=%s",
                    tag,
                    attempt,
                    retries,
                    retry_delay,
                    exc,
                )
                if retry_delay > 0:
                    await asyncio.sleep(retry_delay)
                attempt += 1
            finally:
                cleanup_cancelled = False
                if response is not None:
                    try:
                        await asyncio.shield(response.aclose())
                    except asyncio.CancelledError:
                        cleanup_cancelled = True
                    except Exception:
                        LOG.debug("upstream response close failed trace=%s", tag, exc_info=True)
                try:
                    await asyncio.shield(stream_client.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception:
                    LOG.debug("upstream client close failed trace=%s", tag, exc_info=True)
                if cleanup_cancelled:
                    raise asyncio.CancelledError


def pick_primary_choice(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return the primary choice (index 0 if present) from an upstream chunk."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None

    for choice in choices:
        if isinstance(choice, dict) and choice.get("index") == 0:
            return choice

    first = choices[0]
    return first if isinstance(first, dict) else None


def chunk_to_deltas(chunk: dict[str, Any], open_indexes: set[int]) -> list[ProviderDelta]:
    """Map one OpenAI-style chunk into provider deltas.

    `open_indexes` tracks call indexes seen in this round so a
    `finish_reason == "tool_calls"` can close each of them. Calls whose last
    fragment arrives in the finishing chunk are closed on that fragment.
    """
    choice = pick_primary_choice(chunk)
    if choice is None:
        return []
    deltas: list[ProviderDelta] = []
    delta = choice.get("delta") or {}

    content = delta.get("content")
    if isinstance(content, str) and content:
        deltas.append(TextDelta(content))
    elif isinstance(content, list):
        text = "".join(
            str(item.get("text") or "") for item in content if isinstance(item, dict) and item.get("type") == "text"
        )
        if text:
            deltas.append(TextDelta(text))

    calls: list[FunctionCallDelta] = []
    for tc_delta in delta.get("tool_calls") or []:
        if not isinstance(tc_delta, dict):
            continue
        index = tc_delta.get("index")
        if not isinstance(index, int):
            continue
        fn_delta = tc_delta.get("function") or {}
        arguments = fn_delta.get("arguments")
        open_indexes.add(index)
        calls.append(
            FunctionCallDelta(
                index=index,
                name=fn_delta.get("name") or None,
                arguments=arguments if isinstance(arguments, str) else None,
                call_id=tc_delta.get("id") or None,
            )
        )

    if choice.get("finish_reason") != "tool_calls":
        deltas.extend(calls)
        return deltas

    last_fragment = {call.index: pos for pos, call in enumerate(calls)}
    deltas.extend(
        replace(call, complete=True) if last_fragment[call.index] == pos else call for pos, call in enumerate(calls)
    )
    deltas.extend(CallComplete(index) for index in sorted(open_indexes - last_fragment.keys()))
    open_indexes.clear()
    return deltas


class OpenAICompatibleProvider:
    """`ModelCompletionProvider` backed by an OpenAI-compatible streaming endpoint."""

    def __init__(self, cfg: ProviderConfig, client: UpstreamClient | None = None) -> None:
        self.cfg = cfg
        self.client = client or UpstreamClient(cfg)

    async def stream_completion(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        ctx: ExecutionContext,
    ) -> AsyncIterator[ProviderDelta]:
        payload: dict[str, Any] = {"messages": messages, "n": 1}
        model = ctx.model or self.cfg.default_model
        if model:
            payload["model"] = model
        if tools:
            payload["tools"] = tools
        open_indexes: set[int] = set()
        async for chunk in self.client.stream_chat_completion(payload, trace_id=ctx.correlation_id):
            for delta in chunk_to_deltas(chunk, open_indexes):
                yield delta
        # Some upstreams end the stream without a tool_calls finish reason.
        for index in sorted(open_indexes):
            yield CallComplete(index)


class ProviderFactory:
    """Create and cache one provider adapter per configured provider name."""

    def __init__(self, cfg: GatewayConfig) -> None:
        self.cfg = cfg
        self._providers: dict[str, OpenAICompatibleProvider] = {}

    def names(self) -> list[str]:
        return [provider.name for provider in self.cfg.providers]

    def get(self, name: str | None = None) -> OpenAICompatibleProvider:
        provider_cfg = self.cfg.provider(name)
        provider = self._providers.get(provider_cfg.name)
        if provider is None:
            provider = self._providers[provider_cfg.name] = OpenAICompatibleProvider(provider_cfg)
        return provider
