"""Tool-augmented streaming orchestration.

One request flows through the model provider and, for every function call the
model issues, through the governance pipeline:

    security validator -> rate limiter -> circuit breaker(retry executor(plugin))

Events are pushed by a producer task into a bounded queue and handed to the
caller in causal order. Every stream ends with exactly one `Final` event, on
success, on provider failure, on cancellation and when the call-chain limit is
hit.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, Callable, Iterable, Protocol

import httpx

from .accumulator import FunctionCallAccumulator, FunctionInvocation
from .circuit_breaker import CircuitBreaker
from .context import ExecutionContext
from .errors import CircuitOpenError, ErrorKind, PluginArgumentError, PluginNotFoundError
from .events import (
    ContentDelta,
    Final,
    FunctionCallDetected,
    FunctionCompleted,
    FunctionExecuting,
    FunctionFailed,
    StreamEvent,
)
from .logging_utils import correlation_id_var
from .plugin_registry import PluginRegistry
from .provider import ModelCompletionProvider, TextDelta
from .rate_limiter import RateLimiter
from .retry import ExecutionOutcome, RetryExecutor, default_is_transient
from .security import ConfirmationPredicate, SecurityValidator
from .utils import elapsed_ms

LOG = logging.getLogger(__name__)

Emit = Callable[[StreamEvent], Any]


class PluginInvoker(Protocol):
    """Executes one plugin call and returns its result as JSON text."""

    async def invoke(self, name: str, arguments_json: str, ctx: ExecutionContext) -> str: ...


def caused_by_model_input(outcome: ExecutionOutcome[str]) -> bool:
    """Failures from bad arguments or unknown names say nothing about plugin health."""
    return outcome.degraded and isinstance(outcome.error, (PluginArgumentError, PluginNotFoundError))


def provider_error_text(exc: Exception) -> str:
    """Map provider exceptions to compact text that is safe to show the caller."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        if status == 404:
            return "Upstream LLM model not found"
        if status in {401, 403}:
            return "Upstream LLM rejected the request"
        return "Upstream LLM request failed"
    if isinstance(exc, httpx.TransportError):
        return "Connection to upstream LLM failed"
    return "Upstream LLM stream failed"


def _error_note(text: str, **extra: Any) -> str:
    return json.dumps({"ok": False, "error": text, "is_error": True, **extra}, ensure_ascii=False)


def _tool_message(invocation: FunctionInvocation, content: str) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": invocation.call_id,
        "name": invocation.name,
        "content": content,
    }


def _assistant_tool_call(invocation: FunctionInvocation) -> dict[str, Any]:
    return {
        "id": invocation.call_id,
        "type": "function",
        "function": {"name": invocation.name, "arguments": invocation.arguments_json},
    }


class StreamOrchestrator:
    """Drive one conversational request and emit an ordered event stream."""

    def __init__(
        self,
        *,
        provider_lookup: Callable[[str | None], ModelCompletionProvider],
        registry: PluginRegistry,
        plugins: PluginInvoker,
        security: SecurityValidator,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        retry_executor: RetryExecutor,
        is_transient: Callable[[Exception], bool] = default_is_transient,
        max_call_depth: int = 10,
        event_buffer_size: int = 64,
    ) -> None:
        self._provider_lookup = provider_lookup
        self.registry = registry
        self.plugins = plugins
        self.security = security
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.retry_executor = retry_executor
        self.is_transient = is_transient
        self.max_call_depth = max_call_depth
        self.event_buffer_size = event_buffer_size

    async def stream(
        self,
        messages: list[dict[str, Any]],
        available_plugin_names: Iterable[str] | None,
        ctx: ExecutionContext,
        *,
        confirm: ConfirmationPredicate | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream events for one request; single pass, always ends with `Final`."""
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=self.event_buffer_size)
        plugin_names = None if available_plugin_names is None else list(available_plugin_names)
        producer = asyncio.create_task(self._produce(list(messages), plugin_names, ctx, confirm, queue))
        cancel_wait = asyncio.create_task(ctx.cancelled.wait())
        final = Final()
        started = time.monotonic()
        LOG.debug("orchestrated stream start correlation_id=%s", ctx.correlation_id)
        try:
            while True:
                if cancel_wait.done():
                    LOG.info("orchestrated stream cancelled correlation_id=%s", ctx.correlation_id)
                    break
                next_item = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {next_item, cancel_wait, producer},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if cancel_wait in done:
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_item
                    LOG.info("orchestrated stream cancelled correlation_id=%s", ctx.correlation_id)
                    break
                if next_item in done:
                    event = next_item.result()
                else:
                    # Producer finished; hand over what it left in the queue.
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await next_item
                    if queue.empty():
                        if not producer.cancelled() and producer.exception() is not None:
                            LOG.error(
                                "orchestrator producer crashed correlation_id=%s",
                                ctx.correlation_id,
                                exc_info=producer.exception(),
                            )
                        final = Final(error="Internal orchestration error")
                        break
                    event = queue.get_nowait()
                if isinstance(event, Final):
                    final = event
                    break
                yield event
        finally:
            cancel_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancel_wait
            if not producer.done():
                producer.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await producer
            LOG.debug(
                "orchestrated stream closed correlation_id=%s elapsed=%.3fs",
                ctx.correlation_id,
                time.monotonic() - started,
            )
        yield final

    async def _produce(
        self,
        messages: list[dict[str, Any]],
        plugin_names: list[str] | None,
        ctx: ExecutionContext,
        confirm: ConfirmationPredicate | None,
        queue: asyncio.Queue[StreamEvent],
    ) -> None:
        correlation_id_var.set(ctx.correlation_id)
        try:
            final = await self._run_conversation(messages, plugin_names, ctx, confirm, queue.put)
        except Exception as exc:
            LOG.warning(
                "provider stream failed correlation_id=%s provider=%s error=%s",
                ctx.correlation_id,
                ctx.provider or "-",
                exc,
                exc_info=LOG.isEnabledFor(logging.DEBUG),
            )
            final = Final(error=provider_error_text(exc))
        await queue.put(final)

    async def _run_conversation(
        self,
        messages: list[dict[str, Any]],
        plugin_names: list[str] | None,
        ctx: ExecutionContext,
        confirm: ConfirmationPredicate | None,
        emit: Emit,
    ) -> Final:
        provider = self._provider_lookup(ctx.provider)
        tools = self.registry.tool_definitions(plugin_names)
        offered = {tool["function"]["name"] for tool in tools}
        depth = 0

        while True:
            accumulator = FunctionCallAccumulator()
            held_text: list[str] = []
            round_text: list[str] = []
            invocations: list[FunctionInvocation] = []
            tool_messages: list[dict[str, Any]] = []

            deltas = provider.stream_completion(messages, tools, ctx)
            try:
                async for delta in deltas:
                    if isinstance(delta, TextDelta):
                        round_text.append(delta.text)
                        if accumulator.in_progress:
                            held_text.append(delta.text)
                        else:
                            await emit(ContentDelta(delta.text))
                        continue

                    invocation = accumulator.feed(delta)
                    if invocation is None:
                        continue

                    await emit(FunctionCallDetected(invocation.name, invocation.arguments_json))
                    if depth >= self.max_call_depth:
                        LOG.warning(
                            "call chain limit exceeded correlation_id=%s depth=%s plugin=%s",
                            ctx.correlation_id,
                            depth,
                            invocation.name,
                        )
                        await emit(
                            FunctionFailed(
                                invocation.name,
                                ErrorKind.CHAIN_LIMIT_EXCEEDED,
                                recovered=False,
                                message=f"Maximum function call depth of {self.max_call_depth} reached",
                            )
                        )
                        return Final()

                    content = await self._execute_governed(invocation, offered, ctx, confirm, emit)
                    invocations.append(invocation)
                    tool_messages.append(_tool_message(invocation, content))

                    if held_text and not accumulator.in_progress:
                        await emit(ContentDelta("".join(held_text)))
                        held_text.clear()
            finally:
                aclose = getattr(deltas, "aclose", None)
                if aclose is not None:
                    await aclose()

            for name, raw_arguments in accumulator.drain_incomplete():
                LOG.warning(
                    "malformed function call arguments correlation_id=%s plugin=%s raw=%s",
                    ctx.correlation_id,
                    name,
                    raw_arguments[:200],
                )
                await emit(
                    FunctionFailed(
                        name,
                        ErrorKind.MALFORMED_ARGUMENTS,
                        recovered=False,
                        message="Function call arguments were not valid JSON",
                    )
                )
                malformed = FunctionInvocation(
                    index=-1,
                    call_id=f"call_malformed_{len(invocations)}",
                    name=name,
                    arguments_json="{}",
                )
                invocations.append(malformed)
                tool_messages.append(
                    _tool_message(
                        malformed,
                        _error_note("The function call arguments were not valid JSON. Retry with a valid JSON object."),
                    )
                )

            if held_text:
                await emit(ContentDelta("".join(held_text)))

            if not invocations:
                return Final()

            messages.append(
                {
                    "role": "assistant",
                    "content": "".join(round_text) or None,
                    "tool_calls": [_assistant_tool_call(invocation) for invocation in invocations],
                }
            )
            messages.extend(tool_messages)
            depth += 1

    async def _execute_governed(
        self,
        invocation: FunctionInvocation,
        offered: set[str],
        ctx: ExecutionContext,
        confirm: ConfirmationPredicate | None,
        emit: Emit,
    ) -> str:
        """Run one call through the governance pipeline; return the tool message content."""
        name = invocation.name
        arguments = invocation.arguments

        if name not in offered:
            LOG.warning(
                "plugin not offered for this request plugin=%s correlation_id=%s",
                name,
                ctx.correlation_id,
            )
        if name not in offered or not self.security.can_execute(name):
            await emit(
                FunctionFailed(name, ErrorKind.POLICY_REJECTED, message=f"Plugin '{name}' is not permitted")
            )
            return _error_note(f"The {name} plugin is not permitted by the security policy. Answer without it.")

        if not await self.security.confirm_execution(name, arguments, confirm):
            await emit(
                FunctionFailed(name, ErrorKind.POLICY_REJECTED, message=f"Plugin '{name}' was not confirmed")
            )
            return _error_note(f"Running the {name} plugin was not confirmed. Answer without it.")

        if not await self.rate_limiter.try_acquire(name):
            await emit(FunctionFailed(name, ErrorKind.RATE_LIMITED, message=f"Plugin '{name}' is rate limited"))
            return _error_note(f"The {name} plugin is over its rate limit. Try again later.")

        started = time.monotonic()
        dispatched = False

        async def invoke_plugin() -> str:
            nonlocal dispatched, started
            if not dispatched:
                dispatched = True
                started = time.monotonic()
                await emit(FunctionExecuting(name, arguments))
            return await self.plugins.invoke(name, invocation.arguments_json, ctx)

        async def governed() -> ExecutionOutcome[str]:
            return await self.retry_executor.execute_with_retry(
                invoke_plugin,
                self.is_transient,
                name=name,
                correlation_id=ctx.correlation_id,
            )

        try:
            outcome = await self.circuit_breaker.execute(
                name, governed, is_failure=lambda o: o.degraded, is_ignored=caused_by_model_input
            )
        except CircuitOpenError as exc:
            LOG.info(
                "plugin call rejected by open circuit plugin=%s correlation_id=%s retry_after=%.1fs",
                name,
                ctx.correlation_id,
                exc.retry_after,
            )
            await emit(FunctionFailed(name, ErrorKind.CIRCUIT_OPEN, message=f"Plugin '{name}' is temporarily isolated"))
            return _error_note(f"The {name} plugin is temporarily unavailable after repeated failures. Try again later.")

        if outcome.degraded:
            kind = ErrorKind.TRANSIENT_PLUGIN_FAILURE if outcome.transient else ErrorKind.PERMANENT_PLUGIN_FAILURE
            fallback_text = str(outcome.result)
            await emit(FunctionFailed(name, kind, recovered=True, message=fallback_text))
            return _error_note(fallback_text, degraded=True)

        result = str(outcome.result)
        await emit(FunctionCompleted(name, result, elapsed_ms(started)))
        return result
