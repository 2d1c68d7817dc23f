"""Helpers for SSE endpoint handling."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import StreamingResponse

LOG = logging.getLogger(__name__)


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def build_error_payload(message: str, *, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "code": code}}


async def _stop_pending(next_item: asyncio.Task[Any]) -> None:
    if not next_item.done():
        next_item.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await next_item


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks and emit periodic SSE heartbeats while waiting.

    A client disconnect stops the wrapper and closes `source`, which cancels
    the request's execution context.
    """
    started = time.monotonic()
    try:
        emit_keepalive = keepalive_seconds > 0
        poll_seconds = keepalive_seconds if emit_keepalive else 0.5

        iterator = source.__aiter__()
        while True:
            next_item = asyncio.create_task(iterator.__anext__())
            try:
                while not next_item.done():
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if request is not None and await request.is_disconnected():
                        LOG.debug(
                            "client disconnected, stopping stream elapsed=%.3fs",
                            time.monotonic() - started,
                        )
                        await _stop_pending(next_item)
                        return
                    if emit_keepalive:
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                await _stop_pending(next_item)
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception:
            LOG.debug("stream source close failed", exc_info=True)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
