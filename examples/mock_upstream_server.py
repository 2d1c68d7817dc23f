from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse

app = FastAPI(title="mock-upstream")


def _chunk(completion_id: str, model: str, delta: dict[str, Any], finish_reason: str | None = None) -> str:
    body = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(body)}\n\n"


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    tools: list[dict[str, Any]] = payload.get("tools") or []
    model = payload.get("model") or "demo-model"
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"

    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    last_tool = next((m for m in reversed(messages) if m.get("role") == "tool"), None)
    tool_names = {t.get("function", {}).get("name") for t in tools}

    async def gen():
        wants_weather = "weather" in str(last_user.get("content") or "").lower()
        if last_tool is None and wants_weather and "WeatherPlugin" in tool_names:
            yield _chunk(completion_id, model, {"role": "assistant", "content": "Let me check. "})
            # Arguments arrive split across fragments, like real providers send them.
            yield _chunk(
                completion_id,
                model,
                {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": f"call_{uuid.uuid4().hex}",
                            "type": "function",
                            "function": {"name": "WeatherPlugin", "arguments": '{"loc'},
                        }
                    ]
                },
            )
            yield _chunk(
                completion_id,
                model,
                {"tool_calls": [{"index": 0, "function": {"arguments": 'ation": "Tokyo"}'}}]},
            )
            yield _chunk(completion_id, model, {}, finish_reason="tool_calls")
        elif last_tool is not None:
            for word in f"Tool said: {last_tool.get('content')}".split(" "):
                yield _chunk(completion_id, model, {"content": word + " "})
            yield _chunk(completion_id, model, {}, finish_reason="stop")
        else:
            yield _chunk(completion_id, model, {"role": "assistant", "content": "No tools needed."}, "stop")
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
