"""HTTP application for the toolgate service.

This module exposes:
- `POST /api/chat/stream-with-tools`: one orchestrated, tool-augmented chat
  request streamed back as server-sent events,
- `GET /api/plugins`: the registered plugin catalog,
- `GET /api/providers` and `GET /api/providers/{provider_id}/models`: the
  configured completion providers and their models,
- `GET /healthz`: circuit breaker and rate limiter state.
"""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_handlers import build_error_payload, build_sse_response, stream_with_keepalive
from .config import GatewayConfig, load_config
from .gateway_service import ChatStreamRequest, GatewayService
from .logging_utils import setup_logging
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
    return parsed.hostname, parsed.port


def create_app(config_path: str | None = None, *, service: GatewayService | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if service is None:
        cfg: GatewayConfig = load_config(config_path)
        setup_logging(cfg.logging)
        service = GatewayService(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(title="toolgate", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service, circuit and rate-limit status."""
        return JSONResponse(
            {
                "service": "toolgate",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **service.health(),
            }
        )

    @app.get("/api/plugins")
    async def list_plugins() -> JSONResponse:
        """List registered plugins and their parameters."""
        return JSONResponse(service.plugin_catalog())

    @app.get("/api/providers")
    async def list_providers() -> JSONResponse:
        """List configured completion providers."""
        return JSONResponse(service.provider_catalog())

    @app.get("/api/providers/{provider_id}/models")
    async def list_provider_models(provider_id: str) -> JSONResponse:
        """List the models offered by one provider."""
        try:
            models = service.provider_models(provider_id)
        except KeyError:
            LOG.info("models requested for unknown provider provider=%s", provider_id)
            return JSONResponse(
                build_error_payload(f"Unknown provider '{provider_id}'", code="unknown_provider"),
                status_code=404,
            )
        return JSONResponse(models)

    @app.post("/api/chat/stream-with-tools")
    async def chat_stream_with_tools(request: Request):
        """Stream one tool-augmented chat request as SSE."""
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(build_error_payload("Request body must be JSON", code="invalid_json"), status_code=400)
        client_host = getattr(getattr(request, "client", None), "host", None)
        LOG.debug(
            "incoming chat stream request client=%s payload=%s",
            client_host,
            to_bounded_json(payload),
        )
        try:
            chat_request = ChatStreamRequest.model_validate(payload)
        except ValidationError as exc:
            return JSONResponse(
                build_error_payload(f"Invalid request: {exc.errors(include_url=False)}", code="invalid_request"),
                status_code=400,
            )
        if chat_request.provider_id and chat_request.provider_id not in service.providers.names():
            return JSONResponse(
                build_error_payload(f"Unknown provider '{chat_request.provider_id}'", code="unknown_provider"),
                status_code=400,
            )

        return build_sse_response(
            stream_with_keepalive(
                service.stream_chat(chat_request),
                keepalive_seconds=service.cfg.stream_keepalive_seconds or 0.0,
                request=request,
            )
        )

    return app


def main() -> None:
    """CLI entry point that loads configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="toolgate tool-augmented streaming service")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    import uvicorn

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        missing = []
        for err in exc.errors():
            if err.get("type") == "missing":
                location = ".".join(str(x) for x in err.get("loc", []))
                missing.append(location)
        if missing:
            fail(
                "Configuration incomplete. Missing required fields: "
                + ", ".join(sorted(set(missing)))
                + ". Provide --config <file> or set env vars "
                + "(TOOLGATE_PROVIDER_BASE_URL)."
            )
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        setup_logging(cfg.logging)
        app = create_app(service=GatewayService(cfg))
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
