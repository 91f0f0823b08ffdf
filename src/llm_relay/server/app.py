from __future__ import annotations

import asyncio
from time import perf_counter
from typing import Any, AsyncIterator, Dict, Optional, Set

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from llm_relay.config import AppSettings, ServerSettings
from llm_relay.core.errors import BackendUnavailable, ValidationError
from llm_relay.core.logging import configure_logging, get_logger
from llm_relay.core.markup import sanitize_markup
from llm_relay.integrations.ollama import OllamaClient
from llm_relay.relay.stream import QueueSink, StreamRelay
from llm_relay.server.validation import validate_prompt, validate_route, validate_timeout_ms
from llm_relay.startup.checks import CheckStatus, run_startup_checks

MODEL_HEADER = "X-Model"


def create_app(settings: ServerSettings, *, backend: Optional[OllamaClient] = None) -> FastAPI:
    """
    HTTP surface of the relay: streaming and blocking generation, model config, health.
    """
    log = get_logger(service="relay_server")
    catalog = settings.catalog()
    ollama = backend or OllamaClient(base_url=settings.ollama_url, timeout_seconds=settings.timeout_seconds)
    # Relay tasks outlive the request handler; keep strong references until they finish.
    relays: Set["asyncio.Task[Any]"] = set()

    app = FastAPI(title="llm-relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[MODEL_HEADER],
    )

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse({"error": exc.message, "code": exc.code}, status_code=400)

    @app.exception_handler(BackendUnavailable)
    async def _backend_unavailable(request: Request, exc: BackendUnavailable) -> JSONResponse:
        log.warning("backend_unavailable", path=request.url.path, error=exc.message)
        return JSONResponse({"error": exc.message}, status_code=503)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(
                {"error": "Route not found", "code": "NOT_FOUND", "path": request.url.path},
                status_code=404,
            )
        return JSONResponse({"error": str(exc.detail), "code": "HTTP_ERROR"}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
        log.error("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse({"error": str(exc) or "Internal server error", "code": "INTERNAL_ERROR"}, status_code=500)

    def model_prompt(prompt: str) -> str:
        return "%s\n\n%s" % (settings.system_instruction, prompt)

    async def read_body(request: Request) -> Dict[str, Any]:
        raw = await request.body()
        if not raw.strip():
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON", "INVALID_JSON") from None
        return body if isinstance(body, dict) else {}

    @app.post("/ai-service/{which}/stream")
    async def ai_service_stream(which: str, request: Request) -> StreamingResponse:
        route = validate_route(which, catalog)
        prompt = validate_prompt(await read_body(request))
        model = catalog.model_name(catalog.resolve_for_prompt(route, prompt))

        upstream = await ollama.open_stream(model=model, prompt=model_prompt(prompt))
        sink = QueueSink()
        relay = StreamRelay(upstream, sink, model=model)
        task = asyncio.create_task(relay.run())
        relays.add(task)
        task.add_done_callback(relays.discard)
        log.info("stream_started", route=which.lower(), model=model)

        return StreamingResponse(
            _drain(sink),
            media_type="text/plain; charset=utf-8",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", MODEL_HEADER: model},
        )

    @app.post("/ai-service/{which}")
    async def ai_service(which: str, request: Request) -> JSONResponse:
        route = validate_route(which, catalog)
        body = await read_body(request)
        prompt = validate_prompt(body)
        timeout_ms = validate_timeout_ms(body)
        model = catalog.model_name(catalog.resolve_for_prompt(route, prompt))

        t0 = perf_counter()
        output = await ollama.generate(
            model=model,
            prompt=model_prompt(prompt),
            timeout_seconds=(timeout_ms / 1000.0) if timeout_ms is not None else None,
        )
        latency_ms = int((perf_counter() - t0) * 1000)
        log.info("generate_complete", route=which.lower(), model=model, latency_ms=latency_ms)
        return JSONResponse(
            {
                "route": which.lower(),
                "model": model,
                "output": sanitize_markup(output),
                "latency_ms": latency_ms,
            },
            headers={MODEL_HEADER: model},
        )

    @app.get("/config/models")
    async def config_models() -> Dict[str, Any]:
        return catalog.to_dict()

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        try:
            models = await ollama.list_models()
        except Exception as e:
            return JSONResponse({"ok": False, "error": str(e) or e.__class__.__name__}, status_code=503)
        return JSONResponse({"ok": True, "models": models})

    app.state.backend = ollama
    app.state.catalog = catalog
    return app


async def _drain(sink: QueueSink) -> AsyncIterator[str]:
    try:
        async for piece in sink:
            yield piece
    finally:
        # No-op after a normal close; otherwise the caller went away mid-stream.
        sink.disconnect()


async def run_server(settings: Optional[AppSettings] = None) -> None:
    settings = settings or AppSettings()
    configure_logging(settings.log_level)
    log = get_logger(service="relay_server")

    backend = OllamaClient(
        base_url=settings.server.ollama_url,
        timeout_seconds=settings.server.timeout_seconds,
    )
    results = await run_startup_checks(backend=backend, catalog=settings.server.catalog())
    if any(r.status == CheckStatus.FAIL for r in results):
        # The backend may come up later; keep serving and report through /healthz.
        log.warning("startup_checks_failed")

    app = create_app(settings.server, backend=backend)
    config = uvicorn.Config(
        app,
        host=str(settings.server.bind_host),
        port=int(settings.server.port),
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    log.info("relay_listening", host=settings.server.bind_host, port=settings.server.port)
    await server.serve()


def main() -> int:
    asyncio.run(run_server())
    return 0
