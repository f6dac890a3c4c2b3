"""
Ollama-compatible proxy service -> single upstream HTTP API.

Emulated surface:
  GET  /              liveness ("Ollama is running"), HEAD too
  GET  /api/tags      static model catalog
  POST /api/chat      message-list requests
  POST /api/generate  single-prompt requests

The requested model name picks one of five upstream formats (two chat
formats, two image formats, speech). Replies are re-framed as Ollama NDJSON.
Guard rejections and upstream throttling are answered with a normal
``done: true`` frame instead of an HTTP error.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from catalog import build_catalog
from config import AppConfig, load_config
from console import prompt_session_toggles, should_prompt
from emitter import FrameEmitter, refusal_response
from errors import FatalProxyError, RecoverableProxyError
from logger import setup_logging
from models import parse_request_body
from router import route_request
from upstream import UpstreamClient, classify_upstream_response, decode_reply
from utils import dump_config, load_env_files

log = logging.getLogger("ollama_proxy")

LIVENESS_TEXT = "Ollama is running"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"

api = APIRouter()


def _cors_headers(methods: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }


def _get_http_client(app: FastAPI) -> httpx.AsyncClient:
    """Shared upstream pool, opened by the lifespan or injected via create_app()."""
    client = app.state.http_client
    if client is None:
        raise RuntimeError("upstream client is not open: run the app with its lifespan or pass http_client")
    return client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI application.

    Opens the shared upstream pool and pre-warms it in the background so the
    first real request does not pay for the TLS handshake.
    """
    config: AppConfig = app.state.config
    if app.state.http_client is None:
        app.state.http_client = UpstreamClient.build_http_client(config)
        app.state.owns_http_client = True
    client = app.state.http_client

    prewarm_task: asyncio.Task[None] | None = None
    if config.prewarm:
        prewarm_task = asyncio.create_task(
            app.state.upstream.prewarm(client),
            name="ollama_proxy.prewarm",
        )

    yield  # Application is running

    if prewarm_task is not None:
        prewarm_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await prewarm_task
    if app.state.owns_http_client:
        await client.aclose()
        app.state.http_client = None
        app.state.owns_http_client = False


async def _fatal_error_handler(request: Request, exc: FatalProxyError) -> Response:
    log.warning("Request failed path=%s status=%s detail=%s", request.url.path, exc.status_code, exc.message)
    return PlainTextResponse(exc.message + "\n", status_code=exc.status_code)


def _check_content_length(request: Request, config: AppConfig) -> None:
    """Basic request size guard (prevents trivial DoS via huge JSON bodies)."""
    cl = request.headers.get("content-length")
    if not cl:
        return
    try:
        n = int(cl)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        raise HTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
    if n > config.max_request_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
        )


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


async def handle_conversation(request: Request, is_generate: bool) -> Response:
    """Normalize -> route -> forward -> classify -> emit."""
    app = request.app
    config: AppConfig = app.state.config
    _check_content_length(request, config)

    conv = parse_request_body(await request.body(), is_generate)
    req_id = _request_id(request)
    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming %s req_id=%s from=%s model=%r messages=%d stream=%r",
        "generate" if is_generate else "chat",
        req_id,
        client_ip,
        conv.model_name,
        len(conv.messages),
        conv.stream,
    )

    try:
        decision = route_request(conv, config)
        log.debug("req_id=%s routed to %s (%s)", req_id, decision.route.value, decision.endpoint)
        status, body = await app.state.upstream.send(_get_http_client(app), decision)
        body = classify_upstream_response(status, body)
    except RecoverableProxyError as e:
        log.info("req_id=%s answered locally (%s): %s", req_id, type(e).__name__, e.message)
        return refusal_response(conv.model_name, is_generate, e.message)

    reply = decode_reply(decision.route, body)
    return FrameEmitter(config, conv.model_name, is_generate).render(reply, conv.stream)


@api.api_route("/", methods=["GET", "HEAD"])
async def root() -> Response:
    """Liveness probe; some clients check it before anything else."""
    return PlainTextResponse(LIVENESS_TEXT, headers=_cors_headers("GET, OPTIONS"))


@api.get("/api/tags")
async def api_tags() -> Response:
    """List available models (static catalog)."""
    return JSONResponse(build_catalog(), headers=_cors_headers("GET, OPTIONS"))


@api.options("/")
@api.options("/api/tags")
async def options_get_routes() -> Response:
    return Response(status_code=200, headers=_cors_headers("GET, OPTIONS"))


@api.options("/api/chat")
@api.options("/api/generate")
async def options_post_routes() -> Response:
    return Response(status_code=200, headers=_cors_headers("POST, OPTIONS"))


@api.post("/api/chat")
async def api_chat(request: Request) -> Response:
    """Handle message-list chat requests."""
    return await handle_conversation(request, is_generate=False)


@api.post("/api/generate")
async def api_generate(request: Request) -> Response:
    """Handle single-prompt generate requests."""
    return await handle_conversation(request, is_generate=True)


def create_app(config: AppConfig, http_client: httpx.AsyncClient | None = None) -> FastAPI:
    """
    Build the application around an immutable config.

    ``http_client`` lets callers (tests, embedding apps) supply the upstream
    pool; otherwise the lifespan opens one on startup and closes it on
    shutdown. Serving without the lifespan requires an injected client.
    """
    app = FastAPI(
        title="ollama-proxy-service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.http_client = http_client
    app.state.owns_http_client = False
    app.state.upstream = UpstreamClient(config)

    # Browser front-ends talk to the emulated server directly.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Type"],
    )
    app.add_exception_handler(FatalProxyError, _fatal_error_handler)
    app.include_router(api)
    return app


def build_default_app() -> FastAPI:
    """Environment-driven app, used by ``uvicorn ollama_proxy_service:app``."""
    load_env_files()
    config = load_config()
    config.validate()
    setup_logging(config.log_path, config.log_level)
    dump_config(config)
    return create_app(config)


app = build_default_app()


def main() -> None:
    import uvicorn

    config: AppConfig = app.state.config
    if should_prompt(config):
        config = prompt_session_toggles(config)

    print(f"starting server on http://{config.host}:{config.port}")
    print("please make sure to close ollama before continuing")
    print("requests for unknown models are forwarded to the legacy chat endpoint")
    uvicorn.run(create_app(config), host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
