#!/usr/bin/env python3
"""Archie Relay Server

Sits between untrusted clients (web/mobile UI, Telegram bot) and the Archie
backend agent:
- GET  /events        SSE stream of push events (authenticated)
- POST /message       forward a user message to Archie (authenticated)
- POST /push          broadcast a push event to every open stream (trusted network)
- POST /relay/vargo   forward a message to the Telegram chat
"""

import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from config import RELAY_HOST, RELAY_PORT, ConfigurationError
from auth import Identity, TokenVerifier, extract_token
from gateway import AgentGateway, GatewayError
from registry import ConnectionRegistry
from streams import SSE_HEADERS, EventStream
from telegram_relay import RelayError, RelayNotConfigured, TelegramRelay

logger = logging.getLogger("relay.server")

registry = ConnectionRegistry()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Clawd-Token",
}

# --- Shared HTTP client and collaborators ---
# Single httpx.AsyncClient reused for all outbound requests (key set,
# backend, Telegram). Initialized in lifespan(), closed on shutdown.
_http_client: Optional[httpx.AsyncClient] = None
_verifier: Optional[TokenVerifier] = None
_gateway: Optional[AgentGateway] = None
_relay: Optional[TelegramRelay] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _http_client, _verifier, _gateway, _relay

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(10.0, connect=5.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )
    _verifier = TokenVerifier(_http_client)
    _gateway = AgentGateway(_http_client)
    _relay = TelegramRelay(_http_client)

    if not config.ALLOWED_EMAIL:
        logger.warning("ALLOWED_EMAIL is not set; every authenticated request will be rejected")
    if _relay.configured:
        logger.info("Telegram relay enabled")
    else:
        logger.info("Telegram relay disabled (TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID not set)")

    yield

    await registry.close_all()
    await _http_client.aclose()
    _http_client = None
    logger.info("Shared HTTP client closed")


app = FastAPI(title="Archie Relay Server", lifespan=lifespan)


# --- Error mapping ---

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    # Unknown paths and wrong methods on known paths are both "not found"
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not Found", status_code=404)
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal Server Error"}, status_code=500)


# --- Request helpers ---

async def _require_auth(request: Request) -> Identity:
    """Verify the caller's token. Raises 401 if missing, invalid, or not allowed."""
    identity = await _verifier.verify(extract_token(request))
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _require_message(body: dict) -> str:
    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="message is required")
    return message


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Endpoints ---

@app.get("/events")
async def events(request: Request):
    """Open an SSE stream that receives every push event until the client disconnects."""
    identity = await _require_auth(request)
    stream = EventStream(registry)
    connection_id = await stream.open()
    logger.info("Event stream %s opened for %s", connection_id, identity.name)
    return StreamingResponse(stream.frames(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/message")
async def message(request: Request):
    """Forward a user message to Archie.

    Body: {message, useCompletions?, systemPrompt?}. When useCompletions (a
    boolean) is true the reply text of a chat completion is returned as
    "reply"; otherwise the backend's tool result is returned as "result".
    """
    await _require_auth(request)
    body = await _read_body(request)
    text = _require_message(body)

    system_prompt = body.get("systemPrompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise HTTPException(status_code=400, detail="systemPrompt must be a string")
    use_completions = body.get("useCompletions", False)
    if not isinstance(use_completions, bool):
        raise HTTPException(status_code=400, detail="useCompletions must be a boolean")

    try:
        if use_completions:
            reply = await _gateway.complete(text, system_prompt)
            return JSONResponse({"status": "success", "reply": reply})
        result = await _gateway.send_message(text)
    except GatewayError:
        return JSONResponse({"error": "Failed to communicate with Archie"}, status_code=500)
    return JSONResponse({"status": "success", "result": result})


@app.post("/push")
async def push(request: Request):
    """Broadcast {message, timestamp} to every open event stream.

    Unauthenticated: only reachable from the local backend process.
    """
    body = await _read_body(request)
    text = _require_message(body)

    payload = json.dumps({"message": text, "timestamp": _utc_timestamp()}, separators=(",", ":"))
    delivered = await registry.broadcast(payload)
    logger.info("Push event delivered to %d stream(s)", delivered)
    return JSONResponse({"ok": True})


@app.post("/relay/vargo")
async def relay_vargo(request: Request):
    """Forward a message to the configured Telegram chat."""
    if not _relay.configured:
        return JSONResponse({"error": "Telegram relay is not configured"}, status_code=500)

    body = await _read_body(request)
    text = _require_message(body)
    try:
        await _relay.relay(text)
    except RelayNotConfigured:
        return JSONResponse({"error": "Telegram relay is not configured"}, status_code=500)
    except RelayError:
        return JSONResponse({"error": "Failed to relay message"}, status_code=500)
    return JSONResponse({"status": "success"})


# --- CORS ---

class _CORSGuard:
    """Outermost ASGI wrapper: answers every OPTIONS pre-flight and adds the
    CORS header set to every HTTP response, including error responses."""

    def __init__(self, app):
        self._app = app
        self._raw_headers = [(k.lower().encode(), v.encode()) for k, v in CORS_HEADERS.items()]

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=200, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + self._raw_headers
            await send(message)

        await self._app(scope, receive, send_with_cors)


app = _CORSGuard(app)


def main():
    config.configure_logging()
    try:
        config.validate()
    except ConfigurationError as e:
        logger.critical("FATAL: %s", e)
        sys.exit(1)

    import uvicorn
    logger.info("Archie relay server running on http://%s:%d", RELAY_HOST, RELAY_PORT)
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT)


if __name__ == "__main__":
    main()
