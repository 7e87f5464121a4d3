"""FastAPI application proxying chat messages to a workflow webhook."""
from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .errors import ChatError, InternalError, RateLimited
from .forwarder import WebhookForwarder
from .logsetup import configure_logging
from .ratelimit import RateLimiter, client_key
from .schemas import ErrorResponse, HealthResponse

NO_CACHE = "no-cache, no-store, must-revalidate"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _sweep_forever(limiter: RateLimiter, interval_s: float, log: logging.Logger) -> None:
    while True:
        await asyncio.sleep(interval_s)
        removed = limiter.sweep()
        if removed:
            log.debug("Swept %d expired rate-limit records", removed)


async def _read_json(request: Request) -> Any:
    # Malformed or non-JSON bodies are treated as "no message".
    try:
        return await request.json()
    except ValueError:
        return None


def _error_response(err: ChatError) -> JSONResponse:
    headers = {}
    if isinstance(err, RateLimited) and err.retry_after_s > 0:
        headers["Retry-After"] = str(math.ceil(err.retry_after_s))
    return JSONResponse(err.to_dict(), status_code=err.status_code, headers=headers or None)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    limiter: Optional[RateLimiter] = None,
    logger: Optional[logging.Logger] = None,
) -> FastAPI:
    settings = settings or load_settings(config_path)
    log = logger or configure_logging(settings)
    limiter = limiter or RateLimiter()

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(follow_redirects=True)
    forwarder = WebhookForwarder(settings, limiter, client, log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = None
        if settings.sweep_interval_s > 0:
            sweeper = asyncio.create_task(_sweep_forever(limiter, settings.sweep_interval_s, log))
        log.info(
            "Chat server started",
            extra={"metadata": {"environment": settings.environment, "webhook": settings.webhook_configured}},
        )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            if owns_client:
                await client.aclose()

    app = FastAPI(title="Webhook Chat Server", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.limiter = limiter
    app.state.forwarder = forwarder
    app.state.http_client = client

    @app.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
    def health() -> JSONResponse:
        healthy = settings.webhook_configured
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            timestamp=_utc_iso(),
            environment=settings.environment,
            services={"webhook": "configured" if healthy else "not configured"},
        )
        return JSONResponse(
            body.model_dump(),
            status_code=200 if healthy else 503,
            headers={"Cache-Control": NO_CACHE},
        )

    @app.post(
        "/chat",
        responses={
            400: {"model": ErrorResponse},
            429: {"model": ErrorResponse},
            500: {"model": ErrorResponse},
        },
    )
    async def chat(request: Request) -> JSONResponse:
        peer = request.client.host if request.client else None
        key = client_key(request.headers, peer, trust_forwarded_for=settings.trust_forwarded_for)
        body = await _read_json(request)
        try:
            reply = await forwarder.forward(body, key)
            return JSONResponse(reply)
        except ChatError as err:
            return _error_response(err)
        except ValueError as e:
            # reply parsed but cannot be encoded (e.g. lone surrogates)
            log.error("Webhook reply could not be serialised: %s", e)
            return _error_response(InternalError())

    return app
