"""FastAPI app factory for the lampfinder API."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from lampfinder.api.lamps import router as lamps_router
from lampfinder.errors import QueryValidationError, TransientTransportError
from lampfinder.observability import configure_logging
from lampfinder.services.factories import LampServices, build_services
from lampfinder.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

# In-memory request log keyed by client address
REQUEST_LOG: Dict[str, List[float]] = {}
RATE_LIMIT_WINDOW_SECONDS = 60


def _client_key(request: Request, trust_forwarded_for: bool) -> str:
    forwarded = request.headers.get("x-forwarded-for") if trust_forwarded_for else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _prune_request_log(window_start: float) -> None:
    for client in [key for key, stamps in REQUEST_LOG.items() if not stamps or stamps[-1] <= window_start]:
        del REQUEST_LOG[client]


def create_app(settings: Settings | None = None, services: LampServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override; defaults to :func:`get_settings`.
        services: Prebuilt service graph (tests inject stubs here).

    Returns:
        Configured FastAPI instance.
    """

    resolved = settings or (services.settings if services else get_settings())
    configure_logging(resolved)
    max_requests = resolved.rate_limit.requests_per_minute
    trust_forwarded_for = resolved.rate_limit.trust_forwarded_for

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(resolved)
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="Lampfinder API", version="0.1", lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.include_router(lamps_router)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """Per-client limiter over a rolling 60 s window."""

        client = _client_key(request, trust_forwarded_for)
        now = time.time()
        window_start = now - RATE_LIMIT_WINDOW_SECONDS
        _prune_request_log(window_start)
        timestamps = REQUEST_LOG.setdefault(client, [])
        timestamps[:] = [stamp for stamp in timestamps if stamp > window_start]
        if len(timestamps) >= max_requests:
            LOGGER.warning("Rate limit exceeded client=%s path=%s", client, request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"success": False, "error": "Rate limit exceeded. Try again later."},
            )
        timestamps.append(now)
        return await call_next(request)

    @app.exception_handler(QueryValidationError)
    async def _query_validation_handler(request: Request, exc: QueryValidationError) -> JSONResponse:
        LOGGER.warning("Rejected query path=%s error=%s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(exc)},
        )

    @app.exception_handler(TransientTransportError)
    async def _transport_handler(request: Request, exc: TransientTransportError) -> JSONResponse:
        LOGGER.error("Upstream failure path=%s attempts=%s error=%s", request.url.path, exc.attempts, exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "error": "Lamp data service is temporarily unavailable"},
        )

    return app


# For uvicorn, expose `app` at module level
app = create_app()

__all__ = ["REQUEST_LOG", "app", "create_app"]
