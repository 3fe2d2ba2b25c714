"""FastAPI application factory for one worker."""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import psutil
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from higgs_server import __version__

if TYPE_CHECKING:
    from higgs_server.management.worker_context import WorkerContext

logger = logging.getLogger("web")

# Extra response headers applied to every response
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
}


def default_api_router(ctx: WorkerContext) -> APIRouter:
    """Router used when no API collaborator is supplied."""
    router = APIRouter()

    @router.get("/status")
    async def api_status():
        return {
            "worker": ctx.slot,
            "services": {name: str(state) for name, state in ctx.service_states().items()},
        }

    return router


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path or "<unmatched>"


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def create_app(ctx: WorkerContext, api_router: APIRouter | None = None) -> FastAPI:
    """Build the HTTP application of a worker.

    Args:
        ctx: Worker context holding the service handles and settings
        api_router: API collaborator mounted under /api/v1

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(title="higgs-server", version=__version__, docs_url=None, redoc_url=None)
    app.state.ctx = ctx
    production = ctx.settings.is_production

    # ── Exception handlers ────────────────────────────────
    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        monitoring = ctx.monitoring
        if monitoring is not None:
            monitoring.record_error(exc, "UNHANDLED_ERROR")
        message = "Internal server error" if production else str(exc)
        return JSONResponse(status_code=500, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={"error": "Not found", "path": request.url.path},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    # ── Middleware (last added runs first) ────────────────
    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        security_handle = ctx.handles.get("security")
        if security_handle is None or not security_handle.is_ready:
            return await call_next(request)
        security = security_handle.facade
        if security.is_exempt(request.url.path):
            return await call_next(request)

        client = _client_key(request)
        if not security.admit(client):
            retry_after = security.retry_after(client) or int(security.window)
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    @app.middleware("http")
    async def request_timing(request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            _record(request, 500, start)
            raise
        _record(request, response.status_code, start)
        return response

    def _record(request: Request, status: int, start: float):
        duration_ms = (time.perf_counter() - start) * 1000.0
        monitoring = ctx.monitoring
        if monitoring is not None:
            monitoring.record_http_request(request.method, _route_label(request), status, duration_ms)
        logger.debug(f"{request.method} {request.url.path} {status} {duration_ms:.1f}ms")

    # ── Routes ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        states = ctx.service_states()
        healthy = ctx.all_ready()
        memory = psutil.Process().memory_info()
        body = {
            "status": "healthy" if healthy else "degraded",
            "services": {name: str(state) for name, state in states.items()},
            "pid": os.getpid(),
            "worker": ctx.slot,
            "uptime": round(ctx.uptime, 3),
            "memory": {"rss": memory.rss, "vms": memory.vms},
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": ctx.settings.env,
        }
        monitoring_handle = ctx.handles.get("monitoring")
        if monitoring_handle is not None and monitoring_handle.is_ready:
            body["monitoring"] = monitoring_handle.facade.get_health_status()
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/metrics")
    async def metrics():
        monitoring = ctx.monitoring
        text = monitoring.get_metrics() if monitoring is not None else ""
        return PlainTextResponse(text, media_type="text/plain; version=0.0.4")

    @app.get("/")
    async def banner():
        return {
            "name": "higgs-server",
            "version": __version__,
            "status": "running",
            "worker": ctx.slot,
            "environment": ctx.settings.env,
        }

    app.include_router(api_router or default_api_router(ctx), prefix="/api/v1")
    return app
