"""API Server — aiohttp app with auth middleware and REST routes."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import api_key_key, ctx_key
from src.api.metrics import metrics_handler
from src.api.routes import VERSION, setup_routes

log = structlog.get_logger()


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Bearer token authentication. /metrics is left open for the scraper."""
    if request.path == "/metrics":
        return await handler(request)

    api_key = request.app.get(api_key_key, "")
    if not api_key:
        # No API key configured: reject all requests
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "API key not configured"}},
            status=401,
        )
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], api_key):
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "Invalid or missing API key"}},
            status=401,
        )
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Catch unhandled exceptions and return generic error (no tracebacks to clients)."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e),
                  error_type=type(e).__name__)
        return web.json_response(
            {
                "error": {"code": "internal_error", "message": "An unexpected error occurred"},
                "meta": {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "version": VERSION,
                },
            },
            status=500,
        )


def create_app(config, orchestrator, store, reporter, ai=None) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])

    app[api_key_key] = config.api.api_key

    # Shared context for route handlers
    app[ctx_key] = {
        "config": config,
        "orchestrator": orchestrator,
        "store": store,
        "reporter": reporter,
        "ai": ai,
        "started_at": datetime.now(timezone.utc),
    }

    setup_routes(app)

    # Prometheus metrics (no auth)
    app.router.add_get("/metrics", metrics_handler)

    return app
