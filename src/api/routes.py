"""REST API endpoint handlers — review triggers and analysis queries."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web

from src.api import ctx_key
from src.orchestrator.reporter import Reporter
from src.shell.contract import Recommendation

log = structlog.get_logger()

VERSION = "1.0.0"


def _meta() -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


def _envelope(data) -> dict:
    return {"data": data, "meta": _meta()}


def _error_envelope(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}, "meta": _meta()}


def _already_running() -> web.Response:
    return web.json_response(
        _error_envelope("already_running", "A review run is already in progress"),
        status=409,
    )


# --- Review triggers ---

async def run_full_handler(request: web.Request) -> web.Response:
    orchestrator = request.app[ctx_key]["orchestrator"]
    if orchestrator.is_running:
        return _already_running()

    log.info("api.review_requested", scope="full")
    results = await orchestrator.run_full()
    return web.json_response(_envelope({
        "status": orchestrator.status().to_dict(),
        "summary": Reporter.summarize(results).to_dict(),
        "analyses": [a.to_dict() for a in results],
    }))


async def run_portfolio_handler(request: web.Request) -> web.Response:
    orchestrator = request.app[ctx_key]["orchestrator"]
    portfolio = request.match_info["portfolio"]
    if orchestrator.is_running:
        return _already_running()

    log.info("api.review_requested", scope=portfolio)
    results = await orchestrator.run_portfolio(portfolio)
    return web.json_response(_envelope({
        "status": orchestrator.status().to_dict(),
        "summary": Reporter.summarize(results).to_dict(),
        "analyses": [a.to_dict() for a in results],
    }))


async def run_asset_handler(request: web.Request) -> web.Response:
    orchestrator = request.app[ctx_key]["orchestrator"]
    portfolio = request.match_info["portfolio"]
    ticker = request.match_info["ticker"]

    analysis = await orchestrator.run_asset(ticker, portfolio)
    if analysis is None:
        return web.json_response(
            _error_envelope("not_found", f"Asset {ticker} not found in portfolio {portfolio}"),
            status=404,
        )
    return web.json_response(_envelope(analysis.to_dict()))


async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    orchestrator = ctx["orchestrator"]
    data = orchestrator.status().to_dict()
    data["recent_runs"] = await orchestrator.recent_runs()
    data["book"] = await ctx["reporter"].book()
    return web.json_response(_envelope(data))


# --- Analysis queries ---

async def active_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    rows = await store.list_active()
    return web.json_response(_envelope([a.to_dict() for a in rows]))


async def pending_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    rows = await store.list_pending_review()
    return web.json_response(_envelope([a.to_dict() for a in rows]))


async def portfolio_analyses_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    rows = await store.list_by_portfolio(request.match_info["name"])
    return web.json_response(_envelope([a.to_dict() for a in rows]))


async def ticker_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    ticker = request.match_info["ticker"].upper()
    analysis = await store.get_active(ticker)
    if analysis is None:
        return web.json_response(
            _error_envelope("not_found", f"No active analysis for {ticker}"),
            status=404,
        )
    return web.json_response(_envelope(analysis.to_dict()))


async def history_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    rows = await store.list_history(request.match_info["ticker"].upper())
    return web.json_response(_envelope([a.to_dict() for a in rows]))


async def substitutions_handler(request: web.Request) -> web.Response:
    store = request.app[ctx_key]["store"]
    rows = await store.list_by_recommendation(Recommendation.REPLACE)
    return web.json_response(_envelope([a.to_dict() for a in rows]))


def setup_routes(app: web.Application) -> None:
    """Register all REST routes."""
    app.router.add_post("/v1/review/run", run_full_handler)
    app.router.add_post("/v1/review/run/{portfolio}", run_portfolio_handler)
    app.router.add_post("/v1/review/run/{portfolio}/{ticker}", run_asset_handler)
    app.router.add_get("/v1/review/status", status_handler)
    app.router.add_get("/v1/analyses", active_handler)
    app.router.add_get("/v1/analyses/pending", pending_handler)
    app.router.add_get("/v1/analyses/portfolio/{name}", portfolio_analyses_handler)
    app.router.add_get("/v1/analyses/ticker/{ticker}", ticker_handler)
    app.router.add_get("/v1/analyses/history/{ticker}", history_handler)
    app.router.add_get("/v1/analyses/substitutions", substitutions_handler)
