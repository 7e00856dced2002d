"""Prometheus /metrics endpoint — exports review run and review book gauges."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, Info, generate_latest

from src.api import ctx_key
from src.api.routes import VERSION

log = structlog.get_logger()

# Custom registry avoids pytest conflicts with the global default registry.
registry = CollectorRegistry()

# --- Run gauges ---
review_running = Gauge("pr_review_running", "Review batch in progress (1=yes, 0=no)", registry=registry)
last_run_assets = Gauge("pr_last_run_assets", "Assets reviewed by the last completed batch", registry=registry)
last_run_age_seconds = Gauge("pr_last_run_age_seconds", "Seconds since the last completed batch", registry=registry)

# --- Review book gauges ---
active_analyses = Gauge("pr_active_analyses", "Active analyses per recommendation", ["recommendation"], registry=registry)
pending_reviews = Gauge("pr_pending_reviews", "Active analyses past their next review date", registry=registry)

# --- AI gauges ---
ai_daily_tokens = Gauge("pr_ai_daily_tokens", "Tokens used today", registry=registry)
ai_daily_cost_usd = Gauge("pr_ai_daily_cost_usd", "AI spend today in USD", registry=registry)
ai_tokens_remaining = Gauge("pr_ai_tokens_remaining", "Daily token budget left", registry=registry)

# --- System ---
system_info = Info("pr_system", "Review engine metadata", registry=registry)
uptime_seconds = Gauge("pr_uptime_seconds", "Engine uptime in seconds", registry=registry)


def _assets_from_status(status: str) -> int | None:
    # "completed: N assets"
    if not status.startswith("completed:"):
        return None
    try:
        return int(status.split(":", 1)[1].split()[0])
    except (IndexError, ValueError):
        return None


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    orchestrator = ctx["orchestrator"]
    store = ctx["store"]
    ai = ctx.get("ai")
    now_utc = datetime.now(timezone.utc)

    try:
        status = orchestrator.status()
        review_running.set(1 if status.running else 0)
        assets = _assets_from_status(status.last_run_status)
        if assets is not None:
            last_run_assets.set(assets)
        if status.last_run_time:
            last_run_age_seconds.set((now_utc - status.last_run_time).total_seconds())

        for rec, count in (await store.count_active_by_recommendation()).items():
            active_analyses.labels(recommendation=rec).set(count)
        pending_reviews.set(await store.count_pending_review())

        if ai is not None:
            usage = await ai.get_daily_usage()
            ai_daily_tokens.set(usage.get("used", 0) or 0)
            ai_daily_cost_usd.set(usage.get("total_cost", 0) or 0)
            ai_tokens_remaining.set(ai.tokens_remaining)

        system_info.info({"version": VERSION, "ai_configured": str(bool(ai and ai.is_configured())).lower()})
        started_at = ctx.get("started_at")
        if started_at:
            uptime_seconds.set((now_utc - started_at).total_seconds())

    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.content_type = "text/plain"
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
