"""Review orchestrator: periodic and on-demand review cycles.

Runs every 10 days from the scheduler, or on demand from the API:
1. Re-read the asset catalog (all portfolios, or one)
2. Skip fixed-income assets (no market price)
3. Review each remaining asset in catalog order, pausing between assets
4. Isolate per-asset failures: a failed asset contributes no record
5. Record last run time/status and a review_runs row

Batch runs are single-flight: a trigger that arrives while a batch is in
progress returns an empty result immediately instead of queueing.
Single-asset reviews are not gated.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable

import structlog

from src.orchestrator.reporter import Reporter
from src.orchestrator.reviewer import AssetReviewer
from src.shell.catalog import AssetCatalog, CatalogError
from src.shell.contract import Asset, AssetAnalysis, RunStatus
from src.shell.database import Database

log = structlog.get_logger()

NEVER_RUN = "never run"


class ReviewOrchestrator:
    def __init__(
        self,
        catalog: AssetCatalog,
        reviewer: AssetReviewer,
        db: Database | None = None,
        pacing_seconds: float = 0.5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._catalog = catalog
        self._reviewer = reviewer
        self._db = db
        self._pacing = pacing_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._run_lock = asyncio.Lock()
        self._last_run_time: datetime | None = None
        self._last_run_status: str = NEVER_RUN

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def status(self) -> RunStatus:
        return RunStatus(
            running=self._run_lock.locked(),
            last_run_time=self._last_run_time,
            last_run_status=self._last_run_status,
        )

    async def trigger_scheduled(self) -> None:
        """Entry point for the recurring scheduler job."""
        log.info("review.scheduled_trigger")
        await self.run_full(trigger="scheduled")

    async def run_full(self, trigger: str = "manual") -> list[AssetAnalysis]:
        return await self._run_batch("full", None, trigger)

    async def run_portfolio(self, portfolio_name: str, trigger: str = "manual") -> list[AssetAnalysis]:
        return await self._run_batch(portfolio_name, portfolio_name, trigger)

    async def run_asset(self, ticker: str, portfolio_name: str) -> AssetAnalysis | None:
        """Review one asset now. Returns None when it is not in the catalog."""
        log.info("review.asset_requested", ticker=ticker, portfolio=portfolio_name)
        try:
            asset = self._catalog.find_asset(ticker, portfolio_name)
        except CatalogError as e:
            log.error("review.catalog_unavailable", error=str(e))
            return None
        if asset is None:
            log.warning("review.asset_not_found", ticker=ticker, portfolio=portfolio_name)
            return None
        return await self._review_isolated(asset, portfolio_name)

    async def recent_runs(self, limit: int = 10) -> list[dict]:
        if self._db is None:
            return []
        return await self._db.fetchall(
            "SELECT * FROM review_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,),
        )

    async def _run_batch(self, scope: str, portfolio_name: str | None, trigger: str) -> list[AssetAnalysis]:
        # No await between the check and the acquire: atomic on the event loop
        if self._run_lock.locked():
            log.warning("review.already_running", scope=scope, trigger=trigger)
            return []
        async with self._run_lock:
            return await self._run_batch_locked(scope, portfolio_name, trigger)

    async def _run_batch_locked(self, scope: str, portfolio_name: str | None, trigger: str) -> list[AssetAnalysis]:
        started_at = self._clock()
        self._last_run_status = "running..."
        results: list[AssetAnalysis] = []
        log.info("review.run_start", scope=scope, trigger=trigger)

        try:
            portfolios = self._catalog.list_portfolios()
            if portfolio_name is not None:
                portfolios = [p for p in portfolios if p.name == portfolio_name]
                if not portfolios:
                    log.warning("review.portfolio_not_found", portfolio=portfolio_name)

            queue: list[tuple[str, Asset]] = []
            skipped = 0
            for portfolio in portfolios:
                for asset in portfolio.assets:
                    if asset.asset_type.has_market_price:
                        queue.append((portfolio.name, asset))
                    else:
                        skipped += 1
            log.info("review.run_queue", scope=scope, assets=len(queue), skipped_fixed_income=skipped)

            for i, (name, asset) in enumerate(queue):
                if i > 0 and self._pacing > 0:
                    await asyncio.sleep(self._pacing)
                analysis = await self._review_isolated(asset, name)
                if analysis is not None:
                    results.append(analysis)

            self._last_run_time = self._clock()
            self._last_run_status = f"completed: {len(results)} assets"
            summary = Reporter.summarize(results)
            log.info("review.run_complete", scope=scope, trigger=trigger,
                     reviewed=len(results), failed=len(queue) - len(results),
                     by_recommendation=summary.by_recommendation,
                     report=Reporter.format_summary(summary, scope))
        except Exception as e:
            log.error("review.run_failed", scope=scope, trigger=trigger,
                      error=str(e), error_type=type(e).__name__)
            self._last_run_status = f"error: {e}"

        await self._record_run(scope, trigger, started_at, len(results))
        return results

    async def _review_isolated(self, asset: Asset, portfolio_name: str) -> AssetAnalysis | None:
        try:
            return await self._reviewer.review(asset, portfolio_name)
        except Exception as e:
            log.error("review.asset_failed", ticker=asset.ticker, portfolio=portfolio_name,
                      error=str(e), error_type=type(e).__name__)
            return None

    async def _record_run(self, scope: str, trigger: str, started_at: datetime, reviewed: int) -> None:
        if self._db is None:
            return
        try:
            async with self._db.write_lock:
                await self._db.execute(
                    """INSERT INTO review_runs (scope, trigger, started_at, finished_at, assets_reviewed, status)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (scope, trigger, started_at.isoformat(), self._clock().isoformat(),
                     reviewed, self._last_run_status),
                )
                await self._db.commit()
        except Exception as e:
            log.warning("review.run_record_failed", scope=scope, error=str(e))
