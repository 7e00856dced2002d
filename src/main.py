"""Portfolio Review Engine

Main entry point. Wires all components, manages lifecycle, schedules the
recurring asset review.

Startup: load config -> connect DB -> build oracles and store -> start AI client -> start API -> start scheduler
Shutdown: stop scheduler -> stop API -> close HTTP clients -> close DB
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.api.server import create_app as create_api_app
from src.orchestrator.ai_client import AIClient
from src.orchestrator.orchestrator import ReviewOrchestrator
from src.orchestrator.reporter import Reporter
from src.orchestrator.reviewer import AssetReviewer
from src.shell.analysis_store import AnalysisStore
from src.shell.catalog import AssetCatalog
from src.shell.config import Config, load_config
from src.shell.database import Database
from src.shell.economic import EconomicDataClient
from src.shell.prices import PriceOracle
from src.utils.logging import setup_logging

log = structlog.get_logger()


class ReviewEngine:
    """Main application — owns every component and the scheduler."""

    def __init__(self) -> None:
        self._config: Config | None = None
        self._db: Database | None = None
        self._prices: PriceOracle | None = None
        self._economic: EconomicDataClient | None = None
        self._ai: AIClient | None = None
        self._store: AnalysisStore | None = None
        self._orchestrator: ReviewOrchestrator | None = None
        self._reporter: Reporter | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._running = False

    async def start(self) -> None:
        """Full startup sequence."""
        log.info("engine.starting")

        # 1. Config
        self._config = load_config()
        setup_logging(self._config.log_level)
        review = self._config.review
        log.info("config.loaded", catalog=review.catalog_path, ai_provider=self._config.ai.provider)

        # 2. Database
        Path(self._config.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = Database(self._config.db_path)
        await self._db.connect()

        # 3. Shell components
        catalog = AssetCatalog(review.catalog_path)
        self._prices = PriceOracle(
            timeout=review.http_timeout_seconds,
            cache_ttl_seconds=review.price_cache_ttl_seconds,
        )
        self._economic = EconomicDataClient(self._config.economic, timeout=review.http_timeout_seconds)
        self._store = AnalysisStore(self._db, review_interval_days=review.interval_days)

        # 4. AI (optional: the deterministic reviewer covers an unconfigured oracle)
        self._ai = AIClient(self._config.ai, self._db)
        await self._ai.initialize()

        # 5. Review pipeline
        reviewer = AssetReviewer.with_oracle(self._prices, self._economic, self._store, self._ai)
        self._orchestrator = ReviewOrchestrator(
            catalog, reviewer, db=self._db, pacing_seconds=review.pacing_seconds,
        )
        self._reporter = Reporter(self._store)

        # 6. REST API
        if self._config.api.enabled:
            api_app = create_api_app(
                config=self._config,
                orchestrator=self._orchestrator,
                store=self._store,
                reporter=self._reporter,
                ai=self._ai,
            )
            self._api_runner = web.AppRunner(api_app)
            await self._api_runner.setup()
            site = web.TCPSite(self._api_runner, self._config.api.host, self._config.api.port)
            await site.start()
            log.info("api.started", host=self._config.api.host, port=self._config.api.port)

        # 7. Scheduler (configured timezone for all cron jobs)
        self._scheduler = AsyncIOScheduler(timezone=self._config.timezone)
        self._setup_jobs()
        self._scheduler.start()

        book = await self._reporter.book()
        self._running = True
        log.info("engine.started", ai_configured=self._ai.is_configured(),
                 active=book["active_by_recommendation"], pending_review=book["pending_review"])

        # Keep alive
        while self._running:
            await asyncio.sleep(1)

    def _setup_jobs(self) -> None:
        """Configure all scheduled jobs."""
        review = self._config.review

        # Periodic review (default: days 1, 11, 21, 31 of each month at 09:00)
        self._scheduler.add_job(
            self._orchestrator.trigger_scheduled,
            CronTrigger(day=review.cron_day, hour=review.cron_hour, minute=review.cron_minute),
            id="asset_review", name="Periodic Asset Review",
            max_instances=1, coalesce=True,
        )

        # Daily AI token budget reset
        self._scheduler.add_job(
            self._daily_reset, CronTrigger(hour=0, minute=0),
            id="daily_reset", name="Daily Reset",
        )

        log.info("scheduler.configured", cron_day=review.cron_day,
                 hour=review.cron_hour, minute=review.cron_minute)

    async def _daily_reset(self) -> None:
        self._ai.reset_daily_tokens()

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("engine.stopping")
        self._running = False

        # 1. Stop scheduler
        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        # 2. Stop API server
        if self._api_runner:
            await self._api_runner.cleanup()

        # 3. Close outbound clients
        if self._prices:
            await self._prices.close()
        if self._economic:
            await self._economic.close()
        if self._ai:
            await self._ai.close()

        # 4. Close database
        if self._db:
            await self._db.close()

        log.info("engine.stopped")


LOCK_FILE = Path(__file__).resolve().parent.parent / "data" / "review_engine.pid"


def _acquire_lock() -> None:
    """Ensure only one instance runs. Write PID to lockfile."""
    current_pid = os.getpid()
    if LOCK_FILE.exists():
        try:
            old_pid = int(LOCK_FILE.read_text().strip())
        except (ValueError, OSError):
            log.warning("lockfile.corrupt")
            LOCK_FILE.unlink(missing_ok=True)
            old_pid = None

        if old_pid is not None:
            if old_pid == current_pid:
                # Container restart: same PID (typically 1), stale lock
                log.warning("lockfile.stale_container_restart", old_pid=old_pid)
            else:
                try:
                    os.kill(old_pid, 0)  # signal 0 = existence check
                    print(f"ERROR: Another instance is running (PID {old_pid}). Exiting.", file=sys.stderr)
                    sys.exit(1)
                except (ProcessLookupError, PermissionError):
                    log.warning("lockfile.stale", old_pid=old_pid)

    LOCK_FILE.parent.mkdir(parents=True, exist_ok=True)
    LOCK_FILE.write_text(str(current_pid))


def _release_lock() -> None:
    """Remove PID lockfile on exit."""
    try:
        if LOCK_FILE.exists() and LOCK_FILE.read_text().strip() == str(os.getpid()):
            LOCK_FILE.unlink()
    except OSError as e:
        log.warning("lockfile.release_failed", error=str(e))


async def main() -> None:
    _acquire_lock()

    engine = ReviewEngine()

    # Handle SIGTERM/SIGINT for graceful shutdown
    loop = asyncio.get_running_loop()

    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(engine.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await engine.start()
    except KeyboardInterrupt:
        pass
    finally:
        if engine._running:
            await engine.stop()
        elif _stop_task is not None:
            await _stop_task
        _release_lock()


def run() -> None:
    """Entry point for pyproject.toml script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
