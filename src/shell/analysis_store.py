"""Analysis store — versioned persistence for asset reviews.

Every review appends a row. At most one row per ticker carries
``is_active = 1``; there is no unique constraint behind that, so the store
is the only component allowed to flip the flag. ``record()`` deactivates the
previous active row and inserts the new one in a single transaction.
Every write on the shared connection, including token usage and run
history, takes ``Database.write_lock``, so a rollback here can only undo
the store's own statements.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from src.shell.contract import AssetAnalysis, Recommendation, ReviewSource
from src.shell.database import Database

log = structlog.get_logger()

DEFAULT_REVIEW_INTERVAL_DAYS = 10

_COLUMNS = (
    "portfolio_name, ticker, asset_name, asset_type, current_price, ceiling_price, "
    "recommendation, analysis_text, substitution_suggestion, confidence_score, "
    "key_factors, source, analysis_date, next_review_date, is_active"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AnalysisStore:
    def __init__(
        self,
        db: Database,
        review_interval_days: int = DEFAULT_REVIEW_INTERVAL_DAYS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._interval = timedelta(days=review_interval_days)
        self._clock = clock or _utc_now

    # --- Writes ---

    async def deactivate(self, ticker: str) -> int:
        """Mark every active row for ``ticker`` inactive. Returns rows changed."""
        async with self._db.write_lock:
            changed = await self._deactivate(ticker)
            await self._db.commit()
        return changed

    async def save(self, analysis: AssetAnalysis) -> AssetAnalysis:
        """Append a row as-is. Does not touch other rows; see ``record()``."""
        stamped = self._stamp(analysis)
        async with self._db.write_lock:
            cursor = await self._insert(stamped)
            await self._db.commit()
        return replace(stamped, id=cursor.lastrowid)

    async def record(self, analysis: AssetAnalysis) -> AssetAnalysis:
        """Supersede the ticker's active row with ``analysis``.

        Deactivate and insert share one transaction under the write lock,
        so concurrent reviews of the same ticker leave exactly one active row
        (last writer wins).
        """
        async with self._db.write_lock:
            stamped = replace(self._stamp(analysis), is_active=True)
            try:
                superseded = await self._deactivate(analysis.ticker)
                cursor = await self._insert(stamped)
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise
        saved = replace(stamped, id=cursor.lastrowid)
        log.info("store.recorded", ticker=saved.ticker, id=saved.id,
                 recommendation=saved.recommendation.value, superseded=superseded)
        return saved

    def _stamp(self, analysis: AssetAnalysis) -> AssetAnalysis:
        analysis_date = _to_utc(analysis.analysis_date) if analysis.analysis_date else self._clock()
        return replace(
            analysis,
            id=None,
            analysis_date=analysis_date,
            next_review_date=analysis_date + self._interval,
        )

    async def _deactivate(self, ticker: str) -> int:
        cursor = await self._db.execute(
            "UPDATE asset_analyses SET is_active = 0 WHERE ticker = ? AND is_active = 1",
            (ticker,),
        )
        return cursor.rowcount

    async def _insert(self, a: AssetAnalysis):
        return await self._db.execute(
            f"INSERT INTO asset_analyses ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                a.portfolio_name, a.ticker, a.asset_name, a.asset_type,
                a.current_price, a.ceiling_price,
                a.recommendation.value, a.analysis_text, a.substitution_suggestion,
                a.confidence_score, json.dumps(list(a.key_factors)), a.source.value,
                a.analysis_date.isoformat(), a.next_review_date.isoformat(),
                1 if a.is_active else 0,
            ),
        )

    # --- Queries ---

    async def get_active(self, ticker: str) -> AssetAnalysis | None:
        row = await self._db.fetchone(
            "SELECT * FROM asset_analyses WHERE ticker = ? AND is_active = 1 "
            "ORDER BY analysis_date DESC, id DESC LIMIT 1",
            (ticker,),
        )
        return _from_row(row) if row else None

    async def list_by_portfolio(self, portfolio_name: str) -> list[AssetAnalysis]:
        rows = await self._db.fetchall(
            "SELECT * FROM asset_analyses WHERE portfolio_name = ? AND is_active = 1 "
            "ORDER BY analysis_date DESC, id DESC",
            (portfolio_name,),
        )
        return [_from_row(r) for r in rows]

    async def list_history(self, ticker: str) -> list[AssetAnalysis]:
        rows = await self._db.fetchall(
            "SELECT * FROM asset_analyses WHERE ticker = ? ORDER BY analysis_date DESC, id DESC",
            (ticker,),
        )
        return [_from_row(r) for r in rows]

    async def list_pending_review(self, as_of: datetime | None = None) -> list[AssetAnalysis]:
        as_of = _to_utc(as_of) if as_of else self._clock()
        rows = await self._db.fetchall(
            "SELECT * FROM asset_analyses WHERE is_active = 1 AND next_review_date <= ? "
            "ORDER BY next_review_date ASC, id ASC",
            (as_of.isoformat(),),
        )
        return [_from_row(r) for r in rows]

    async def count_pending_review(self, as_of: datetime | None = None) -> int:
        as_of = _to_utc(as_of) if as_of else self._clock()
        row = await self._db.fetchone(
            "SELECT COUNT(*) AS n FROM asset_analyses WHERE is_active = 1 AND next_review_date <= ?",
            (as_of.isoformat(),),
        )
        return row["n"] if row else 0

    async def list_by_recommendation(self, recommendation: Recommendation) -> list[AssetAnalysis]:
        rows = await self._db.fetchall(
            "SELECT * FROM asset_analyses WHERE recommendation = ? AND is_active = 1 "
            "ORDER BY analysis_date DESC, id DESC",
            (recommendation.value,),
        )
        return [_from_row(r) for r in rows]

    async def list_active(self) -> list[AssetAnalysis]:
        rows = await self._db.fetchall(
            "SELECT * FROM asset_analyses WHERE is_active = 1 ORDER BY analysis_date DESC, id DESC"
        )
        return [_from_row(r) for r in rows]

    async def count_active_by_recommendation(self) -> dict[str, int]:
        rows = await self._db.fetchall(
            "SELECT recommendation, COUNT(*) AS n FROM asset_analyses "
            "WHERE is_active = 1 GROUP BY recommendation"
        )
        counts = {rec.value: 0 for rec in Recommendation}
        counts.update({r["recommendation"]: r["n"] for r in rows})
        return counts


def _from_row(row: dict) -> AssetAnalysis:
    return AssetAnalysis(
        id=row["id"],
        portfolio_name=row["portfolio_name"],
        ticker=row["ticker"],
        asset_name=row["asset_name"],
        asset_type=row["asset_type"],
        current_price=row["current_price"],
        ceiling_price=row["ceiling_price"],
        recommendation=Recommendation.parse(row["recommendation"], default=Recommendation.WATCH),
        analysis_text=row["analysis_text"] or "",
        substitution_suggestion=row["substitution_suggestion"],
        confidence_score=row["confidence_score"] if row["confidence_score"] is not None else 0,
        key_factors=tuple(json.loads(row["key_factors"])) if row.get("key_factors") else (),
        source=ReviewSource(row.get("source") or ReviewSource.DETERMINISTIC.value),
        analysis_date=datetime.fromisoformat(row["analysis_date"]),
        next_review_date=datetime.fromisoformat(row["next_review_date"]) if row["next_review_date"] else None,
        is_active=bool(row["is_active"]),
    )
