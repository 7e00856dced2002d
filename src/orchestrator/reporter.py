"""Reporter — summaries of review runs and of the current review book.

Used for run-completion logs and the REST responses.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from src.shell.analysis_store import AnalysisStore
from src.shell.contract import AssetAnalysis, Recommendation, RunSummary


class Reporter:
    def __init__(self, store: AnalysisStore) -> None:
        self._store = store

    @staticmethod
    def summarize(results: list[AssetAnalysis]) -> RunSummary:
        counts = Counter(a.recommendation.value for a in results)
        return RunSummary(
            total=len(results),
            by_recommendation={rec.value: counts.get(rec.value, 0) for rec in Recommendation},
            substitutions=[
                {
                    "portfolio": a.portfolio_name,
                    "ticker": a.ticker,
                    "confidence": a.confidence_score,
                    "suggestion": a.substitution_suggestion,
                }
                for a in results
                if a.recommendation is Recommendation.REPLACE
            ],
        )

    @staticmethod
    def format_summary(summary: RunSummary, scope: str = "full") -> str:
        recs = summary.by_recommendation
        lines = [
            f"--- Review Run ({scope}) ---",
            f"Assets reviewed: {summary.total}",
            f"Keep: {recs.get('KEEP', 0)} | Watch: {recs.get('WATCH', 0)} | Replace: {recs.get('REPLACE', 0)}",
        ]
        for sub in summary.substitutions:
            suggestion = f" -> {sub['suggestion']}" if sub["suggestion"] else ""
            lines.append(f"  REPLACE {sub['ticker']} ({sub['portfolio']}){suggestion}")
        return "\n".join(lines)

    async def book(self, as_of: datetime | None = None) -> dict:
        """Current state of the active review book."""
        return {
            "active_by_recommendation": await self._store.count_active_by_recommendation(),
            "pending_review": await self._store.count_pending_review(as_of),
        }
