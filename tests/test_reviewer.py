"""Tests for asset review: deterministic fallback, strategy chain, end-to-end review.

The deterministic heuristic is pure, so its boundaries are checked directly.
The AssetReviewer tests use fake oracles and a temp-file SQLite store.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.orchestrator.reviewer import (
    AdvisoryReviewer,
    AssetReviewer,
    DeterministicReviewer,
    deterministic_review,
)
from src.shell.analysis_store import AnalysisStore
from src.shell.contract import (
    Asset,
    AssetType,
    MacroContext,
    Recommendation,
    ReviewRequest,
    ReviewSource,
)
from src.shell.database import Database

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

ADVISORY_JSON = """{
  "recommendation": "REPLACE",
  "confidenceScore": 82,
  "analysisText": "Valuation stretched after the rally.",
  "substitutionSuggestion": "ITSA4 - cheaper exposure to the same bank",
  "keyFactors": ["valuation", "payout"]
}"""


def _asset(ticker="BBAS3", ceiling=30.0, asset_type=AssetType.STOCK) -> Asset:
    return Asset(ticker=ticker, name=f"{ticker} S.A.", asset_type=asset_type, ceiling_price=ceiling)


def _request(price, ceiling=100.0) -> ReviewRequest:
    return ReviewRequest(asset=_asset(ceiling=ceiling), portfolio_name="Carteira de Valor",
                         current_price=price, macro=MacroContext(selic=10.5, ipca=4.2))


def _oracle(configured=True, response=ADVISORY_JSON, error=None):
    oracle = MagicMock()
    oracle.is_configured.return_value = configured
    if error is not None:
        oracle.evaluate = AsyncMock(side_effect=error)
    else:
        oracle.evaluate = AsyncMock(return_value=response)
    return oracle


def _prices(price=25.0):
    prices = MagicMock()
    prices.get_price = AsyncMock(return_value=price)
    return prices


def _economic(macro=None, error=None):
    economic = MagicMock()
    if error is not None:
        economic.fetch = AsyncMock(side_effect=error)
    else:
        economic.fetch = AsyncMock(return_value=macro or MacroContext(selic=10.5))
    return economic


# --- Deterministic heuristic ---

def test_deterministic_exactly_30_pct_above_is_watch():
    verdict = deterministic_review(130.0, 100.0)
    assert verdict.recommendation is Recommendation.WATCH
    assert verdict.source is ReviewSource.DETERMINISTIC


def test_deterministic_boundaries_hold_for_cent_prices():
    # 14.30 / 11.00 and 12.65 / 11.00 sit exactly on the 30% and 15% marks
    assert deterministic_review(14.30, 11.00).recommendation is Recommendation.WATCH
    assert deterministic_review(12.65, 11.00).recommendation is Recommendation.KEEP
    assert deterministic_review(14.31, 11.00).recommendation is Recommendation.REPLACE


def test_deterministic_non_finite_price_is_watch():
    assert deterministic_review(float("inf"), 100.0).recommendation is Recommendation.WATCH
    assert deterministic_review(float("nan"), 100.0).recommendation is Recommendation.WATCH


def test_deterministic_40_pct_above_is_replace():
    verdict = deterministic_review(140.0, 100.0, ticker="BBAS3")
    assert verdict.recommendation is Recommendation.REPLACE
    assert "40.0%" in verdict.analysis_text


def test_deterministic_10_pct_above_is_keep():
    assert deterministic_review(110.0, 100.0).recommendation is Recommendation.KEEP


def test_deterministic_exactly_15_pct_above_is_keep():
    assert deterministic_review(115.0, 100.0).recommendation is Recommendation.KEEP


def test_deterministic_below_ceiling_is_keep():
    assert deterministic_review(80.0, 100.0).recommendation is Recommendation.KEEP


def test_deterministic_missing_price_is_watch_without_substitution():
    verdict = deterministic_review(None, 100.0)
    assert verdict.recommendation is Recommendation.WATCH
    assert verdict.substitution_suggestion is None
    assert verdict.analysis_text.startswith("Basic review without AI.")


def test_deterministic_missing_ceiling_is_watch():
    assert deterministic_review(50.0, None).recommendation is Recommendation.WATCH
    assert deterministic_review(50.0, 0.0).recommendation is Recommendation.WATCH


def test_deterministic_confidence_is_fixed():
    scores = {deterministic_review(p, 100.0).confidence_score for p in (None, 50.0, 120.0, 200.0)}
    assert scores == {60}


# --- Strategy chain ---

@pytest.mark.asyncio
async def test_advisory_verdict_used_when_oracle_answers():
    oracle = _oracle()
    reviewer = AssetReviewer.with_oracle(_prices(), _economic(), MagicMock(), oracle)

    verdict = await reviewer.decide(_request(140.0))

    assert verdict.source is ReviewSource.ADVISORY
    assert verdict.recommendation is Recommendation.REPLACE
    assert verdict.confidence_score == 82
    assert verdict.substitution_suggestion.startswith("ITSA4")
    assert verdict.key_factors == ("valuation", "payout")
    oracle.evaluate.assert_awaited_once()


@pytest.mark.asyncio
async def test_fallback_when_oracle_raises():
    oracle = _oracle(error=RuntimeError("overloaded"))
    reviewer = AssetReviewer.with_oracle(_prices(), _economic(), MagicMock(), oracle)

    verdict = await reviewer.decide(_request(140.0))

    assert verdict.source is ReviewSource.DETERMINISTIC
    assert verdict.recommendation is Recommendation.REPLACE


@pytest.mark.asyncio
async def test_fallback_when_oracle_not_configured():
    oracle = _oracle(configured=False)
    reviewer = AssetReviewer.with_oracle(_prices(), _economic(), MagicMock(), oracle)

    verdict = await reviewer.decide(_request(110.0))

    assert verdict.source is ReviewSource.DETERMINISTIC
    assert verdict.recommendation is Recommendation.KEEP
    oracle.evaluate.assert_not_awaited()


@pytest.mark.asyncio
async def test_fallback_when_oracle_output_unparseable():
    oracle = _oracle(response="I am unable to help with that.")
    reviewer = AssetReviewer.with_oracle(_prices(), _economic(), MagicMock(), oracle)

    verdict = await reviewer.decide(_request(130.0))

    assert verdict.source is ReviewSource.DETERMINISTIC
    assert verdict.recommendation is Recommendation.WATCH


@pytest.mark.asyncio
async def test_deterministic_appended_when_missing_from_chain():
    reviewer = AssetReviewer(_prices(), _economic(), MagicMock(), [AdvisoryReviewer(_oracle(configured=False))])
    verdict = await reviewer.decide(_request(None))
    assert verdict.source is ReviewSource.DETERMINISTIC


@pytest.mark.asyncio
async def test_advisory_prompt_carries_asset_and_macro():
    oracle = _oracle()
    strategy = AdvisoryReviewer(oracle)

    await strategy.review(_request(140.0))

    prompt = oracle.evaluate.await_args.args[0]
    assert "BBAS3" in prompt
    assert "Carteira de Valor" in prompt
    assert "10.50% p.a." in prompt
    assert oracle.evaluate.await_args.kwargs["purpose"] == "review:BBAS3"


def test_deterministic_strategy_always_available():
    assert DeterministicReviewer().available()


# --- End-to-end review with persistence ---

@pytest.mark.asyncio
async def test_review_persists_active_record():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    try:
        db = Database(db_path)
        await db.connect()
        store = AnalysisStore(db, clock=lambda: FIXED_NOW)
        reviewer = AssetReviewer.with_oracle(_prices(40.0), _economic(), store, _oracle(configured=False))

        analysis = await reviewer.review(_asset(ceiling=30.0), "Carteira de Valor")

        assert analysis.id is not None
        assert analysis.recommendation is Recommendation.REPLACE
        assert analysis.current_price == 40.0
        assert analysis.analysis_date == FIXED_NOW
        assert analysis.next_review_date == FIXED_NOW + timedelta(days=10)

        active = await store.get_active("BBAS3")
        assert active.id == analysis.id
        assert active.source is ReviewSource.DETERMINISTIC

        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_review_survives_macro_failure():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    try:
        db = Database(db_path)
        await db.connect()
        store = AnalysisStore(db, clock=lambda: FIXED_NOW)
        oracle = _oracle()
        reviewer = AssetReviewer.with_oracle(_prices(None), _economic(error=ConnectionError("bcb down")),
                                             store, oracle)

        analysis = await reviewer.review(_asset(), "Carteira de Valor")

        assert analysis.source is ReviewSource.ADVISORY
        assert analysis.current_price is None
        # Prompt falls back to default SELIC when macro is missing
        assert "13.25% p.a." in oracle.evaluate.await_args.args[0]

        await db.close()
    finally:
        os.unlink(db_path)


@pytest.mark.asyncio
async def test_review_propagates_price_oracle_exception():
    prices = MagicMock()
    prices.get_price = AsyncMock(side_effect=RuntimeError("socket closed"))
    store = MagicMock()
    store.record = AsyncMock()
    reviewer = AssetReviewer.with_oracle(prices, _economic(), store, _oracle(configured=False))

    with pytest.raises(RuntimeError):
        await reviewer.review(_asset(), "Carteira de Valor")
    store.record.assert_not_awaited()
