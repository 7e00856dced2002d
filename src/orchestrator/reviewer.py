"""Asset review — turns one catalog asset into one persisted AssetAnalysis.

Two review strategies share one interface: the advisory strategy asks the
LLM oracle, the deterministic strategy compares price to ceiling. The
AssetReviewer tries them in order; the deterministic strategy never fails,
so the analysis step always produces a verdict.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from decimal import Decimal

import structlog

from src.orchestrator.prompts import SYSTEM_PROMPT, build_review_prompt, parse_review_response
from src.shell.analysis_store import AnalysisStore
from src.shell.contract import (
    Asset,
    AssetAnalysis,
    MacroContext,
    Recommendation,
    ReviewRequest,
    ReviewSource,
    ReviewVerdict,
)

log = structlog.get_logger()

DETERMINISTIC_CONFIDENCE = 60
REPLACE_ABOVE_PCT = 30.0
WATCH_ABOVE_PCT = 15.0


def _percent_above(current_price: float, ceiling_price: float) -> float:
    # Decimal over the printed values: 14.30 against 11.00 is exactly 30%
    price, ceiling = Decimal(str(current_price)), Decimal(str(ceiling_price))
    return float((price - ceiling) * 100 / ceiling)


def deterministic_review(
    current_price: float | None,
    ceiling_price: float | None,
    ticker: str = "",
    portfolio_name: str = "",
) -> ReviewVerdict:
    """Price-vs-ceiling heuristic. Pure and total.

    > 30% above ceiling -> REPLACE, (15%, 30%] -> WATCH, otherwise KEEP.
    A missing or non-finite price (or a non-positive ceiling) yields WATCH.
    """
    label = ticker or "The asset"
    prefix = "Basic review without AI. "

    if (
        current_price is None or ceiling_price is None or ceiling_price <= 0
        or not math.isfinite(current_price) or not math.isfinite(ceiling_price)
    ):
        return ReviewVerdict(
            recommendation=Recommendation.WATCH,
            confidence_score=DETERMINISTIC_CONFIDENCE,
            analysis_text=prefix + "The current price could not be obtained. Keep the asset under observation.",
            source=ReviewSource.DETERMINISTIC,
        )

    percent_above = _percent_above(current_price, ceiling_price)

    if percent_above > REPLACE_ABOVE_PCT:
        recommendation = Recommendation.REPLACE
        text = (
            f"{label} is {percent_above:.1f}% above its ceiling price, so it may no longer be a good "
            "opportunity. Consider alternatives in the same sector with a better risk/return profile."
        )
    elif percent_above > WATCH_ABOVE_PCT:
        recommendation = Recommendation.WATCH
        text = (
            f"{label} is {percent_above:.1f}% above its ceiling price. It can still be held, "
            "but monitor it closely for a correction."
        )
    else:
        recommendation = Recommendation.KEEP
        portfolio = f" for the {portfolio_name} portfolio" if portfolio_name else ""
        text = f"{label} is at an acceptable price level and remains a good option{portfolio}."

    return ReviewVerdict(
        recommendation=recommendation,
        confidence_score=DETERMINISTIC_CONFIDENCE,
        analysis_text=prefix + text,
        source=ReviewSource.DETERMINISTIC,
    )


class ReviewStrategy(ABC):
    """One way of reaching a verdict for a review request."""

    name: str = ""

    def available(self) -> bool:
        return True

    @abstractmethod
    async def review(self, request: ReviewRequest) -> ReviewVerdict:
        ...


class DeterministicReviewer(ReviewStrategy):
    name = "deterministic"

    async def review(self, request: ReviewRequest) -> ReviewVerdict:
        return deterministic_review(
            request.current_price,
            request.asset.ceiling_price,
            ticker=request.asset.ticker,
            portfolio_name=request.portfolio_name,
        )


class AdvisoryReviewer(ReviewStrategy):
    """Asks the advisory oracle; raises on any oracle or parse failure."""

    name = "advisory"

    def __init__(self, oracle) -> None:
        self._oracle = oracle

    def available(self) -> bool:
        return self._oracle.is_configured()

    async def review(self, request: ReviewRequest) -> ReviewVerdict:
        prompt = build_review_prompt(request)
        log.debug("review.prompt", ticker=request.asset.ticker, prompt=prompt)
        response = await self._oracle.evaluate(
            prompt, system=SYSTEM_PROMPT, purpose=f"review:{request.asset.ticker}",
        )
        log.debug("review.response", ticker=request.asset.ticker, response=response)
        return parse_review_response(response)


class AssetReviewer:
    """Reviews one asset end to end: price, macro, verdict, persistence.

    Oracle and macro failures degrade to the next strategy. An exception
    raised by the price oracle or the store is left to the caller, which
    isolates it per asset.
    """

    def __init__(self, prices, economic, store: AnalysisStore, strategies: list[ReviewStrategy]) -> None:
        self._prices = prices
        self._economic = economic
        self._store = store
        self._strategies = list(strategies)
        if not any(isinstance(s, DeterministicReviewer) for s in self._strategies):
            self._strategies.append(DeterministicReviewer())

    @classmethod
    def with_oracle(cls, prices, economic, store: AnalysisStore, oracle) -> AssetReviewer:
        return cls(prices, economic, store, [AdvisoryReviewer(oracle), DeterministicReviewer()])

    async def review(self, asset: Asset, portfolio_name: str) -> AssetAnalysis:
        log.info("review.asset_start", ticker=asset.ticker, portfolio=portfolio_name)

        current_price = await self._prices.get_price(asset.ticker, asset.asset_type)
        if current_price is None:
            log.warning("review.price_unavailable", ticker=asset.ticker)

        request = ReviewRequest(
            asset=asset,
            portfolio_name=portfolio_name,
            current_price=current_price,
            macro=await self._fetch_macro(),
        )
        verdict = await self.decide(request)

        analysis = await self._store.record(AssetAnalysis.from_verdict(request, verdict))
        log.info("review.asset_done", ticker=asset.ticker, recommendation=analysis.recommendation.value,
                 confidence=analysis.confidence_score, source=analysis.source.value)
        return analysis

    async def decide(self, request: ReviewRequest) -> ReviewVerdict:
        for strategy in self._strategies:
            if not strategy.available():
                log.debug("review.strategy_unavailable", strategy=strategy.name)
                continue
            try:
                return await strategy.review(request)
            except Exception as e:
                log.warning("review.strategy_failed", strategy=strategy.name,
                            ticker=request.asset.ticker, error=str(e), error_type=type(e).__name__)
        # Unreachable while DeterministicReviewer is in the chain
        return deterministic_review(request.current_price, request.asset.ceiling_price,
                                    request.asset.ticker, request.portfolio_name)

    async def _fetch_macro(self) -> MacroContext | None:
        try:
            return await self._economic.fetch()
        except Exception as e:
            log.warning("review.macro_unavailable", error=str(e))
            return None
