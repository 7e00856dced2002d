"""Review prompt construction and oracle response parsing."""

from __future__ import annotations

import json
import math
import re

from src.shell.contract import (
    MacroContext,
    Recommendation,
    ReviewRequest,
    ReviewSource,
    ReviewVerdict,
)

# Used in the prompt when the macro provider returned nothing
DEFAULT_SELIC = 13.25
DEFAULT_IPCA = 4.5

DEFAULT_CONFIDENCE = 50

SYSTEM_PROMPT = (
    "You are a certified Brazilian investment analyst (CNPI) performing periodic "
    "reviews of recommended portfolio assets. You answer with a single JSON object."
)

REVIEW_TEMPLATE = """Perform a PERIODIC REVIEW of this asset to decide whether it should stay in the portfolio.

ASSET DATA:
- Ticker: {ticker}
- Name: {name}
- Type: {asset_type}
- Portfolio: {portfolio}
- Current Price: {current_price}
- Original Ceiling Price: {ceiling_price}
- Price Status: {price_status}
- Expected Dividend Yield: {expected_yield}
- Original Rationale: {rationale}

BRAZILIAN ECONOMIC CONTEXT:
- SELIC rate: {selic:.2f}% p.a.
- IPCA (12 months): {ipca:.2f}%
{extra_macro}
EVALUATION CRITERIA:
1. Does the asset still make sense for this portfolio?
2. Have the company's or fund's fundamentals changed significantly?
3. Are there better alternatives in the market?
4. Does the current price justify keeping it, or is it better to replace it?

Reply ONLY with valid JSON (no markdown):
{{
  "recommendation": "KEEP" or "REPLACE" or "WATCH",
  "confidenceScore": 0-100,
  "analysisText": "2-3 paragraphs explaining the recommendation",
  "substitutionSuggestion": "If REPLACE, an alternative asset with ticker and justification; otherwise null",
  "keyFactors": ["factor 1", "factor 2", "factor 3"]
}}"""


class ResponseParseError(ValueError):
    """The oracle answered, but not with a usable JSON object."""


def price_status(current_price: float | None, ceiling_price: float | None) -> str:
    if current_price is None or not ceiling_price:
        return "N/A"
    diff = (current_price - ceiling_price) / ceiling_price * 100
    if diff > 20:
        return f"FAR ABOVE ceiling ({diff:.1f}% above)"
    if diff > 0:
        return f"Above ceiling ({diff:.1f}% above)"
    if diff > -10:
        return f"Near ceiling ({abs(diff):.1f}% below)"
    return f"GOOD PRICE ({abs(diff):.1f}% below ceiling)"


def _money(value: float | None) -> str:
    return f"R$ {value:.2f}" if value is not None else "N/A"


def build_review_prompt(request: ReviewRequest) -> str:
    asset = request.asset
    macro = request.macro or MacroContext()

    extra = []
    if macro.igpm is not None:
        extra.append(f"- IGP-M: {macro.igpm:.2f}%")
    if macro.usd_brl is not None:
        extra.append(f"- USD/BRL: {macro.usd_brl:.4f}")

    return REVIEW_TEMPLATE.format(
        ticker=asset.ticker,
        name=asset.name,
        asset_type=asset.asset_type.value,
        portfolio=request.portfolio_name,
        current_price=_money(request.current_price),
        ceiling_price=_money(asset.ceiling_price),
        price_status=price_status(request.current_price, asset.ceiling_price),
        expected_yield=f"{asset.expected_yield:.1f}%" if asset.expected_yield is not None else "N/A",
        rationale=asset.rationale or "N/A",
        selic=macro.selic if macro.selic is not None else DEFAULT_SELIC,
        ipca=macro.ipca if macro.ipca is not None else DEFAULT_IPCA,
        extra_macro="\n".join(extra) + ("\n" if extra else ""),
    )


_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def extract_json(response: str) -> dict | None:
    """Extract the outermost JSON object from a response.

    Handles responses that wrap JSON in explanatory text or code fences.
    """
    text = _FENCE_RE.sub("", response).strip()
    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if c == "\\":
                escape_next = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start : i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def parse_review_response(response: str) -> ReviewVerdict:
    """Turn an oracle reply into a verdict, or raise ResponseParseError."""
    data = extract_json(response or "")
    if data is None:
        raise ResponseParseError("no JSON object in oracle response")

    recommendation = Recommendation.parse(data.get("recommendation"), default=Recommendation.WATCH)

    try:
        score = float(data.get("confidenceScore", DEFAULT_CONFIDENCE))
    except (TypeError, ValueError):
        score = DEFAULT_CONFIDENCE
    if math.isnan(score):
        score = DEFAULT_CONFIDENCE
    # Clamp before rounding: 1e999 parses to inf
    confidence = int(round(max(0.0, min(100.0, score))))

    text = data.get("analysisText")
    analysis_text = str(text).strip() if text else "Analysis not available"

    suggestion = data.get("substitutionSuggestion")
    if recommendation is not Recommendation.REPLACE or not suggestion or str(suggestion).lower() == "null":
        suggestion = None
    else:
        suggestion = str(suggestion).strip()

    factors = data.get("keyFactors") or []
    if not isinstance(factors, list):
        factors = [factors]

    return ReviewVerdict(
        recommendation=recommendation,
        confidence_score=confidence,
        analysis_text=analysis_text,
        source=ReviewSource.ADVISORY,
        substitution_suggestion=suggestion,
        key_factors=tuple(str(f) for f in factors if f),
    )
