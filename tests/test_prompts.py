"""Tests for review prompt construction and oracle response parsing."""

from __future__ import annotations

import pytest

from src.orchestrator.prompts import (
    ResponseParseError,
    build_review_prompt,
    extract_json,
    parse_review_response,
    price_status,
)
from src.shell.contract import Asset, AssetType, MacroContext, Recommendation, ReviewRequest, ReviewSource


def _request(price=38.5, macro=None) -> ReviewRequest:
    asset = Asset(ticker="TAEE11", name="Taesa", asset_type=AssetType.STOCK, ceiling_price=35.0,
                  rationale="Regulated transmission revenue", expected_yield=9.0)
    return ReviewRequest(asset=asset, portfolio_name="Carteira de Dividendos", current_price=price, macro=macro)


# --- JSON extraction ---

def test_extract_plain_json():
    assert extract_json('{"recommendation": "KEEP"}') == {"recommendation": "KEEP"}


def test_extract_fenced_json():
    text = 'Here you go:\n```json\n{"recommendation": "WATCH", "confidenceScore": 70}\n```'
    assert extract_json(text) == {"recommendation": "WATCH", "confidenceScore": 70}


def test_extract_json_with_braces_inside_strings():
    text = 'Analysis: {"analysisText": "payout {high}", "recommendation": "KEEP"} trailing'
    data = extract_json(text)
    assert data["analysisText"] == "payout {high}"


def test_extract_returns_none_without_object():
    assert extract_json("no json at all") is None
    assert extract_json("[1, 2, 3]") is None


# --- Verdict normalization ---

def test_parse_full_response():
    verdict = parse_review_response(
        '{"recommendation": "SUBSTITUIR", "confidenceScore": 75, "analysisText": "Too expensive.",'
        ' "substitutionSuggestion": "TRPL4", "keyFactors": ["price", "yield"]}'
    )
    assert verdict.recommendation is Recommendation.REPLACE
    assert verdict.confidence_score == 75
    assert verdict.substitution_suggestion == "TRPL4"
    assert verdict.key_factors == ("price", "yield")
    assert verdict.source is ReviewSource.ADVISORY


def test_parse_defaults_for_missing_fields():
    verdict = parse_review_response("{}")
    assert verdict.recommendation is Recommendation.WATCH
    assert verdict.confidence_score == 50
    assert verdict.analysis_text == "Analysis not available"
    assert verdict.key_factors == ()


def test_parse_unknown_recommendation_is_watch():
    verdict = parse_review_response('{"recommendation": "SELL EVERYTHING"}')
    assert verdict.recommendation is Recommendation.WATCH


def test_parse_clamps_confidence():
    assert parse_review_response('{"confidenceScore": 140}').confidence_score == 100
    assert parse_review_response('{"confidenceScore": -5}').confidence_score == 0
    assert parse_review_response('{"confidenceScore": "high"}').confidence_score == 50


def test_parse_clamps_non_finite_confidence():
    assert parse_review_response('{"confidenceScore": 1e999}').confidence_score == 100
    assert parse_review_response('{"confidenceScore": -1e999}').confidence_score == 0
    assert parse_review_response('{"confidenceScore": NaN}').confidence_score == 50


def test_parse_drops_suggestion_unless_replace():
    verdict = parse_review_response('{"recommendation": "KEEP", "substitutionSuggestion": "ITSA4"}')
    assert verdict.substitution_suggestion is None

    verdict = parse_review_response('{"recommendation": "REPLACE", "substitutionSuggestion": "null"}')
    assert verdict.substitution_suggestion is None


def test_parse_raises_on_non_json():
    with pytest.raises(ResponseParseError):
        parse_review_response("Sorry, I cannot provide investment advice.")
    with pytest.raises(ResponseParseError):
        parse_review_response("")


# --- Prompt ---

def test_price_status_bands():
    assert price_status(130.0, 100.0).startswith("FAR ABOVE")
    assert price_status(105.0, 100.0).startswith("Above ceiling")
    assert price_status(95.0, 100.0).startswith("Near ceiling")
    assert price_status(80.0, 100.0).startswith("GOOD PRICE")
    assert price_status(None, 100.0) == "N/A"


def test_prompt_uses_default_macro_when_missing():
    prompt = build_review_prompt(_request())
    assert "SELIC rate: 13.25% p.a." in prompt
    assert "IPCA (12 months): 4.50%" in prompt
    assert "IGP-M" not in prompt


def test_prompt_includes_available_macro_and_asset_data():
    macro = MacroContext(selic=10.75, ipca=3.9, igpm=-1.2, usd_brl=5.4321)
    prompt = build_review_prompt(_request(macro=macro))
    assert "SELIC rate: 10.75% p.a." in prompt
    assert "IGP-M: -1.20%" in prompt
    assert "USD/BRL: 5.4321" in prompt
    assert "Current Price: R$ 38.50" in prompt
    assert "Original Ceiling Price: R$ 35.00" in prompt
    assert "Expected Dividend Yield: 9.0%" in prompt


def test_prompt_marks_missing_price():
    prompt = build_review_prompt(_request(price=None))
    assert "Current Price: N/A" in prompt
    assert "Price Status: N/A" in prompt
