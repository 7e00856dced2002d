"""Review contract — the types shared by the catalog, reviewers, store and API.

Everything that crosses a component boundary is defined here so the
orchestrator, the reviewers and the store agree on exactly one shape.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# --- Enums ---

class Recommendation(Enum):
    KEEP = "KEEP"
    REPLACE = "REPLACE"
    WATCH = "WATCH"

    @classmethod
    def parse(cls, value: str | None, default: Recommendation | None = None) -> Recommendation:
        """Accept English names and the Portuguese labels used by the catalog authors."""
        key = str(value or "").strip().upper()
        found = _RECOMMENDATION_ALIASES.get(key)
        if found is not None:
            return found
        if default is not None:
            return default
        raise ValueError(f"Unknown recommendation: {value!r}")


_RECOMMENDATION_ALIASES = {
    "KEEP": Recommendation.KEEP,
    "MANTER": Recommendation.KEEP,
    "REPLACE": Recommendation.REPLACE,
    "SUBSTITUIR": Recommendation.REPLACE,
    "WATCH": Recommendation.WATCH,
    "OBSERVAR": Recommendation.WATCH,
}


class AssetType(Enum):
    STOCK = "STOCK"
    REIT = "REIT"                       # FII
    ETF = "ETF"
    INTERNATIONAL_ETF = "INTERNATIONAL_ETF"
    CRYPTO = "CRYPTO"
    STABLECOIN = "STABLECOIN"
    FIXED_INCOME = "FIXED_INCOME"

    @classmethod
    def parse(cls, value: str) -> AssetType:
        key = str(value).strip()
        if key.upper() in cls.__members__:
            return cls[key.upper()]
        found = _ASSET_TYPE_LABELS.get(key.lower())
        if found is None:
            raise ValueError(f"Unknown asset type: {value!r}")
        return found

    @property
    def has_market_price(self) -> bool:
        return self not in (AssetType.FIXED_INCOME,)


_ASSET_TYPE_LABELS = {
    "ação": AssetType.STOCK,
    "acao": AssetType.STOCK,
    "fii": AssetType.REIT,
    "etf": AssetType.ETF,
    "etf internacional": AssetType.INTERNATIONAL_ETF,
    "cripto": AssetType.CRYPTO,
    "stablecoin": AssetType.STABLECOIN,
    "renda fixa": AssetType.FIXED_INCOME,
    "fixedincome": AssetType.FIXED_INCOME,
}


class ReviewSource(Enum):
    ADVISORY = "advisory"
    DETERMINISTIC = "deterministic"


# --- Catalog ---

@dataclass(frozen=True)
class Asset:
    ticker: str
    name: str
    asset_type: AssetType
    ceiling_price: Optional[float] = None
    rationale: Optional[str] = None
    expected_yield: Optional[float] = None   # percent, e.g. 8.5 = 8.5%
    rank: Optional[int] = None
    entry_price: Optional[float] = None
    target_allocation: Optional[float] = None


@dataclass(frozen=True)
class Portfolio:
    name: str
    assets: tuple[Asset, ...] = ()
    description: str = ""
    risk_level: str = ""


# --- Macro ---

@dataclass(frozen=True)
class MacroContext:
    """Best-effort macro indicators. Any field may be missing."""
    selic: Optional[float] = None
    selic_updated: Optional[str] = None
    ipca: Optional[float] = None
    ipca_period: Optional[str] = None
    igpm: Optional[float] = None
    igpm_period: Optional[str] = None
    usd_brl: Optional[float] = None
    usd_brl_change_pct: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in (self.selic, self.ipca, self.igpm, self.usd_brl))


# --- Review ---

@dataclass(frozen=True)
class ReviewRequest:
    """Everything a review strategy needs about one asset."""
    asset: Asset
    portfolio_name: str
    current_price: Optional[float]
    macro: Optional[MacroContext] = None


@dataclass(frozen=True)
class ReviewVerdict:
    recommendation: Recommendation
    confidence_score: int
    analysis_text: str
    source: ReviewSource
    substitution_suggestion: Optional[str] = None
    key_factors: tuple[str, ...] = ()


@dataclass(frozen=True)
class AssetAnalysis:
    """One persisted review. Append-only; only ``is_active`` changes after insert."""
    portfolio_name: str
    ticker: str
    asset_name: str
    asset_type: str
    recommendation: Recommendation
    analysis_text: str
    confidence_score: int
    source: ReviewSource
    current_price: Optional[float] = None
    ceiling_price: Optional[float] = None
    substitution_suggestion: Optional[str] = None
    key_factors: tuple[str, ...] = ()
    analysis_date: Optional[datetime] = None
    next_review_date: Optional[datetime] = None
    is_active: bool = True
    id: Optional[int] = None

    @classmethod
    def from_verdict(cls, request: ReviewRequest, verdict: ReviewVerdict) -> AssetAnalysis:
        asset = request.asset
        return cls(
            portfolio_name=request.portfolio_name,
            ticker=asset.ticker,
            asset_name=asset.name,
            asset_type=asset.asset_type.value,
            recommendation=verdict.recommendation,
            analysis_text=verdict.analysis_text,
            confidence_score=verdict.confidence_score,
            source=verdict.source,
            current_price=request.current_price,
            ceiling_price=asset.ceiling_price,
            substitution_suggestion=verdict.substitution_suggestion,
            key_factors=verdict.key_factors,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["recommendation"] = self.recommendation.value
        data["source"] = self.source.value
        data["key_factors"] = list(self.key_factors)
        data["analysis_date"] = self.analysis_date.isoformat() if self.analysis_date else None
        data["next_review_date"] = self.next_review_date.isoformat() if self.next_review_date else None
        return data


@dataclass(frozen=True)
class RunStatus:
    running: bool
    last_run_time: Optional[datetime]
    last_run_status: str

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_run_status": self.last_run_status,
        }


@dataclass
class RunSummary:
    """Aggregate view of one batch, built by the Reporter."""
    total: int = 0
    by_recommendation: dict[str, int] = field(default_factory=dict)
    substitutions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
