"""Asset catalog — the static list of recommended portfolios and their assets.

The file is re-read on every call so edits are picked up by the next review
cycle without a restart.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import structlog

from src.shell.contract import Asset, AssetType, Portfolio

log = structlog.get_logger()


class CatalogError(Exception):
    """The catalog could not be read or is malformed."""


class AssetCatalog:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def list_portfolios(self) -> list[Portfolio]:
        try:
            with open(self._path, "rb") as f:
                raw = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise CatalogError(f"cannot read catalog {self._path}: {e}") from e

        portfolios = []
        for entry in raw.get("portfolios", []):
            try:
                portfolios.append(_parse_portfolio(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise CatalogError(f"invalid portfolio entry {entry.get('name', '?')!r}: {e}") from e

        log.debug("catalog.loaded", path=str(self._path), portfolios=len(portfolios))
        return portfolios

    def get_portfolio(self, name: str) -> Portfolio | None:
        for portfolio in self.list_portfolios():
            if portfolio.name == name:
                return portfolio
        return None

    def find_asset(self, ticker: str, portfolio_name: str) -> Asset | None:
        """Look up a ticker (case-insensitive) inside one portfolio."""
        portfolio = self.get_portfolio(portfolio_name)
        if portfolio is None:
            return None
        for asset in portfolio.assets:
            if asset.ticker.upper() == ticker.upper():
                return asset
        return None


def _parse_portfolio(entry: dict) -> Portfolio:
    assets = tuple(_parse_asset(a) for a in entry.get("assets", []))
    return Portfolio(
        name=entry["name"],
        assets=assets,
        description=entry.get("description", ""),
        risk_level=entry.get("risk_level", ""),
    )


def _parse_asset(entry: dict) -> Asset:
    return Asset(
        ticker=str(entry["ticker"]),
        name=entry.get("name", entry["ticker"]),
        asset_type=AssetType.parse(entry["asset_type"]),
        ceiling_price=_optional_float(entry.get("ceiling_price")),
        rationale=entry.get("rationale"),
        expected_yield=_optional_float(entry.get("expected_yield")),
        rank=entry.get("rank"),
        entry_price=_optional_float(entry.get("entry_price")),
        target_allocation=_optional_float(entry.get("target_allocation")),
    )


def _optional_float(value) -> float | None:
    return float(value) if value is not None else None
