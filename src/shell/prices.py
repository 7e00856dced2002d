"""Price oracle — best-effort BRL quotes for catalog assets.

B3 listings (stocks, FIIs, ETFs) come from the Google Finance quote page with
Yahoo Finance as fallback; crypto comes from CoinGecko. Every failure maps to
``None``: callers treat a missing price as "unavailable", never as an error.
"""

from __future__ import annotations

import re
import time

import httpx
import structlog

from src.shell.contract import AssetType

log = structlog.get_logger()

GOOGLE_FINANCE_URL = "https://www.google.com/finance/quote/{ticker}:BVMF"
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{ticker}"
COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

_LAST_PRICE_RE = re.compile(r'data-last-price="([0-9.]+)"')

# Symbol -> CoinGecko id
CRYPTO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "LINK": "chainlink",
    "MATIC": "matic-network",
    "USDC": "usd-coin",
    "USDT": "tether",
    "BNB": "binancecoin",
}

B3_TYPES = (AssetType.STOCK, AssetType.REIT, AssetType.ETF)
CRYPTO_TYPES = (AssetType.CRYPTO, AssetType.STABLECOIN)


class PriceOracle:
    """Fetches current prices with a short in-memory TTL cache."""

    def __init__(
        self,
        timeout: float = 10.0,
        cache_ttl_seconds: int = 300,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": USER_AGENT}, follow_redirects=True,
        )
        self._ttl = cache_ttl_seconds
        self._cache: dict[str, tuple[float, float]] = {}  # ticker -> (price, fetched_at)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_price(self, ticker: str, asset_type: AssetType) -> float | None:
        cached = self._cached(ticker)
        if cached is not None:
            return cached

        if asset_type in B3_TYPES:
            price = await self._fetch_google(ticker)
            if price is None:
                price = await self._fetch_yahoo(ticker)
        elif asset_type in CRYPTO_TYPES:
            price = await self._fetch_crypto(ticker)
        else:
            # International ETFs and fixed income have no quote source
            return None

        if price is not None:
            self._cache[ticker] = (price, time.monotonic())
        return price

    def _cached(self, ticker: str) -> float | None:
        entry = self._cache.get(ticker)
        if entry is None:
            return None
        price, fetched_at = entry
        if time.monotonic() - fetched_at > self._ttl:
            del self._cache[ticker]
            return None
        return price

    async def _fetch_google(self, ticker: str) -> float | None:
        clean = ticker.replace(".SA", "")
        try:
            resp = await self._client.get(GOOGLE_FINANCE_URL.format(ticker=clean))
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.debug("price.google_failed", ticker=clean, error=str(e))
            return None

        match = _LAST_PRICE_RE.search(resp.text)
        if not match:
            log.warning("price.google_not_found", ticker=clean)
            return None
        try:
            price = float(match.group(1))
        except ValueError:
            log.warning("price.google_malformed", ticker=clean, value=match.group(1))
            return None
        log.info("price.fetched", ticker=clean, source="google", price=price)
        return price

    async def _fetch_yahoo(self, ticker: str) -> float | None:
        yahoo_ticker = ticker if ticker.endswith(".SA") else f"{ticker}.SA"
        try:
            resp = await self._client.get(
                YAHOO_CHART_URL.format(ticker=yahoo_ticker),
                params={"interval": "1d", "range": "1d"},
            )
            resp.raise_for_status()
            results = resp.json()["chart"]["result"] or []
            price = results[0]["meta"].get("regularMarketPrice") if results else None
            price = float(price) if price is not None else None
        except httpx.HTTPError as e:
            log.debug("price.yahoo_failed", ticker=yahoo_ticker, error=str(e))
            return None
        except (ValueError, KeyError, TypeError, AttributeError, IndexError) as e:
            log.warning("price.yahoo_malformed", ticker=yahoo_ticker, error=str(e))
            return None

        if price is None:
            log.warning("price.yahoo_not_found", ticker=yahoo_ticker)
            return None
        log.info("price.fetched", ticker=ticker, source="yahoo", price=price)
        return price

    async def _fetch_crypto(self, symbol: str) -> float | None:
        coin_id = CRYPTO_IDS.get(symbol.upper())
        if coin_id is None:
            log.warning("price.crypto_unmapped", symbol=symbol)
            return None
        try:
            resp = await self._client.get(
                COINGECKO_URL, params={"ids": coin_id, "vs_currencies": "brl"},
            )
            resp.raise_for_status()
            price = (resp.json().get(coin_id) or {}).get("brl")
            price = float(price) if price is not None else None
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            log.warning("price.crypto_failed", symbol=symbol, error=str(e))
            return None

        if price is None:
            log.warning("price.crypto_not_found", symbol=symbol)
            return None
        log.debug("price.fetched", ticker=symbol, source="coingecko", price=price)
        return price
