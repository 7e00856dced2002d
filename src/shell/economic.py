"""Economic context — Brazilian macro indicators from public APIs.

SELIC, IPCA and IGP-M come from the Central Bank SGS series; USD/BRL from
AwesomeAPI. Each indicator is fetched independently so one outage only
blanks its own field.
"""

from __future__ import annotations

from datetime import datetime

import httpx
import structlog

from src.shell.config import EconomicConfig
from src.shell.contract import MacroContext

log = structlog.get_logger()

SELIC_CODE = "432"
IPCA_CODE = "433"
IGPM_CODE = "189"


class EconomicDataClient:
    def __init__(
        self,
        config: EconomicConfig | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or EconomicConfig()
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(self) -> MacroContext:
        """Return whatever indicators are reachable right now."""
        selic, selic_updated = await self._latest_series(SELIC_CODE, "selic")
        ipca, ipca_period = await self._latest_series(IPCA_CODE, "ipca")
        igpm, igpm_period = await self._latest_series(IGPM_CODE, "igpm")
        usd_brl, usd_change = await self._usd_brl()

        context = MacroContext(
            selic=selic, selic_updated=selic_updated,
            ipca=ipca, ipca_period=ipca_period,
            igpm=igpm, igpm_period=igpm_period,
            usd_brl=usd_brl, usd_brl_change_pct=usd_change,
        )
        if context.is_empty:
            log.warning("economic.unavailable")
        else:
            log.info("economic.fetched", selic=selic, ipca=ipca, igpm=igpm, usd_brl=usd_brl)
        return context

    async def _latest_series(self, code: str, name: str) -> tuple[float | None, str | None]:
        url = self._config.bcb_base_url.format(code=code, count=1)
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            data = resp.json()
            if not isinstance(data, list) or not data:
                log.warning("economic.series_empty", series=name)
                return None, None
            latest = data[-1]
            return float(latest["valor"]), _format_period(latest.get("data", ""))
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("economic.series_failed", series=name, error=str(e))
            return None, None

    async def _usd_brl(self) -> tuple[float | None, float | None]:
        try:
            resp = await self._client.get(self._config.usd_brl_url)
            resp.raise_for_status()
            quote = resp.json()["USDBRL"]
            return float(quote["bid"]), float(quote["pctChange"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning("economic.usd_brl_failed", error=str(e))
            return None, None


def _format_period(value: str) -> str:
    """BCB dates are dd/MM/yyyy; report them as yyyy-MM."""
    try:
        return datetime.strptime(value, "%d/%m/%Y").strftime("%Y-%m")
    except ValueError:
        return value
