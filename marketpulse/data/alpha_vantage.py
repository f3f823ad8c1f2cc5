"""
Alpha Vantage REST provider
Quotes, company overview, symbol search and daily history
"""

from datetime import datetime
from typing import Any, List

from ..utils import get_logger
from ..utils.errors import ErrorKind, MarketDataError
from .base import (
    Asset,
    AssetPrice,
    Bar,
    Capability,
    DataProvider,
    HistoricalSeries,
    period_start
)
from .providers import HttpProvider, to_float, to_int

logger = get_logger(__name__)


class AlphaVantageProvider(HttpProvider):
    """
    Alpha Vantage adapter
    Free tier throttles hard, signalled by a "Note"/"Information" field on a 200
    """

    base_url = "https://www.alphavantage.co"
    capabilities = frozenset({Capability.ASSET, Capability.PRICE, Capability.SEARCH, Capability.HISTORICAL})

    def __init__(self, key_manager, **kwargs):
        super().__init__(DataProvider.ALPHA_VANTAGE, key_manager, **kwargs)

    def _check_payload(self, payload: Any):
        if not isinstance(payload, dict):
            return
        note = payload.get("Note") or payload.get("Information")
        if note:
            raise MarketDataError(ErrorKind.RATE_LIMITED, note, provider=self.name)
        if "Error Message" in payload:
            raise MarketDataError(ErrorKind.VALIDATION, payload["Error Message"], provider=self.name)

    async def _query(self, function: str, symbol: str, /, **params) -> dict:
        return await self.request("/query", {"function": function, **params}, symbol=symbol)

    async def get_asset_price(self, symbol: str) -> AssetPrice:
        payload = await self._query("GLOBAL_QUOTE", symbol, symbol=symbol)
        with self._parsing("quote", symbol):
            quote = payload.get("Global Quote") or {}
            price = to_float(quote.get("05. price"))
            if price is None:
                raise self._no_data("quote", symbol)

            return AssetPrice(
                symbol=symbol,
                price=price,
                change_amount=to_float(quote.get("09. change")),
                change_percent=to_float(quote.get("10. change percent")),
                volume=to_int(quote.get("06. volume")),
                high=to_float(quote.get("03. high")),
                low=to_float(quote.get("04. low")),
                open=to_float(quote.get("02. open")),
                previous_close=to_float(quote.get("08. previous close")),
                timestamp=datetime.now(),
                source=self.name
            )

    async def get_asset(self, symbol: str) -> Asset:
        payload = await self._query("OVERVIEW", symbol, symbol=symbol)
        with self._parsing("company overview", symbol):
            if not payload.get("Symbol"):
                raise self._no_data("company overview", symbol)

            return Asset(
                symbol=symbol,
                name=payload.get("Name") or symbol,
                asset_type=(payload.get("AssetType") or "stock").lower(),
                exchange=payload.get("Exchange"),
                currency=payload.get("Currency") or "USD",
                sector=payload.get("Sector"),
                market_cap=to_float(payload.get("MarketCapitalization")),
                description=payload.get("Description"),
                country=payload.get("Country"),
                source=self.name
            )

    async def search_assets(self, query: str) -> List[Asset]:
        payload = await self._query("SYMBOL_SEARCH", query, keywords=query)
        assets = []
        with self._parsing("symbol search", query):
            for match in payload.get("bestMatches", []):
                symbol = match.get("1. symbol")
                if not symbol:
                    continue
                assets.append(Asset(
                    symbol=symbol.upper(),
                    name=match.get("2. name") or symbol,
                    asset_type=(match.get("3. type") or "stock").lower(),
                    currency=match.get("8. currency") or "USD",
                    country=match.get("4. region"),
                    source=self.name
                ))
        return assets

    async def get_historical(self, symbol: str, period: str, interval: str) -> HistoricalSeries:
        if interval != "1d":
            raise self._unsupported(f"{interval} bars", symbol)

        outputsize = "compact" if period in ("1d", "5d", "1mo", "3mo") else "full"
        payload = await self._query("TIME_SERIES_DAILY", symbol, symbol=symbol, outputsize=outputsize)

        start = period_start(period)
        bars = []
        with self._parsing("daily series", symbol):
            series = payload.get("Time Series (Daily)")
            if not series:
                raise self._no_data("daily series", symbol)

            for day, values in series.items():
                timestamp = datetime.strptime(day, "%Y-%m-%d")
                if start is not None and timestamp < start:
                    continue
                bars.append(Bar(
                    symbol=symbol,
                    timestamp=timestamp,
                    open=to_float(values.get("1. open")),
                    high=to_float(values.get("2. high")),
                    low=to_float(values.get("3. low")),
                    close=to_float(values.get("4. close")),
                    volume=to_int(values.get("5. volume")) or 0,
                    provider=self.name
                ))
        bars.sort(key=lambda b: b.timestamp)

        return HistoricalSeries(
            symbol=symbol,
            period=period,
            interval=interval,
            bars=bars,
            source=self.name
        )
