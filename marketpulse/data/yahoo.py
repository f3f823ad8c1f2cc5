"""
Yahoo Finance provider for market data
Keyless last-resort source backed by yfinance
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, List

import yfinance as yf

from ..utils import get_logger
from ..utils.errors import wrap_error
from .base import (
    Asset,
    AssetPrice,
    Bar,
    Capability,
    DataProvider,
    HistoricalSeries,
    MarketDataProvider
)

logger = get_logger(__name__)

QUOTE_TYPES = {
    "EQUITY": "stock",
    "ETF": "etf",
    "MUTUALFUND": "fund",
    "INDEX": "index",
    "CRYPTOCURRENCY": "crypto",
    "CURRENCY": "forex",
    "FUTURE": "future",
}


def _asset_type(quote_type: str) -> str:
    return QUOTE_TYPES.get((quote_type or "").upper(), "stock")


class YahooFinanceProvider(MarketDataProvider):
    """
    Yahoo Finance adapter using the yfinance library
    yfinance is synchronous, so calls run on a thread pool
    """

    capabilities = frozenset({Capability.ASSET, Capability.PRICE, Capability.SEARCH, Capability.HISTORICAL})

    def __init__(self, priority: int = 100, circuit_breaker=None, max_workers: int = 5):
        super().__init__(DataProvider.YAHOO, priority, circuit_breaker)
        self.executor = ThreadPoolExecutor(max_workers=max_workers)

    async def _run(self, func: Callable[[], Any], symbol: str) -> Any:
        loop = asyncio.get_running_loop()

        async def call():
            try:
                return await loop.run_in_executor(self.executor, func)
            except Exception as e:
                raise wrap_error(e, provider=self.name, symbol=symbol) from e

        return await self._guarded(call)

    async def get_asset_price(self, symbol: str) -> AssetPrice:
        info = await self._run(lambda: yf.Ticker(symbol).info, symbol)
        with self._parsing("quote", symbol):
            info = info or {}
            price = info.get("regularMarketPrice") or info.get("currentPrice")
            if price is None:
                raise self._no_data("quote", symbol)

            return AssetPrice(
                symbol=symbol,
                price=float(price),
                change_amount=info.get("regularMarketChange"),
                change_percent=info.get("regularMarketChangePercent"),
                volume=info.get("regularMarketVolume"),
                high=info.get("regularMarketDayHigh") or info.get("dayHigh"),
                low=info.get("regularMarketDayLow") or info.get("dayLow"),
                open=info.get("regularMarketOpen") or info.get("open"),
                previous_close=info.get("regularMarketPreviousClose") or info.get("previousClose"),
                timestamp=datetime.now(),
                source=self.name
            )

    async def get_asset(self, symbol: str) -> Asset:
        info = await self._run(lambda: yf.Ticker(symbol).info, symbol)
        with self._parsing("asset details", symbol):
            info = info or {}
            name = info.get("longName") or info.get("shortName")
            if not name:
                raise self._no_data("asset details", symbol)

            return Asset(
                symbol=symbol,
                name=name,
                asset_type=_asset_type(info.get("quoteType")),
                exchange=info.get("exchange"),
                currency=info.get("currency") or "USD",
                sector=info.get("sector"),
                market_cap=info.get("marketCap"),
                description=info.get("longBusinessSummary"),
                country=info.get("country"),
                source=self.name
            )

    async def search_assets(self, query: str) -> List[Asset]:
        quotes = await self._run(lambda: yf.Search(query, max_results=10).quotes, query)
        assets = []
        with self._parsing("symbol search", query):
            for item in quotes or []:
                symbol = item.get("symbol")
                if not symbol:
                    continue
                assets.append(Asset(
                    symbol=symbol.upper(),
                    name=item.get("longname") or item.get("shortname") or symbol,
                    asset_type=_asset_type(item.get("quoteType")),
                    exchange=item.get("exchange"),
                    source=self.name
                ))
        return assets

    async def get_historical(self, symbol: str, period: str, interval: str) -> HistoricalSeries:
        df = await self._run(
            lambda: yf.Ticker(symbol).history(period=period, interval=interval),
            symbol
        )
        if df is None or df.empty:
            raise self._no_data("historical data", symbol)

        bars = []
        with self._parsing("historical data", symbol):
            for idx, row in df.iterrows():
                bars.append(Bar(
                    symbol=symbol,
                    timestamp=idx.to_pydatetime().replace(tzinfo=None),
                    open=float(row['Open']),
                    high=float(row['High']),
                    low=float(row['Low']),
                    close=float(row['Close']),
                    volume=int(row['Volume']),
                    provider=self.name
                ))

        return HistoricalSeries(
            symbol=symbol,
            period=period,
            interval=interval,
            bars=bars,
            source=self.name
        )

    async def close(self):
        self.executor.shutdown(wait=False)
