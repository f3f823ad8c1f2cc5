"""
Twelve Data REST provider
"""

from datetime import datetime
from typing import Any, List

from ..utils import get_logger
from ..utils.errors import ErrorKind, MarketDataError, RATE_LIMIT_STATUS_CODES
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

INTERVAL_MAP = {
    "1m": "1min",
    "5m": "5min",
    "15m": "15min",
    "30m": "30min",
    "60m": "1h",
    "1h": "1h",
    "1d": "1day",
    "1wk": "1week",
    "1mo": "1month",
}


def _parse_timestamp(value: str) -> datetime:
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognized timestamp: {value}")


class TwelveDataProvider(HttpProvider):
    """
    Twelve Data adapter
    Errors arrive as {"status": "error", "code": ..., "message": ...} bodies
    """

    base_url = "https://api.twelvedata.com"
    capabilities = frozenset({Capability.ASSET, Capability.PRICE, Capability.SEARCH, Capability.HISTORICAL})

    def __init__(self, key_manager, **kwargs):
        super().__init__(DataProvider.TWELVE_DATA, key_manager, **kwargs)

    def _check_payload(self, payload: Any):
        if not isinstance(payload, dict) or payload.get("status") != "error":
            return
        code = payload.get("code")
        message = payload.get("message") or "Unknown Twelve Data error"
        if code in RATE_LIMIT_STATUS_CODES:
            kind = ErrorKind.RATE_LIMITED
        elif isinstance(code, int) and code >= 500:
            kind = ErrorKind.TRANSIENT
        else:
            kind = ErrorKind.VALIDATION
        raise MarketDataError(kind, message, provider=self.name, status_code=code)

    async def get_asset_price(self, symbol: str) -> AssetPrice:
        payload = await self.request("/quote", {"symbol": symbol}, symbol=symbol)
        with self._parsing("quote", symbol):
            price = to_float(payload.get("close"))
            if price is None:
                raise self._no_data("quote", symbol)

            return AssetPrice(
                symbol=symbol,
                price=price,
                change_amount=to_float(payload.get("change")),
                change_percent=to_float(payload.get("percent_change")),
                volume=to_int(payload.get("volume")),
                high=to_float(payload.get("high")),
                low=to_float(payload.get("low")),
                open=to_float(payload.get("open")),
                previous_close=to_float(payload.get("previous_close")),
                timestamp=datetime.now(),
                source=self.name
            )

    async def get_asset(self, symbol: str) -> Asset:
        payload = await self.request("/quote", {"symbol": symbol}, symbol=symbol)
        with self._parsing("asset details", symbol):
            if not payload.get("name"):
                raise self._no_data("asset details", symbol)

            return Asset(
                symbol=symbol,
                name=payload["name"],
                exchange=payload.get("exchange"),
                currency=payload.get("currency") or "USD",
                source=self.name
            )

    async def search_assets(self, query: str) -> List[Asset]:
        payload = await self.request("/symbol_search", {"symbol": query}, symbol=query)
        assets = []
        with self._parsing("symbol search", query):
            for item in payload.get("data", []):
                symbol = item.get("symbol")
                if not symbol:
                    continue
                assets.append(Asset(
                    symbol=symbol.upper(),
                    name=item.get("instrument_name") or symbol,
                    asset_type=(item.get("instrument_type") or "stock").lower(),
                    exchange=item.get("exchange"),
                    currency=item.get("currency") or "USD",
                    country=item.get("country"),
                    source=self.name
                ))
        return assets

    async def get_historical(self, symbol: str, period: str, interval: str) -> HistoricalSeries:
        td_interval = INTERVAL_MAP.get(interval)
        if td_interval is None:
            raise self._unsupported(f"{interval} bars", symbol)

        params = {"symbol": symbol, "interval": td_interval, "outputsize": 5000}
        start = period_start(period)
        if start is not None:
            params["start_date"] = start.strftime("%Y-%m-%d")

        payload = await self.request("/time_series", params, symbol=symbol)
        bars = []
        with self._parsing("time series", symbol):
            values = payload.get("values")
            if not values:
                raise self._no_data("time series", symbol)

            for row in values:
                bars.append(Bar(
                    symbol=symbol,
                    timestamp=_parse_timestamp(row["datetime"]),
                    open=to_float(row.get("open")),
                    high=to_float(row.get("high")),
                    low=to_float(row.get("low")),
                    close=to_float(row.get("close")),
                    volume=to_int(row.get("volume")) or 0,
                    provider=self.name
                ))
            meta = payload.get("meta") or {}
            currency = meta.get("currency")
            exchange = meta.get("exchange")
        bars.sort(key=lambda b: b.timestamp)

        return HistoricalSeries(
            symbol=symbol,
            period=period,
            interval=interval,
            bars=bars,
            currency=currency,
            exchange=exchange,
            source=self.name
        )
