"""
Finnhub REST provider
Quotes, company profile and symbol lookup; 60 calls/minute on the free tier
"""

from datetime import datetime
from typing import Any, Dict, List, Tuple

from ..utils import get_logger
from ..utils.errors import ErrorKind, MarketDataError
from .base import Asset, AssetPrice, Capability, DataProvider
from .providers import HttpProvider, to_float

logger = get_logger(__name__)


class FinnhubProvider(HttpProvider):
    """
    Finnhub adapter
    Authenticates with the X-Finnhub-Token header
    """

    base_url = "https://finnhub.io/api/v1"
    capabilities = frozenset({Capability.ASSET, Capability.PRICE, Capability.SEARCH})

    def __init__(self, key_manager, **kwargs):
        super().__init__(DataProvider.FINNHUB, key_manager, **kwargs)

    def _auth(self, key: str) -> Tuple[Dict[str, str], Dict[str, str]]:
        return {}, {"X-Finnhub-Token": key}

    def _check_payload(self, payload: Any):
        if not isinstance(payload, dict) or "error" not in payload:
            return
        message = str(payload["error"])
        kind = ErrorKind.RATE_LIMITED if "limit" in message.lower() else ErrorKind.VALIDATION
        raise MarketDataError(kind, message, provider=self.name)

    async def get_asset_price(self, symbol: str) -> AssetPrice:
        payload = await self.request("/quote", {"symbol": symbol}, symbol=symbol)
        with self._parsing("quote", symbol):
            price = to_float(payload.get("c"))
            # Unknown symbols come back as all zeros
            if not price and not to_float(payload.get("pc")):
                raise self._no_data("quote", symbol)

            return AssetPrice(
                symbol=symbol,
                price=price,
                change_amount=to_float(payload.get("d")),
                change_percent=to_float(payload.get("dp")),
                high=to_float(payload.get("h")),
                low=to_float(payload.get("l")),
                open=to_float(payload.get("o")),
                previous_close=to_float(payload.get("pc")),
                timestamp=datetime.now(),
                source=self.name
            )

    async def get_asset(self, symbol: str) -> Asset:
        payload = await self.request("/stock/profile2", {"symbol": symbol}, symbol=symbol)
        with self._parsing("company profile", symbol):
            if not payload or not payload.get("name"):
                raise self._no_data("company profile", symbol)

            market_cap = to_float(payload.get("marketCapitalization"))
            return Asset(
                symbol=symbol,
                name=payload["name"],
                exchange=payload.get("exchange"),
                currency=payload.get("currency") or "USD",
                sector=payload.get("finnhubIndustry"),
                # Reported in millions
                market_cap=market_cap * 1_000_000 if market_cap is not None else None,
                country=payload.get("country"),
                source=self.name
            )

    async def search_assets(self, query: str) -> List[Asset]:
        payload = await self.request("/search", {"q": query}, symbol=query)
        assets = []
        with self._parsing("symbol search", query):
            for item in payload.get("result", []):
                symbol = item.get("symbol") or item.get("displaySymbol")
                if not symbol:
                    continue
                assets.append(Asset(
                    symbol=symbol.upper(),
                    name=item.get("description") or symbol,
                    asset_type=(item.get("type") or "stock").lower(),
                    source=self.name
                ))
        return assets
