"""
High-level cache manager for market data
Key conventions and (de)serialization of assets, prices, series and search results
"""

from typing import Any, Dict, List, Optional

from ..utils import get_logger
from .base import Asset, AssetPrice, HistoricalSeries
from .cache import CacheService

logger = get_logger(__name__)


def asset_key(symbol: str) -> str:
    return f"asset:{symbol}"


def price_key(symbol: str) -> str:
    return f"price:{symbol}"


def historical_key(symbol: str, period: str, interval: str) -> str:
    return f"historical:{symbol}:{period}:{interval}"


def search_key(query: str) -> str:
    return f"search:{query.strip().lower()}"


def symbol_tag(symbol: str) -> str:
    return f"symbol:{symbol}"


class CacheManager:
    """
    Typed interface over CacheService
    Entries are tagged by kind and by symbol so either can be invalidated at once
    """

    def __init__(
        self,
        cache: CacheService,
        asset_ttl: int = 3600,
        price_ttl: int = 30,
        historical_ttl: int = 3600,
        search_ttl: int = 300
    ):
        self.cache = cache
        self.asset_ttl = asset_ttl
        self.price_ttl = price_ttl
        self.historical_ttl = historical_ttl
        self.search_ttl = search_ttl

    @classmethod
    def from_config(cls, cache: CacheService, resolver_config) -> 'CacheManager':
        return cls(
            cache,
            asset_ttl=resolver_config.asset_ttl,
            price_ttl=resolver_config.price_ttl,
            historical_ttl=resolver_config.historical_ttl,
            search_ttl=resolver_config.search_ttl
        )

    async def _load(self, key: str, factory) -> Optional[Any]:
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            return factory(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to deserialize cache entry {key}: {e}")
            await self.cache.delete(key)
            return None

    async def get_asset(self, symbol: str) -> Optional[Asset]:
        return await self._load(asset_key(symbol), Asset.from_dict)

    async def put_asset(self, asset: Asset, ttl: Optional[int] = None):
        await self.cache.set(
            asset_key(asset.symbol),
            asset.to_dict(),
            ttl or self.asset_ttl,
            tags={"asset", symbol_tag(asset.symbol)}
        )

    async def get_price(self, symbol: str) -> Optional[AssetPrice]:
        return await self._load(price_key(symbol), AssetPrice.from_dict)

    async def put_price(self, price: AssetPrice, ttl: Optional[int] = None):
        await self.cache.set(
            price_key(price.symbol),
            price.to_dict(),
            ttl or self.price_ttl,
            tags={"price", symbol_tag(price.symbol)}
        )

    async def get_historical(self, symbol: str, period: str, interval: str) -> Optional[HistoricalSeries]:
        return await self._load(historical_key(symbol, period, interval), HistoricalSeries.from_dict)

    async def put_historical(self, series: HistoricalSeries, ttl: Optional[int] = None):
        await self.cache.set(
            historical_key(series.symbol, series.period, series.interval),
            series.to_dict(),
            ttl or self.historical_ttl,
            tags={"historical", symbol_tag(series.symbol)}
        )

    async def get_search(self, query: str) -> Optional[List[Asset]]:
        return await self._load(search_key(query), lambda rows: [Asset.from_dict(r) for r in rows])

    async def put_search(self, query: str, assets: List[Asset], ttl: Optional[int] = None):
        await self.cache.set(
            search_key(query),
            [a.to_dict() for a in assets],
            ttl or self.search_ttl,
            tags={"search"}
        )

    async def invalidate_symbol(self, symbol: str) -> int:
        return await self.cache.invalidate_tag(symbol_tag(symbol))

    async def clear(self, pattern: Optional[str] = None) -> int:
        if pattern:
            return await self.cache.delete_pattern(pattern)
        await self.cache.flush()
        return 0

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()
