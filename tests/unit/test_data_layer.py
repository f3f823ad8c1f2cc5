"""Unit tests for the data layer: records, normalization and the memory cache tier."""

import asyncio
from datetime import datetime

import pytest

from marketpulse.data.base import (
    Asset,
    AssetPrice,
    Bar,
    HistoricalSeries,
    normalize_interval,
    normalize_period,
    normalize_symbol,
    period_start
)
from marketpulse.data.cache import CacheService
from marketpulse.data.cache_manager import CacheManager, historical_key, search_key


class TestNormalization:
    """Test input normalization helpers."""

    def test_symbol(self):
        assert normalize_symbol("  aapl ") == "AAPL"
        assert normalize_symbol(None) == ""

    def test_period_and_interval_fall_back(self):
        assert normalize_period("6MO") == "6mo"
        assert normalize_period("forever") == "1y"
        assert normalize_interval("1WK") == "1wk"
        assert normalize_interval("") == "1d"

    def test_period_start(self):
        now = datetime(2024, 6, 15)
        assert period_start("ytd", now) == datetime(2024, 1, 1)
        assert period_start("5d", now) == datetime(2024, 6, 10)
        assert period_start("max", now) is None


class TestRecords:
    """Test record serialization."""

    def test_asset_from_dict_parses_timestamp(self):
        asset = Asset(symbol="AAPL", name="Apple Inc.", sector="Technology")
        restored = Asset.from_dict(asset.to_dict())
        assert restored == asset
        assert isinstance(restored.last_updated, datetime)

    def test_price_serializes_timestamp(self):
        price = AssetPrice(symbol="MSFT", price=410.5, timestamp=datetime(2024, 1, 2, 15, 30))
        assert price.to_dict()['timestamp'] == "2024-01-02T15:30:00"

    def test_series_keeps_bars(self):
        series = HistoricalSeries(
            symbol="TSLA",
            period="5d",
            interval="1d",
            bars=[Bar("TSLA", datetime(2024, 1, 2), 1.0, 2.0, 0.5, 1.5, 100)]
        )
        restored = HistoricalSeries.from_dict(series.to_dict())
        assert restored.bars[0].close == 1.5
        assert restored.bars[0].timestamp == datetime(2024, 1, 2)


class TestCacheService:
    """Test the in-process tier on a manual clock."""

    @pytest.mark.asyncio
    async def test_set_get_and_expire(self, clock):
        cache = CacheService(clock=clock)
        await cache.set("price:AAPL", {'price': 1}, ttl=30)

        assert await cache.get("price:AAPL") == {'price': 1}
        assert await cache.exists("price:AAPL")

        clock.advance(30)
        assert await cache.get("price:AAPL") is None
        assert not await cache.exists("price:AAPL")

        stats = cache.get_stats()
        assert stats['hits'] == 1
        assert stats['misses'] == 1
        assert stats['redis_enabled'] is False

    @pytest.mark.asyncio
    async def test_rejects_non_positive_ttl(self, clock):
        cache = CacheService(clock=clock)
        with pytest.raises(ValueError):
            await cache.set("k", 1, ttl=0)

    @pytest.mark.asyncio
    async def test_evicts_oldest_entry(self, clock):
        cache = CacheService(max_entries=2, clock=clock)
        await cache.set("a", 1)
        clock.advance(1)
        await cache.set("b", 2)
        clock.advance(1)
        await cache.set("c", 3)

        assert await cache.get("a") is None
        assert await cache.get("b") == 2
        assert await cache.get("c") == 3
        assert cache.get_stats()['evictions'] == 1

    @pytest.mark.asyncio
    async def test_rewrite_refreshes_age(self, clock):
        """Rewriting a key moves it to the young end."""
        cache = CacheService(max_entries=2, clock=clock)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 10)
        await cache.set("c", 3)

        assert await cache.get("a") == 10
        assert await cache.get("b") is None

    @pytest.mark.asyncio
    async def test_delete_pattern(self, clock):
        cache = CacheService(clock=clock)
        for key in ("price:AAPL", "price:MSFT", "asset:AAPL"):
            await cache.set(key, 1)

        assert await cache.delete_pattern("price:*") == 2
        assert await cache.get("asset:AAPL") == 1
        assert await cache.delete("asset:AAPL") is True
        assert await cache.delete("asset:AAPL") is False

    @pytest.mark.asyncio
    async def test_invalidate_tag(self, clock):
        cache = CacheService(clock=clock)
        await cache.set("price:AAPL", 1, tags={"symbol:AAPL"})
        await cache.set("asset:AAPL", 2, tags={"symbol:AAPL"})
        await cache.set("price:MSFT", 3, tags={"symbol:MSFT"})

        assert await cache.invalidate_tag("symbol:AAPL") == 2
        assert await cache.get("price:MSFT") == 3

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, clock):
        cache = CacheService(clock=clock)
        await cache.set("short", 1, ttl=5)
        await cache.set("long", 2, ttl=500)
        clock.advance(10)

        assert cache.cleanup_expired() == 1
        assert cache.get_stats()['memory_entries'] == 1

    @pytest.mark.asyncio
    async def test_health_without_redis_is_degraded(self, clock):
        cache = CacheService(clock=clock)
        health = await cache.health_check()
        assert health['status'] == "degraded"
        assert health['redis']['status'] == "disabled"

    @pytest.mark.asyncio
    async def test_sweeper_start_and_close(self, clock):
        cache = CacheService(clock=clock, sweep_interval=3600)
        cache.start()
        await asyncio.sleep(0)
        await cache.close()
        assert cache._sweeper is None


class TestCacheManager:
    """Test typed cache access."""

    @pytest.mark.asyncio
    async def test_price_round_trip_and_ttl(self, clock):
        manager = CacheManager(CacheService(clock=clock), price_ttl=30)
        price = AssetPrice(symbol="AAPL", price=190.0, source="finnhub")
        await manager.put_price(price)

        cached = await manager.get_price("AAPL")
        assert cached.price == 190.0
        assert cached.source == "finnhub"

        clock.advance(31)
        assert await manager.get_price("AAPL") is None

    @pytest.mark.asyncio
    async def test_invalidate_symbol_spans_kinds(self, clock):
        manager = CacheManager(CacheService(clock=clock))
        await manager.put_asset(Asset(symbol="AAPL", name="Apple"))
        await manager.put_price(AssetPrice(symbol="AAPL", price=1.0))
        await manager.put_price(AssetPrice(symbol="MSFT", price=2.0))

        assert await manager.invalidate_symbol("AAPL") == 2
        assert await manager.get_asset("AAPL") is None
        assert await manager.get_price("MSFT") is not None

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_dropped(self, clock):
        cache = CacheService(clock=clock)
        manager = CacheManager(cache)
        await cache.set("price:AAPL", {'unexpected': True})

        assert await manager.get_price("AAPL") is None
        assert not await cache.exists("price:AAPL")

    @pytest.mark.asyncio
    async def test_search_results(self, clock):
        manager = CacheManager(CacheService(clock=clock))
        await manager.put_search(" Apple ", [Asset(symbol="AAPL", name="Apple")])

        results = await manager.get_search("apple")
        assert [a.symbol for a in results] == ["AAPL"]

    @pytest.mark.asyncio
    async def test_clear(self, clock):
        manager = CacheManager(CacheService(clock=clock))
        await manager.put_price(AssetPrice(symbol="AAPL", price=1.0))
        await manager.put_asset(Asset(symbol="AAPL", name="Apple"))

        assert await manager.clear("price:*") == 1
        await manager.clear()
        assert manager.get_cache_stats()['memory_entries'] == 0

    def test_key_format(self):
        assert historical_key("AAPL", "1y", "1d") == "historical:AAPL:1y:1d"
        assert search_key("  Tesla ") == "search:tesla"
