"""Unit tests for the SQLite asset store."""

from datetime import datetime, timedelta

import pytest

from marketpulse.data.base import Asset, AssetPrice, Bar, HistoricalSeries
from marketpulse.persistence.store import AssetStore


@pytest.fixture
def store(tmp_path):
    store = AssetStore(str(tmp_path / "nested" / "test.db"))
    yield store
    store.close()


class TestAssetStore:
    """Test asset persistence."""

    @pytest.mark.asyncio
    async def test_upsert_and_find(self, store):
        await store.upsert(Asset(symbol="AAPL", name="Apple Inc.", sector="Technology", source="finnhub"))

        asset = await store.find_by_symbol("AAPL")
        assert asset.name == "Apple Inc."
        assert asset.sector == "Technology"
        assert await store.find_by_symbol("MSFT") is None

    @pytest.mark.asyncio
    async def test_upsert_keeps_known_fields(self, store):
        """A sparser record does not erase fields learned earlier."""
        await store.upsert(Asset(symbol="AAPL", name="Apple Inc.", sector="Technology"))
        await store.upsert(Asset(symbol="AAPL", name="Apple", source="yahoo"))

        asset = await store.find_by_symbol("AAPL")
        assert asset.name == "Apple"
        assert asset.sector == "Technology"
        assert asset.source == "yahoo"

    @pytest.mark.asyncio
    async def test_find_by_symbols(self, store):
        for symbol in ("MSFT", "AAPL", "TSLA"):
            await store.upsert(Asset(symbol=symbol, name=symbol))

        found = await store.find_by_symbols(["TSLA", "AAPL", "NVDA"])
        assert [a.symbol for a in found] == ["AAPL", "TSLA"]
        assert await store.find_by_symbols([]) == []

    @pytest.mark.asyncio
    async def test_search_ranks_exact_then_prefix(self, store):
        await store.upsert(Asset(symbol="APLE", name="Apple Hospitality"))
        await store.upsert(Asset(symbol="AAPL", name="Apple Inc."))
        await store.upsert(Asset(symbol="APP", name="AppLovin"))
        await store.upsert(Asset(symbol="MSFT", name="Microsoft"))

        results = await store.search_assets("app")
        assert [a.symbol for a in results] == ["APP", "AAPL", "APLE"]

        page_two = await store.search_assets("app", page=2, limit=2)
        assert [a.symbol for a in page_two] == ["APLE"]


class TestPriceHistory:
    """Test quotes and historical series."""

    @pytest.mark.asyncio
    async def test_latest_price(self, store):
        now = datetime.now()
        await store.create_price(AssetPrice(symbol="AAPL", price=180.0, timestamp=now - timedelta(hours=1)))
        await store.create_price(AssetPrice(symbol="AAPL", price=190.0, high=191.0, timestamp=now, source="finnhub"))

        latest = await store.get_latest_price("AAPL")
        assert latest.price == 190.0
        assert latest.high == 191.0
        assert latest.source == "finnhub"
        assert latest.timestamp == now
        assert await store.get_latest_price("MSFT") is None

    @pytest.mark.asyncio
    async def test_historical_replaced_per_key(self, store):
        bar = Bar("AAPL", datetime(2024, 1, 2), 1.0, 2.0, 0.5, 1.5, 100)
        await store.save_historical(HistoricalSeries("AAPL", "5d", "1d", bars=[bar]))
        await store.save_historical(HistoricalSeries("AAPL", "5d", "1d", bars=[bar, bar], source="yahoo"))

        series = await store.get_historical("AAPL", "5d", "1d")
        assert len(series.bars) == 2
        assert series.source == "yahoo"
        assert await store.get_historical("AAPL", "1y", "1d") is None
