"""Asset Store - Durable storage for assets, prices and historical series.

SQLite-backed. Every public method is a coroutine; the blocking sqlite3
work runs on a single-worker executor so writes stay serialized.
"""

import asyncio
import json
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..data.base import Asset, AssetPrice, HistoricalSeries
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AssetStore:
    """Persist the latest known market data so stale values survive provider outages."""

    def __init__(self, db_path: str = "data/marketpulse.db"):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._init_database()
        logger.info(f"Asset store ready at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Create tables and indexes."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS assets (
                    symbol TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    asset_type TEXT NOT NULL,
                    exchange TEXT,
                    currency TEXT NOT NULL,
                    sector TEXT,
                    market_cap REAL,
                    description TEXT,
                    country TEXT,
                    source TEXT,
                    created_at DATETIME NOT NULL,
                    last_updated DATETIME NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS market_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    price REAL NOT NULL,
                    change_amount REAL,
                    change_percent REAL,
                    volume INTEGER,
                    high_24h REAL,
                    low_24h REAL,
                    open_price REAL,
                    previous_close REAL,
                    data_source TEXT,
                    timestamp DATETIME NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS historical_data (
                    symbol TEXT NOT NULL,
                    period TEXT NOT NULL,
                    interval TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    data_source TEXT,
                    timestamp DATETIME NOT NULL,
                    PRIMARY KEY (symbol, period, interval)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_market_data_symbol_ts ON market_data (symbol, timestamp)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_name ON assets (name)")
            conn.commit()
        finally:
            conn.close()

    async def _run(self, func: Callable[..., Any], *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    @staticmethod
    def _row_to_asset(row: sqlite3.Row) -> Asset:
        return Asset(
            symbol=row["symbol"],
            name=row["name"],
            asset_type=row["asset_type"],
            exchange=row["exchange"],
            currency=row["currency"],
            sector=row["sector"],
            market_cap=row["market_cap"],
            description=row["description"],
            country=row["country"],
            last_updated=datetime.fromisoformat(row["last_updated"]),
            source=row["source"]
        )

    @staticmethod
    def _row_to_price(row: sqlite3.Row) -> AssetPrice:
        return AssetPrice(
            symbol=row["symbol"],
            price=row["price"],
            change_amount=row["change_amount"],
            change_percent=row["change_percent"],
            volume=row["volume"],
            high=row["high_24h"],
            low=row["low_24h"],
            open=row["open_price"],
            previous_close=row["previous_close"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            source=row["data_source"]
        )

    # Assets

    def _find_by_symbol(self, symbol: str) -> Optional[Asset]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM assets WHERE symbol = ?", (symbol,)).fetchone()
        finally:
            conn.close()
        return self._row_to_asset(row) if row else None

    async def find_by_symbol(self, symbol: str) -> Optional[Asset]:
        return await self._run(self._find_by_symbol, symbol)

    def _find_by_symbols(self, symbols: List[str]) -> List[Asset]:
        if not symbols:
            return []
        placeholders = ",".join("?" for _ in symbols)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM assets WHERE symbol IN ({placeholders}) ORDER BY symbol",
                tuple(symbols)
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_asset(row) for row in rows]

    async def find_by_symbols(self, symbols: List[str]) -> List[Asset]:
        return await self._run(self._find_by_symbols, symbols)

    def _upsert(self, asset: Asset) -> Asset:
        now = datetime.now().isoformat()
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO assets
                   (symbol, name, asset_type, exchange, currency, sector, market_cap,
                    description, country, source, created_at, last_updated)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(symbol) DO UPDATE SET
                    name = excluded.name,
                    asset_type = excluded.asset_type,
                    exchange = COALESCE(excluded.exchange, assets.exchange),
                    currency = excluded.currency,
                    sector = COALESCE(excluded.sector, assets.sector),
                    market_cap = COALESCE(excluded.market_cap, assets.market_cap),
                    description = COALESCE(excluded.description, assets.description),
                    country = COALESCE(excluded.country, assets.country),
                    source = excluded.source,
                    last_updated = excluded.last_updated""",
                (
                    asset.symbol, asset.name, asset.asset_type, asset.exchange, asset.currency,
                    asset.sector, asset.market_cap, asset.description, asset.country,
                    asset.source, now, asset.last_updated.isoformat()
                )
            )
            conn.commit()
        finally:
            conn.close()
        return asset

    async def upsert(self, asset: Asset) -> Asset:
        return await self._run(self._upsert, asset)

    def _search_assets(self, query: str, page: int, limit: int) -> List[Asset]:
        pattern = f"%{query}%"
        offset = max(0, page - 1) * limit
        conn = self._connect()
        try:
            rows = conn.execute(
                """SELECT * FROM assets
                   WHERE symbol LIKE ? OR name LIKE ?
                   ORDER BY
                     CASE
                       WHEN UPPER(symbol) = UPPER(?) THEN 0
                       WHEN symbol LIKE ? THEN 1
                       ELSE 2
                     END,
                     symbol
                   LIMIT ? OFFSET ?""",
                (pattern, pattern, query, f"{query}%", limit, offset)
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_asset(row) for row in rows]

    async def search_assets(self, query: str, page: int = 1, limit: int = 20) -> List[Asset]:
        """Match on symbol or name; exact symbol first, then symbol prefix."""
        return await self._run(self._search_assets, query, page, limit)

    # Prices

    def _get_latest_price(self, symbol: str) -> Optional[AssetPrice]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM market_data WHERE symbol = ? ORDER BY timestamp DESC, id DESC LIMIT 1",
                (symbol,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_price(row) if row else None

    async def get_latest_price(self, symbol: str) -> Optional[AssetPrice]:
        return await self._run(self._get_latest_price, symbol)

    def _create_price(self, price: AssetPrice) -> AssetPrice:
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO market_data
                   (symbol, price, change_amount, change_percent, volume, high_24h, low_24h,
                    open_price, previous_close, data_source, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    price.symbol, price.price, price.change_amount, price.change_percent,
                    price.volume, price.high, price.low, price.open, price.previous_close,
                    price.source, price.timestamp.isoformat()
                )
            )
            conn.commit()
        finally:
            conn.close()
        return price

    async def create_price(self, price: AssetPrice) -> AssetPrice:
        return await self._run(self._create_price, price)

    # Historical series

    def _save_historical(self, series: HistoricalSeries) -> HistoricalSeries:
        conn = self._connect()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO historical_data
                   (symbol, period, interval, payload, data_source, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    series.symbol, series.period, series.interval,
                    json.dumps(series.to_dict()), series.source, series.timestamp.isoformat()
                )
            )
            conn.commit()
        finally:
            conn.close()
        return series

    async def save_historical(self, series: HistoricalSeries) -> HistoricalSeries:
        return await self._run(self._save_historical, series)

    def _get_historical(self, symbol: str, period: str, interval: str) -> Optional[HistoricalSeries]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT payload FROM historical_data WHERE symbol = ? AND period = ? AND interval = ?",
                (symbol, period, interval)
            ).fetchone()
        finally:
            conn.close()
        return HistoricalSeries.from_dict(json.loads(row["payload"])) if row else None

    async def get_historical(self, symbol: str, period: str, interval: str) -> Optional[HistoricalSeries]:
        return await self._run(self._get_historical, symbol, period, interval)

    def close(self):
        self._executor.shutdown(wait=True)
