"""
Data acquisition layer
Provider clients, key pools and the two-tier cache
"""

from .base import (
    DataProvider,
    Capability,
    Asset,
    AssetPrice,
    Bar,
    HistoricalSeries,
    Origin,
    ResolvedData,
    BatchQuoteResponse,
    MarketDataProvider
)

from .key_manager import ApiKeyManager, KeyStatus
from .cache import CacheService, CacheEntry
from .cache_manager import CacheManager
from .providers import HttpProvider
from .alpha_vantage import AlphaVantageProvider
from .twelve_data import TwelveDataProvider
from .finnhub import FinnhubProvider
from .yahoo import YahooFinanceProvider

__all__ = [
    # Records
    'DataProvider',
    'Capability',
    'Asset',
    'AssetPrice',
    'Bar',
    'HistoricalSeries',
    'Origin',
    'ResolvedData',
    'BatchQuoteResponse',

    # Providers
    'MarketDataProvider',
    'HttpProvider',
    'AlphaVantageProvider',
    'TwelveDataProvider',
    'FinnhubProvider',
    'YahooFinanceProvider',

    # Keys and cache
    'ApiKeyManager',
    'KeyStatus',
    'CacheService',
    'CacheEntry',
    'CacheManager'
]
