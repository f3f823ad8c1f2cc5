"""
Base classes and normalized records for market data providers
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from ..utils.errors import ErrorKind, MarketDataError


class DataProvider(Enum):
    """Available data providers"""
    ALPHA_VANTAGE = "alpha_vantage"
    TWELVE_DATA = "twelve_data"
    FINNHUB = "finnhub"
    YAHOO = "yahoo"


class Capability(Enum):
    """Operations a provider may support"""
    ASSET = "asset"
    PRICE = "price"
    SEARCH = "search"
    HISTORICAL = "historical"


VALID_PERIODS = ("1d", "5d", "1mo", "3mo", "6mo", "1y", "2y", "5y", "10y", "ytd", "max")
VALID_INTERVALS = ("1m", "2m", "5m", "15m", "30m", "60m", "90m", "1h", "1d", "5d", "1wk", "1mo", "3mo")
DEFAULT_PERIOD = "1y"
DEFAULT_INTERVAL = "1d"


def normalize_symbol(symbol: Optional[str]) -> str:
    return (symbol or "").strip().upper()


def normalize_period(period: Optional[str]) -> str:
    period = (period or "").strip().lower()
    return period if period in VALID_PERIODS else DEFAULT_PERIOD


def normalize_interval(interval: Optional[str]) -> str:
    interval = (interval or "").strip().lower()
    return interval if interval in VALID_INTERVALS else DEFAULT_INTERVAL


PERIOD_DAYS = {
    "1d": 1, "5d": 5, "1mo": 31, "3mo": 92, "6mo": 183,
    "1y": 366, "2y": 731, "5y": 1827, "10y": 3653,
}


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Earliest timestamp a period covers; None means unbounded"""
    now = now or datetime.now()
    if period == "ytd":
        return datetime(now.year, 1, 1)
    days = PERIOD_DAYS.get(period)
    if days is None:
        return None
    return now - timedelta(days=days)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _dump(record) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


@dataclass
class Asset:
    """Asset metadata"""
    symbol: str
    name: str
    asset_type: str = "stock"
    exchange: Optional[str] = None
    currency: str = "USD"
    sector: Optional[str] = None
    market_cap: Optional[float] = None
    description: Optional[str] = None
    country: Optional[str] = None
    last_updated: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Asset':
        data = dict(data)
        data['last_updated'] = _parse_dt(data.get('last_updated')) or datetime.now()
        return cls(**data)


@dataclass
class AssetPrice:
    """Latest quote for an asset"""
    symbol: str
    price: float
    change_amount: Optional[float] = None
    change_percent: Optional[float] = None
    volume: Optional[int] = None
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    previous_close: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssetPrice':
        data = dict(data)
        data['timestamp'] = _parse_dt(data.get('timestamp')) or datetime.now()
        return cls(**data)


@dataclass
class Bar:
    """OHLCV bar data"""
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bar':
        data = dict(data)
        data['timestamp'] = _parse_dt(data['timestamp'])
        return cls(**data)


@dataclass
class HistoricalSeries:
    """Bars for one symbol/period/interval"""
    symbol: str
    period: str
    interval: str
    bars: List[Bar] = field(default_factory=list)
    currency: Optional[str] = None
    exchange: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'period': self.period,
            'interval': self.interval,
            'bars': [bar.to_dict() for bar in self.bars],
            'currency': self.currency,
            'exchange': self.exchange,
            'timestamp': self.timestamp.isoformat(),
            'source': self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoricalSeries':
        return cls(
            symbol=data['symbol'],
            period=data['period'],
            interval=data['interval'],
            bars=[Bar.from_dict(b) for b in data.get('bars', [])],
            currency=data.get('currency'),
            exchange=data.get('exchange'),
            timestamp=_parse_dt(data.get('timestamp')) or datetime.now(),
            source=data.get('source')
        )


class Origin(Enum):
    """Where a resolved value came from"""
    CACHE = "cache"
    STORE = "store"
    PROVIDER = "provider"
    STALE = "stale"


@dataclass
class ResolvedData:
    """Envelope returned by the resolver"""
    data: Any
    origin: Origin
    source: Optional[str] = None
    is_stale: bool = False
    resolved_at: datetime = field(default_factory=datetime.now)

    @property
    def from_cache(self) -> bool:
        return self.origin == Origin.CACHE


@dataclass
class BatchQuoteResponse:
    """Aggregated result of a batch quote request"""
    data: Dict[str, AssetPrice] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)
    from_cache: int = 0
    from_api: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


class MarketDataProvider(ABC):
    """
    Base class for all market data providers

    Every vendor call goes through the provider-level circuit breaker
    when one is attached.
    """

    capabilities = frozenset()

    def __init__(self, provider: DataProvider, priority: int = 0, circuit_breaker=None):
        self.provider = provider
        self.priority = priority
        self.circuit_breaker = circuit_breaker

    @property
    def name(self) -> str:
        return self.provider.value

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    async def _guarded(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.circuit_breaker is None:
            return await operation()
        return await self.circuit_breaker.execute(operation)

    def _unsupported(self, what: str, symbol: Optional[str] = None) -> MarketDataError:
        return MarketDataError(
            ErrorKind.VALIDATION,
            f"{self.name} does not provide {what}",
            provider=self.name,
            symbol=symbol
        )

    def _no_data(self, what: str, symbol: str) -> MarketDataError:
        return MarketDataError(
            ErrorKind.VALIDATION,
            f"No {what} returned by {self.name} for {symbol}",
            provider=self.name,
            symbol=symbol
        )

    @contextmanager
    def _parsing(self, what: str, symbol: Optional[str] = None) -> Iterator[None]:
        """Turn a malformed vendor payload into a VALIDATION error"""
        try:
            yield
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise MarketDataError(
                ErrorKind.VALIDATION,
                f"Malformed {what} payload from {self.name}: {e!r}",
                provider=self.name,
                symbol=symbol
            ) from e

    @abstractmethod
    async def get_asset(self, symbol: str) -> Asset:
        """Asset metadata for symbol"""

    @abstractmethod
    async def get_asset_price(self, symbol: str) -> AssetPrice:
        """Latest quote for symbol"""

    @abstractmethod
    async def search_assets(self, query: str) -> List[Asset]:
        """Assets matching a free-text query"""

    async def get_historical(self, symbol: str, period: str, interval: str) -> HistoricalSeries:
        raise self._unsupported("historical data", symbol)

    def is_healthy(self) -> bool:
        return self.circuit_breaker is None or not self.circuit_breaker.is_open

    def get_api_key_rotation(self) -> Optional[Dict[str, Any]]:
        """Key pool stats, None for keyless providers"""
        return None

    def get_circuit_state(self) -> Optional[Dict[str, Any]]:
        if self.circuit_breaker is None:
            return None
        return self.circuit_breaker.get_state().to_dict()

    async def close(self):
        """Release network resources"""
