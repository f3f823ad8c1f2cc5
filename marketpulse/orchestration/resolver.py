"""
Market data resolver
Cache -> durable store -> provider fallback -> write-back, degrading to stale data
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..config import get_config
from ..config.settings import Config, ResolverConfig
from ..data.alpha_vantage import AlphaVantageProvider
from ..data.base import (
    Asset,
    BatchQuoteResponse,
    Capability,
    MarketDataProvider,
    Origin,
    ResolvedData,
    normalize_interval,
    normalize_period,
    normalize_symbol
)
from ..data.cache import CacheService
from ..data.cache_manager import CacheManager
from ..data.finnhub import FinnhubProvider
from ..data.key_manager import ApiKeyManager
from ..data.twelve_data import TwelveDataProvider
from ..data.yahoo import YahooFinanceProvider
from ..persistence.store import AssetStore
from ..utils import get_logger, log_async_performance
from ..utils.errors import ErrorKind, MarketDataError
from ..utils.quota import QuotaGuard
from ..utils.timers import Clock, TimerRegistry
from .circuit_breaker import CircuitBreaker
from .fallback import FallbackManager, FallbackSource, FallbackStrategy

logger = get_logger(__name__)


@dataclass
class ResolveOptions:
    """Per-call knobs"""
    force_refresh: bool = False
    use_cache: bool = True
    cache_ttl: Optional[int] = None
    timeout: Optional[float] = None

    @property
    def read_cache(self) -> bool:
        return self.use_cache and not self.force_refresh


class MarketDataResolver:
    """
    Resolves assets, quotes, historical series and searches

    Every lookup follows the same ladder: cache, fresh durable-store
    record, provider fallback chain (written back to store and cache),
    and finally the last stored value flagged as stale. Only a lookup
    with no data of any age raises.
    """

    def __init__(
        self,
        store: AssetStore,
        cache_manager: CacheManager,
        fallback: FallbackManager,
        providers: List[MarketDataProvider],
        config: Optional[ResolverConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Optional[Clock] = None,
        quota_guard: Optional[QuotaGuard] = None
    ):
        self.store = store
        self.cache = cache_manager
        self.fallback = fallback
        self.providers = sorted(providers, key=lambda p: p.priority)
        self.config = config or ResolverConfig()
        self._sleep = sleep or asyncio.sleep
        self.clock = clock or Clock()
        self.quota_guard = quota_guard
        self._background: Set[asyncio.Task] = set()

        names = ", ".join(p.name for p in self.providers) or "none"
        logger.info(f"Resolver ready with providers: {names}")

    def _age_seconds(self, timestamp: datetime) -> float:
        return (self.clock.wall() - timestamp).total_seconds()

    def _sources(
        self,
        capability: Capability,
        call: Callable[[MarketDataProvider], Awaitable[Any]]
    ) -> List[FallbackSource]:
        return [
            FallbackSource(
                name=provider.name,
                operation=lambda provider=provider: call(provider),
                priority=provider.priority,
                circuit_breaker=provider.circuit_breaker
            )
            for provider in self.providers
            if provider.supports(capability)
        ]

    async def _store_read(self, label: str, read: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await read()
        except Exception as e:
            logger.error(f"Store read failed for {label}: {e}")
            return None

    async def _store_write(self, label: str, write: Callable[[], Awaitable[Any]]):
        try:
            await write()
        except Exception as e:
            logger.error(f"Store write failed for {label}: {e}")

    async def _resolve(
        self,
        label: str,
        symbol: str,
        options: ResolveOptions,
        read_cache: Callable[[], Awaitable[Any]],
        write_cache: Callable[[Any, Optional[int]], Awaitable[None]],
        read_store: Callable[[], Awaitable[Any]],
        is_fresh: Callable[[Any], bool],
        write_store: Callable[[Any], Awaitable[Any]],
        sources: List[FallbackSource]
    ) -> ResolvedData:
        if options.read_cache:
            cached = await read_cache()
            if cached is not None:
                logger.debug(f"Cache hit for {label}")
                return ResolvedData(cached, Origin.CACHE, source=getattr(cached, "source", None))

        stored = None
        if not options.force_refresh:
            stored = await self._store_read(label, read_store)
            if stored is not None and is_fresh(stored):
                if options.use_cache:
                    await write_cache(stored, options.cache_ttl)
                logger.debug(f"Fresh store record for {label}")
                return ResolvedData(stored, Origin.STORE, source=getattr(stored, "source", None))

        timeout = options.timeout or self.config.resolve_timeout
        try:
            result = await self.fallback.execute_with_timeout(sources, timeout)
            error = result.error
        except MarketDataError as e:
            result = None
            error = e

        if result is not None and result.success:
            data = result.data
            await self._store_write(label, lambda: write_store(data))
            if options.use_cache:
                await write_cache(data, options.cache_ttl)
            logger.debug(f"Resolved {label} from {result.source} on attempt {result.attempt}")
            return ResolvedData(data, Origin.PROVIDER, source=result.source)

        if stored is None:
            stored = await self._store_read(label, read_store)

        if stored is not None:
            logger.warning(f"All providers failed for {label}, serving stale data: {error}")
            return ResolvedData(stored, Origin.STALE, source=getattr(stored, "source", None), is_stale=True)

        logger.error(f"No data available for {label}: {error}")
        kind = ErrorKind.TIMEOUT if error is not None and error.kind == ErrorKind.TIMEOUT else ErrorKind.EXHAUSTED
        raise MarketDataError(kind, f"No data available for {label}: {error}", symbol=symbol) from error

    def _require_symbol(self, symbol: Optional[str]) -> str:
        normalized = normalize_symbol(symbol)
        if not normalized:
            raise MarketDataError(ErrorKind.VALIDATION, "Symbol is required")
        return normalized

    async def get_asset(self, symbol: str, **options) -> ResolvedData:
        """Asset metadata for symbol"""
        symbol = self._require_symbol(symbol)
        opts = ResolveOptions(**options)

        async def write_store(asset: Asset):
            await self.store.upsert(asset)

        return await self._resolve(
            f"asset {symbol}",
            symbol,
            opts,
            read_cache=lambda: self.cache.get_asset(symbol),
            write_cache=self.cache.put_asset,
            read_store=lambda: self.store.find_by_symbol(symbol),
            is_fresh=lambda asset: self._age_seconds(asset.last_updated) <= self.config.asset_ttl,
            write_store=write_store,
            sources=self._sources(Capability.ASSET, lambda p: p.get_asset(symbol))
        )

    async def get_quote(self, symbol: str, **options) -> ResolvedData:
        """Latest price for symbol"""
        symbol = self._require_symbol(symbol)
        opts = ResolveOptions(**options)

        return await self._resolve(
            f"price {symbol}",
            symbol,
            opts,
            read_cache=lambda: self.cache.get_price(symbol),
            write_cache=self.cache.put_price,
            read_store=lambda: self.store.get_latest_price(symbol),
            is_fresh=lambda price: self._age_seconds(price.timestamp) <= self.config.price_ttl,
            write_store=self.store.create_price,
            sources=self._sources(Capability.PRICE, lambda p: p.get_asset_price(symbol))
        )

    get_asset_price = get_quote

    async def get_historical(
        self,
        symbol: str,
        period: str = "1y",
        interval: str = "1d",
        **options
    ) -> ResolvedData:
        """Bars for symbol; unknown periods/intervals fall back to 1y/1d"""
        symbol = self._require_symbol(symbol)
        period = normalize_period(period)
        interval = normalize_interval(interval)
        opts = ResolveOptions(**options)

        return await self._resolve(
            f"historical {symbol} {period}/{interval}",
            symbol,
            opts,
            read_cache=lambda: self.cache.get_historical(symbol, period, interval),
            write_cache=self.cache.put_historical,
            read_store=lambda: self.store.get_historical(symbol, period, interval),
            is_fresh=lambda series: self._age_seconds(series.timestamp) <= self.config.historical_ttl,
            write_store=self.store.save_historical,
            sources=self._sources(
                Capability.HISTORICAL,
                lambda p: p.get_historical(symbol, period, interval)
            )
        )

    async def search_assets(self, query: str, limit: int = 50, **options) -> ResolvedData:
        """
        Search local assets first, topping up from providers

        Enough local hits are returned as-is. Otherwise provider results
        are appended (deduplicated by symbol) and the new assets are
        persisted in the background. Provider failure returns the local
        hits flagged stale.
        """
        query = (query or "").strip()
        if not query:
            raise MarketDataError(ErrorKind.VALIDATION, "Search query is required")
        opts = ResolveOptions(**options)

        if opts.read_cache:
            cached = await self.cache.get_search(query)
            if cached is not None:
                return ResolvedData(cached, Origin.CACHE)

        local = await self._store_read(
            f"search {query}", lambda: self.store.search_assets(query, 1, limit)
        ) or []

        if len(local) >= self.config.search_local_threshold:
            if opts.use_cache:
                await self.cache.put_search(query, local, opts.cache_ttl)
            return ResolvedData(local, Origin.STORE)

        sources = self._sources(Capability.SEARCH, lambda p: p.search_assets(query))
        try:
            result = await self.fallback.execute_with_timeout(
                sources, opts.timeout or self.config.resolve_timeout
            )
            error = result.error
        except MarketDataError as e:
            result = None
            error = e

        if result is None or not result.success:
            logger.warning(f"Provider search failed for '{query}', returning {len(local)} local results: {error}")
            return ResolvedData(local, Origin.STALE, is_stale=True)

        seen = {asset.symbol for asset in local}
        merged = list(local)
        new_assets = []
        for asset in result.data:
            if asset.symbol in seen:
                continue
            seen.add(asset.symbol)
            merged.append(asset)
            new_assets.append(asset)
        merged = merged[:limit]

        if new_assets:
            self._spawn(self._persist_assets(new_assets))
        if opts.use_cache:
            await self.cache.put_search(query, merged, opts.cache_ttl)

        return ResolvedData(merged, Origin.PROVIDER, source=result.source)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_assets(self, assets: List[Asset]):
        for asset in assets:
            await self._store_write(f"asset {asset.symbol}", lambda asset=asset: self.store.upsert(asset))
        logger.debug(f"Stored {len(assets)} assets from search")

    async def wait_background(self):
        """Wait for background writes started by search_assets"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_assets(self, symbols: List[str], **options) -> List[Asset]:
        """Resolve several assets concurrently, skipping the ones that fail"""
        results = await asyncio.gather(
            *(self.get_asset(symbol, **options) for symbol in symbols),
            return_exceptions=True
        )
        assets = []
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                logger.warning(f"Skipping asset {symbol}: {result}")
                continue
            assets.append(result.data)
        return assets

    @log_async_performance()
    async def get_batch_quotes(self, symbols: List[str], **options) -> BatchQuoteResponse:
        """
        Quotes for many symbols

        Symbols are resolved in chunks of batch_chunk_size, concurrently
        within a chunk, with batch_chunk_delay between chunks. Failures
        are reported per symbol and never fail the batch.
        """
        unique = list(dict.fromkeys(normalize_symbol(s) for s in symbols))
        size = max(1, self.config.batch_chunk_size)
        chunks = [unique[i:i + size] for i in range(0, len(unique), size)]
        response = BatchQuoteResponse()

        for index, chunk in enumerate(chunks):
            if index > 0 and self.config.batch_chunk_delay > 0:
                await self._sleep(self.config.batch_chunk_delay)

            results = await asyncio.gather(
                *(self.get_quote(symbol, **options) for symbol in chunk),
                return_exceptions=True
            )
            for symbol, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    response.errors.append({'symbol': symbol, 'error': str(result)})
                    continue
                response.data[symbol] = result.data
                if result.origin == Origin.CACHE:
                    response.from_cache += 1
                else:
                    response.from_api += 1

        response.timestamp = datetime.now()
        logger.info(
            f"Batch quotes: {len(response.data)} ok, {len(response.errors)} failed "
            f"({response.from_cache} cached)"
        )
        return response

    @log_async_performance()
    async def refresh_cache(self, symbols: List[str]) -> Dict[str, List]:
        """Force-refresh quotes for symbols"""
        results = await asyncio.gather(
            *(self.get_quote(symbol, force_refresh=True) for symbol in symbols),
            return_exceptions=True
        )
        refreshed = {'success': [], 'errors': []}
        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                refreshed['errors'].append({'symbol': symbol, 'error': str(result)})
            elif result.is_stale:
                refreshed['errors'].append({'symbol': symbol, 'error': "providers unavailable, stale data kept"})
            else:
                refreshed['success'].append(normalize_symbol(symbol))
        return refreshed

    def get_provider_health(self) -> Dict[str, Dict[str, Any]]:
        health = {}
        for provider in self.providers:
            health[provider.name] = {
                'healthy': provider.is_healthy(),
                'priority': provider.priority,
                'capabilities': sorted(c.value for c in provider.capabilities),
                'circuit': provider.get_circuit_state(),
                'keys': provider.get_api_key_rotation(),
            }
        return health

    async def get_health_status(self) -> Dict[str, Any]:
        cache_health = await self.cache.cache.health_check()
        providers = self.get_provider_health()
        any_provider = any(p['healthy'] for p in providers.values())

        if not any_provider:
            status = 'unhealthy'
        elif cache_health['status'] != 'healthy':
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'cache': cache_health,
            'cache_stats': self.cache.get_cache_stats(),
            'providers': providers,
            'sources': self.fallback.get_health_status(),
            'quota': self.quota_guard.get_status() if self.quota_guard is not None else None,
            'timestamp': datetime.now().isoformat(),
        }

    async def clear_cache(self, pattern: Optional[str] = None) -> int:
        removed = await self.cache.clear(pattern)
        logger.info(f"Cleared cache{f' matching {pattern}' if pattern else ''}")
        return removed

    async def invalidate_symbol(self, symbol: str) -> int:
        return await self.cache.invalidate_symbol(self._require_symbol(symbol))

    def start(self):
        """Start background cache maintenance; needs a running loop"""
        self.cache.cache.start()

    async def close(self):
        await self.wait_background()
        await self.fallback.drain()
        for provider in self.providers:
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Error closing {provider.name}: {e}")
        await self.cache.cache.close()
        self.store.close()


def create_resolver(
    config: Optional[Config] = None,
    clock: Optional[Clock] = None,
    transport=None,
    redis_client=None
) -> MarketDataResolver:
    """
    Build the resolver and everything it depends on

    Args:
        config: Configuration (default: get_config())
        clock: Clock shared by breakers, key cooldowns, cache and quotas
        transport: Optional httpx transport for every HTTP provider
        redis_client: Optional Redis client overriding the configured one
    """
    config = config or get_config()
    clock = clock or Clock()
    reliability = config.reliability
    timers = TimerRegistry(clock)
    quota = QuotaGuard.from_config(config.api, clock)

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=reliability.circuit_failure_threshold,
            recovery_timeout=reliability.circuit_recovery_seconds,
            clock=clock
        )

    def keys(name: str, api_keys: List[str]) -> ApiKeyManager:
        return ApiKeyManager(
            api_keys,
            rotation_threshold=reliability.key_rotation_threshold,
            max_error_count=reliability.key_max_errors,
            cooldown=reliability.key_cooldown_seconds,
            provider=name,
            clock=clock,
            timers=timers
        )

    http_kwargs = {
        'timeout': config.api.request_timeout,
        'quota_guard': quota,
        'transport': transport,
    }

    providers: List[MarketDataProvider] = []
    keyed = [
        (AlphaVantageProvider, "alpha_vantage", config.api.alpha_vantage_keys, 1),
        (TwelveDataProvider, "twelve_data", config.api.twelve_data_keys, 2),
        (FinnhubProvider, "finnhub", config.api.finnhub_keys, 3),
    ]
    for provider_cls, name, api_keys, priority in keyed:
        if not api_keys:
            logger.info(f"No API keys for {name}, provider disabled")
            continue
        providers.append(provider_cls(
            keys(name, api_keys),
            priority=priority,
            circuit_breaker=breaker(name),
            **http_kwargs
        ))

    if config.api.enable_yahoo_finance:
        providers.append(YahooFinanceProvider(priority=10, circuit_breaker=breaker("yahoo")))

    if redis_client is not None:
        cache = CacheService(
            redis_client=redis_client,
            max_entries=config.cache.max_entries,
            default_ttl=config.cache.default_ttl,
            sweep_interval=config.cache.sweep_interval,
            health_timeout=config.cache.health_timeout,
            clock=clock
        )
    else:
        cache = CacheService.from_config(config.cache, clock)

    return MarketDataResolver(
        store=AssetStore(str(config.system.database_path)),
        cache_manager=CacheManager.from_config(cache, config.resolver),
        fallback=FallbackManager(FallbackStrategy.from_config(reliability), clock=clock),
        providers=providers,
        config=config.resolver,
        clock=clock,
        quota_guard=quota
    )
