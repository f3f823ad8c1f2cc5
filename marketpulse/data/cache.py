"""
Two-tier cache for market data
In-process entries with TTL in front of an optional Redis tier
"""

import asyncio
import fnmatch
import json
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import redis.asyncio as aioredis

from ..utils import get_logger
from ..utils.timers import Clock

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """Represents a cached value in the in-process tier"""
    key: str
    value: Any
    created_at: float
    expires_at: float
    tags: Set[str] = field(default_factory=set)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.created_at

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


class CacheService:
    """
    Memory tier plus optional Redis tier

    Reads try memory first and backfill it from Redis on a hit there.
    Writes go to both tiers; Redis failures are logged and the memory
    tier keeps working.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        max_entries: int = 1000,
        default_ttl: int = 300,
        sweep_interval: int = 60,
        health_timeout: float = 2.0,
        key_prefix: str = "marketpulse:",
        clock: Optional[Clock] = None
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.redis = redis_client
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self.health_timeout = health_timeout
        self.key_prefix = key_prefix
        self.clock = clock or Clock()

        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._sweeper: Optional[asyncio.Task] = None

        self.hits = 0
        self.misses = 0
        self.redis_hits = 0
        self.evictions = 0
        self.redis_errors = 0

        tier = "memory + redis" if redis_client is not None else "memory only"
        logger.info(f"Initialized cache service ({tier}, max {max_entries} entries)")

    @classmethod
    def from_config(cls, cache_config, clock: Optional[Clock] = None) -> 'CacheService':
        redis_client = None
        if cache_config.enable_redis:
            redis_client = aioredis.from_url(cache_config.build_redis_url(), decode_responses=True)
        return cls(
            redis_client=redis_client,
            max_entries=cache_config.max_entries,
            default_ttl=cache_config.default_ttl,
            sweep_interval=cache_config.sweep_interval,
            health_timeout=cache_config.health_timeout,
            clock=clock
        )

    def _rkey(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}tag:{tag}"

    def _redis_failed(self, action: str, error: Exception):
        self.redis_errors += 1
        logger.warning(f"Redis {action} failed, continuing with memory tier: {error}")

    def _store_memory(self, key: str, value: Any, ttl: float, tags: Set[str]):
        now = self.clock.now()
        self._memory.pop(key, None)
        self._memory[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl,
            tags=set(tags)
        )
        # Insertion order is creation order, so the head is the oldest entry
        while len(self._memory) > self.max_entries:
            evicted, _ = self._memory.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted {evicted} from memory cache")

    def _memory_get(self, key: str) -> Optional[CacheEntry]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.now()):
            del self._memory[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        """Cached value or None"""
        entry = self._memory_get(key)
        if entry is not None:
            self.hits += 1
            return entry.value

        if self.redis is not None:
            try:
                raw = await self.redis.get(self._rkey(key))
                if raw is not None:
                    value = json.loads(raw)
                    ttl = await self.redis.ttl(self._rkey(key))
                    self._store_memory(key, value, ttl if ttl and ttl > 0 else self.default_ttl, set())
                    self.hits += 1
                    self.redis_hits += 1
                    return value
            except Exception as e:
                self._redis_failed("get", e)

        self.misses += 1
        return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None, tags: Optional[Set[str]] = None):
        """Store value in both tiers"""
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        tags = set(tags or ())

        self._store_memory(key, value, ttl, tags)

        if self.redis is not None:
            try:
                seconds = max(1, math.ceil(ttl))
                await self.redis.set(self._rkey(key), json.dumps(value, default=str), ex=seconds)
                for tag in tags:
                    await self.redis.sadd(self._tag_key(tag), key)
                    await self.redis.expire(self._tag_key(tag), max(seconds, self.default_ttl))
            except Exception as e:
                self._redis_failed("set", e)

    async def delete(self, key: str) -> bool:
        removed = self._memory.pop(key, None) is not None

        if self.redis is not None:
            try:
                removed = bool(await self.redis.delete(self._rkey(key))) or removed
            except Exception as e:
                self._redis_failed("delete", e)

        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a shell-style glob, returns how many went"""
        removed = {k for k in self._memory if fnmatch.fnmatchcase(k, pattern)}
        for key in removed:
            del self._memory[key]

        if self.redis is not None:
            try:
                redis_keys = [k async for k in self.redis.scan_iter(match=self._rkey(pattern))]
                if redis_keys:
                    await self.redis.delete(*redis_keys)
                removed.update(k[len(self.key_prefix):] for k in redis_keys)
            except Exception as e:
                self._redis_failed("delete_pattern", e)

        if removed:
            logger.debug(f"Deleted {len(removed)} cache keys matching {pattern}")
        return len(removed)

    async def invalidate_tag(self, tag: str) -> int:
        """Delete every key written with this tag"""
        keys = {k for k, entry in self._memory.items() if tag in entry.tags}
        for key in keys:
            del self._memory[key]

        if self.redis is not None:
            try:
                members = await self.redis.smembers(self._tag_key(tag))
                if members:
                    await self.redis.delete(*[self._rkey(k) for k in members])
                    # Entries backfilled from Redis carry no tags in memory
                    for key in members:
                        self._memory.pop(key, None)
                    keys.update(members)
                await self.redis.delete(self._tag_key(tag))
            except Exception as e:
                self._redis_failed("invalidate_tag", e)

        return len(keys)

    async def exists(self, key: str) -> bool:
        if self._memory_get(key) is not None:
            return True

        if self.redis is not None:
            try:
                return bool(await self.redis.exists(self._rkey(key)))
            except Exception as e:
                self._redis_failed("exists", e)

        return False

    async def flush(self):
        """Drop everything this service wrote"""
        self._memory.clear()

        if self.redis is not None:
            try:
                keys = [k async for k in self.redis.scan_iter(match=f"{self.key_prefix}*")]
                if keys:
                    await self.redis.delete(*keys)
            except Exception as e:
                self._redis_failed("flush", e)

        logger.info("Flushed cache")

    def cleanup_expired(self) -> int:
        """Remove expired memory entries; Redis expires its own keys"""
        now = self.clock.now()
        expired = [k for k, entry in self._memory.items() if entry.is_expired(now)]
        for key in expired:
            del self._memory[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")
        return len(expired)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.cleanup_expired()

    def start(self):
        """Start the periodic sweep on the running loop"""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")

    async def health_check(self) -> Dict[str, Any]:
        """healthy only when Redis answers PING within health_timeout"""
        memory = {'key_count': len(self._memory)}

        if self.redis is None:
            return {'status': 'degraded', 'redis': {'status': 'disabled'}, 'memory': memory}

        start = time.perf_counter()
        try:
            await asyncio.wait_for(self.redis.ping(), timeout=self.health_timeout)
        except asyncio.TimeoutError:
            return {
                'status': 'degraded',
                'redis': {'status': 'timeout', 'timeout_seconds': self.health_timeout},
                'memory': memory
            }
        except Exception as e:
            return {
                'status': 'degraded',
                'redis': {'status': 'unreachable', 'error': str(e)},
                'memory': memory
            }

        response_ms = (time.perf_counter() - start) * 1000
        return {
            'status': 'healthy',
            'redis': {'status': 'connected', 'response_time_ms': round(response_ms, 2)},
            'memory': memory
        }

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            'memory_entries': len(self._memory),
            'max_entries': self.max_entries,
            'hits': self.hits,
            'misses': self.misses,
            'redis_hits': self.redis_hits,
            'hit_rate': round(self.hits / lookups, 4) if lookups else 0.0,
            'evictions': self.evictions,
            'redis_enabled': self.redis is not None,
            'redis_errors': self.redis_errors,
        }
