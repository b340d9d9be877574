"""
Response caching for provider calls with Redis backing
"""
import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import get_settings
from core.logging import get_logger

from .types import CACHE_TTL, CacheType


class _Miss:
    """Sentinel returned by ResponseCache.get when nothing usable is stored"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def canonicalize(params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize request parameters so equivalent queries share a cache key

    Keys are lower-cased, string values stripped and lower-cased, and
    parameters set to None dropped.
    """
    canonical = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip().lower()
        canonical[str(key).lower()] = value
    return canonical


class ResponseCache:
    """Redis-backed cache of normalized provider responses"""

    def __init__(self, account_id: str, redis: Optional[aioredis.Redis] = None):
        self.account_id = account_id
        self.settings = get_settings()
        self.logger = get_logger("gateway.cache", domain="gateway", account_id=account_id)

        # Redis connection
        self._redis = redis
        self._owns_redis = redis is None

    async def _get_redis(self) -> aioredis.Redis:
        """Get Redis connection"""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                socket_timeout=self.settings.redis_socket_timeout,
                socket_connect_timeout=self.settings.redis_connect_timeout,
            )
        return self._redis

    @property
    def stats_key(self) -> str:
        return f"cache_stats:{self.account_id}"

    def ttl_for(self, cache_type: CacheType) -> int:
        """TTL in seconds for a data class, honouring configured overrides"""
        override = self.settings.cache_ttl_overrides.get(cache_type.value)
        return override or CACHE_TTL[cache_type]

    def generate_key(self, operation: str, params: Dict[str, Any]) -> str:
        """
        Generate a cache key from operation and parameters

        Args:
            operation: Logical operation name, e.g. ``fetch_property``
            params: Request parameters

        Returns:
            Cache key string
        """
        params_str = json.dumps(canonicalize(params), sort_keys=True, separators=(",", ":"), default=str)

        # Use SHA-256 hash for consistent key length
        digest = hashlib.sha256(params_str.encode()).hexdigest()

        return f"cache:{self.account_id}:{operation}:{digest}"

    async def get(self, operation: str, params: Dict[str, Any]) -> Any:
        """
        Get a cached value

        Returns:
            The stored value, or MISS when absent, expired or unreadable
        """
        cache_key = self.generate_key(operation, params)

        try:
            redis = await self._get_redis()
            cached_data = await redis.get(cache_key)
        except (RedisError, OSError) as e:
            self.logger.error(f"Cache get error: {e}")
            return MISS

        if cached_data is None:
            await self._count("misses")
            self.logger.debug(f"Cache miss for {operation}: {cache_key[-16:]}")
            return MISS

        try:
            value = json.loads(cached_data)
        except ValueError as e:
            self.logger.error(f"Discarding unreadable cache entry {cache_key}: {e}")
            await self._count("misses")
            return MISS

        await self._count("hits")
        self.logger.debug(f"Cache hit for {operation}: {cache_key[-16:]}")
        return value

    async def set(self, operation: str, params: Dict[str, Any], value: Any, cache_type: CacheType) -> None:
        """
        Cache a value with the TTL of its data class

        Args:
            operation: Logical operation name
            params: Request parameters
            value: JSON-serializable value to store
            cache_type: Volatility class that selects the TTL
        """
        cache_key = self.generate_key(operation, params)
        cache_ttl = self.ttl_for(cache_type)

        try:
            redis = await self._get_redis()
            await redis.setex(cache_key, cache_ttl, json.dumps(value, separators=(",", ":"), default=str))
            self.logger.debug(f"Cached {operation} for {cache_ttl}s")
        except (RedisError, OSError) as e:
            self.logger.error(f"Cache set error: {e}")

    async def delete(self, operation: str, params: Dict[str, Any]) -> None:
        """Drop one cached entry"""
        try:
            redis = await self._get_redis()
            await redis.delete(self.generate_key(operation, params))
        except (RedisError, OSError) as e:
            self.logger.error(f"Cache delete error: {e}")

    async def _count(self, field: str) -> None:
        try:
            redis = await self._get_redis()
            await redis.hincrby(self.stats_key, field, 1)
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to record cache {field}: {e}")

    async def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters for this account, shared by every process"""
        try:
            redis = await self._get_redis()
            counters = await redis.hgetall(self.stats_key)
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to read cache stats: {e}")
            counters = {}

        hits = int(counters.get("hits", 0))
        misses = int(counters.get("misses", 0))
        total_requests = hits + misses
        hit_rate = (hits / total_requests) if total_requests > 0 else 0

        return {
            "account_id": self.account_id,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hit_rate, 3),
            "total_requests": total_requests,
        }

    async def close(self) -> None:
        """Close Redis connection"""
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
