"""
Fixed-window rate limiters with Redis backing for distributed admission control
"""
import time
from typing import Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import get_settings
from core.logging import get_logger

from .lua_scripts import load_script
from .types import Priority, RateLimitResult


class _WindowCounter:
    """Redis connection and fixed-window counter shared by the limiters"""

    def __init__(self, redis: Optional[aioredis.Redis], window_seconds: Optional[int]):
        self.settings = get_settings()
        self.window_seconds = window_seconds or self.settings.rate_limit_window_seconds

        self._redis = redis
        self._owns_redis = redis is None
        self._script = None

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

    async def _increment(self, key: str) -> Tuple[int, int]:
        """Take one slot from the window at ``key``. Returns (count, ttl)"""
        redis = await self._get_redis()
        if self._script is None:
            self._script = redis.register_script(load_script("rate_limit"))

        count, ttl = await self._script(keys=[key], args=[1, self.window_seconds])
        return int(count), int(ttl)

    async def _read(self, key: str) -> Tuple[int, int]:
        """Current (count, ttl) of the window at ``key`` without consuming"""
        redis = await self._get_redis()
        count = int(await redis.get(key) or 0)
        ttl = await redis.ttl(key)
        if ttl is None or ttl < 0:
            ttl = self.window_seconds
        return count, ttl

    async def close(self) -> None:
        """Close Redis connection"""
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()


class RateLimiter(_WindowCounter):
    """
    Admission control over one account's outbound provider calls.

    Every priority class counts against its own window, so INTERACTIVE calls
    draw from a reserved allowance that BACKGROUND batch traffic can never
    drain. Counters live in Redis and are updated by one Lua script, so any
    number of process instances share the same windows without over-admitting.
    """

    def __init__(
        self,
        account_id: str,
        redis: Optional[aioredis.Redis] = None,
        limits: Optional[Dict[Priority, int]] = None,
        window_seconds: Optional[int] = None,
    ):
        super().__init__(redis, window_seconds)
        self.account_id = account_id
        self.logger = get_logger("gateway.rate_limiter", domain="gateway", account_id=account_id)

        self.limits = {
            Priority.BACKGROUND: self.settings.rate_limit_background,
            Priority.STANDARD: self.settings.rate_limit_standard,
            Priority.INTERACTIVE: self.settings.rate_limit_interactive,
            **(limits or {}),
        }

    def _key(self, priority: Priority) -> str:
        return f"rate_limit:{self.account_id}:{priority.label}"

    def limit_for(self, priority: Priority) -> int:
        return self.limits[priority]

    async def admit(self, priority: Priority = Priority.STANDARD) -> RateLimitResult:
        """
        Try to take one slot from the priority's current window

        Args:
            priority: Priority class of the call

        Returns:
            RateLimitResult. ``allowed`` is False when the window is full.
            Fails open when Redis is unreachable.
        """
        limit = self.limit_for(priority)
        now = int(time.time())

        try:
            count, ttl = await self._increment(self._key(priority))
        except (RedisError, OSError) as e:
            self.logger.error(f"Rate limiter unavailable, admitting {priority.label} call: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                reset_at=now + self.window_seconds,
                limit=limit,
                priority=priority,
            )

        allowed = count <= limit
        if not allowed:
            self.logger.warning(f"Rate limit reached for {priority.label}: {count}/{limit}, resets in {ttl}s")

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=now + ttl,
            limit=limit,
            priority=priority,
        )

    async def status(self, priority: Priority = Priority.STANDARD) -> RateLimitResult:
        """Read the current window without consuming a slot"""
        limit = self.limit_for(priority)
        now = int(time.time())

        try:
            count, ttl = await self._read(self._key(priority))
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to read rate limit status: {e}")
            count, ttl = 0, self.window_seconds

        return RateLimitResult(
            allowed=count < limit,
            remaining=max(0, limit - count),
            reset_at=now + ttl,
            limit=limit,
            priority=priority,
        )

    async def get_usage(self) -> Dict[str, RateLimitResult]:
        """Current window state for every priority class"""
        return {priority.label: await self.status(priority) for priority in Priority}


class ProviderRateLimiter(_WindowCounter):
    """
    Provider-wide admission control per endpoint.

    The provider enforces its rate limits per API key, and every account
    calls through the same key. These windows are therefore shared by all
    accounts and all priorities; the per-account RateLimiter only divides
    the provider's allowance fairly between tenants.
    """

    def __init__(
        self,
        provider: str = "rentcast",
        redis: Optional[aioredis.Redis] = None,
        limits: Optional[Dict[str, int]] = None,
        default_limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ):
        super().__init__(redis, window_seconds)
        self.provider = provider
        self.logger = get_logger("gateway.rate_limiter", domain="gateway", provider=provider)

        self.default_limit = default_limit or self.settings.rate_limit_provider_default
        self.limits = {**self.settings.rate_limit_provider_endpoints, **(limits or {})}

    def _key(self, endpoint: str) -> str:
        return f"rate_limit:provider:{self.provider}:{endpoint}"

    def limit_for(self, endpoint: str) -> int:
        return self.limits.get(endpoint, self.default_limit)

    async def admit(self, endpoint: str) -> RateLimitResult:
        """
        Try to take one slot from the endpoint's provider-wide window

        Fails open when Redis is unreachable.
        """
        limit = self.limit_for(endpoint)
        now = int(time.time())

        try:
            count, ttl = await self._increment(self._key(endpoint))
        except (RedisError, OSError) as e:
            self.logger.error(f"Provider rate limiter unavailable, admitting {endpoint} call: {e}")
            return RateLimitResult(
                allowed=True,
                remaining=limit,
                reset_at=now + self.window_seconds,
                limit=limit,
                endpoint=endpoint,
            )

        allowed = count <= limit
        if not allowed:
            self.logger.warning(
                f"Provider rate limit reached for {self.provider} {endpoint}: {count}/{limit}, resets in {ttl}s"
            )

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=now + ttl,
            limit=limit,
            endpoint=endpoint,
        )

    async def status(self, endpoint: str) -> RateLimitResult:
        """Read the endpoint's window without consuming a slot"""
        limit = self.limit_for(endpoint)
        now = int(time.time())

        try:
            count, ttl = await self._read(self._key(endpoint))
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to read provider rate limit status: {e}")
            count, ttl = 0, self.window_seconds

        return RateLimitResult(
            allowed=count < limit,
            remaining=max(0, limit - count),
            reset_at=now + ttl,
            limit=limit,
            endpoint=endpoint,
        )

    async def get_usage(self, endpoints: Iterable[str]) -> Dict[str, RateLimitResult]:
        """Current window state for each endpoint"""
        return {endpoint: await self.status(endpoint) for endpoint in endpoints}
