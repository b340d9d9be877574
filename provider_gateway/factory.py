"""
Factory for per-account property data gateways
"""
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import httpx
import redis.asyncio as aioredis

from core.config import get_settings
from core.logging import get_logger

from .alerts import AlertManager
from .cache import ResponseCache
from .facade import PropertyDataGateway
from .metrics import GatewayMetrics
from .pipeline import GatewayPipeline
from .providers.rentcast import RentCastClient
from .quota import QuotaManager
from .rate_limiter import ProviderRateLimiter, RateLimiter
from .retry import RetryController
from .types import Priority, QuotaTier
from .usage import UsageTracker


@dataclass(frozen=True)
class GatewayProfile:
    """Limits a gateway was built with"""

    tier: QuotaTier
    quota_limit: Optional[int] = None
    rate_limits: Dict[Priority, int] = field(default_factory=dict)


class GatewayFactory:
    """
    Builds PropertyDataGateway instances that share one Redis connection
    pool, one HTTP client, one alert manager and one set of provider-wide
    rate windows.

    Gateways are cached per account in a bounded LRU. An account's tier comes
    from the ACCOUNT_TIERS setting, falling back to QUOTA_TIER. Explicit
    limits that differ from the cached gateway's replace it. The factory
    owns the shared resources and closes them.
    """

    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        alerts: Optional[AlertManager] = None,
        retry: Optional[RetryController] = None,
        api_key: Optional[str] = None,
        max_gateways: Optional[int] = None,
        provider_limits: Optional[Dict[str, int]] = None,
    ):
        self.logger = get_logger("gateway.factory", domain="gateway")
        self.settings = get_settings()

        self._owns_redis = redis is None
        self._owns_http = http_client is None
        self.redis = redis or aioredis.from_url(
            self.settings.redis_url,
            decode_responses=True,
            socket_timeout=self.settings.redis_socket_timeout,
            socket_connect_timeout=self.settings.redis_connect_timeout,
        )
        self.http_client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(self.settings.request_timeout))

        self.alerts = alerts or AlertManager()
        self.retry = retry or RetryController()
        self.metrics = GatewayMetrics()
        self.api_key = api_key
        self.provider_limiter = ProviderRateLimiter("rentcast", redis=self.redis, limits=provider_limits)

        self.max_gateways = max_gateways or self.settings.gateway_cache_size
        self._gateways: "OrderedDict[str, Tuple[GatewayProfile, PropertyDataGateway]]" = OrderedDict()
        self._lock = threading.Lock()

    def tier_for(self, account_id: str) -> QuotaTier:
        """Configured subscription tier of an account"""
        return QuotaTier(self.settings.account_tiers.get(account_id, self.settings.quota_tier))

    def create_gateway(
        self,
        account_id: str,
        tier: Optional[QuotaTier] = None,
        quota_limit: Optional[int] = None,
        rate_limits: Optional[Dict[Priority, int]] = None,
        use_cache: bool = True,
    ) -> PropertyDataGateway:
        """
        Create or retrieve the gateway for an account

        Args:
            account_id: Tenant whose counters and cache entries are used
            tier: Subscription tier, the account's configured tier when omitted
            quota_limit: Explicit period allowance overriding the tier
            rate_limits: Per-priority window limits overriding settings
            use_cache: Keep the gateway in, and serve it from, the factory's LRU
        """
        if not account_id:
            raise ValueError("account_id is required")

        explicit = tier is not None or quota_limit is not None or rate_limits is not None
        profile = GatewayProfile(
            tier=QuotaTier(tier) if tier is not None else self.tier_for(account_id),
            quota_limit=quota_limit,
            rate_limits=dict(rate_limits or {}),
        )

        with self._lock:
            if use_cache and account_id in self._gateways:
                cached_profile, cached = self._gateways[account_id]
                if not explicit or cached_profile == profile:
                    self._gateways.move_to_end(account_id)
                    return cached
                self.logger.warning(
                    f"Rebuilding gateway for account {account_id}: "
                    f"tier {cached_profile.tier.value} -> {profile.tier.value}"
                )

            gateway = self._build(account_id, profile)

            if use_cache:
                self._gateways[account_id] = (profile, gateway)
                self._gateways.move_to_end(account_id)
                while len(self._gateways) > self.max_gateways:
                    # Evicted gateways only hold shared resources
                    evicted, _ = self._gateways.popitem(last=False)
                    self.logger.debug(f"Evicted gateway for account {evicted}")

        self.logger.info(f"Created gateway for account {account_id} ({profile.tier.value})")
        return gateway

    def _build(self, account_id: str, profile: GatewayProfile) -> PropertyDataGateway:
        client = RentCastClient(api_key=self.api_key, client=self.http_client)
        pipeline = GatewayPipeline(
            account_id=account_id,
            client=client,
            cache=ResponseCache(account_id, redis=self.redis),
            quota=QuotaManager(
                account_id,
                tier=profile.tier,
                limit=profile.quota_limit,
                redis=self.redis,
                alerts=self.alerts,
                provider=client.provider,
                metrics=self.metrics,
            ),
            rate_limiter=RateLimiter(account_id, redis=self.redis, limits=profile.rate_limits),
            provider_limiter=self.provider_limiter,
            usage=UsageTracker(account_id, redis=self.redis, metrics=self.metrics),
            retry=self.retry,
            metrics=self.metrics,
        )
        return PropertyDataGateway(account_id, client, pipeline)

    async def close(self) -> None:
        """Close every cached gateway and the shared connections"""
        for _, gateway in list(self._gateways.values()):
            await gateway.close()
        self._gateways.clear()

        await self.alerts.drain()
        if self._owns_http:
            await self.http_client.aclose()
        if self._owns_redis:
            await self.redis.aclose()


_factory: Optional[GatewayFactory] = None


def get_gateway_factory() -> GatewayFactory:
    """Get the process-wide gateway factory"""
    global _factory
    if _factory is None:
        _factory = GatewayFactory()
    return _factory


def get_gateway(account_id: str) -> PropertyDataGateway:
    """Convenience accessor for an account's gateway"""
    return get_gateway_factory().create_gateway(account_id)
