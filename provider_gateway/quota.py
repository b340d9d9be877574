"""
Tiered quota accounting backed by Redis period counters
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import get_settings
from core.logging import get_logger

from .alerts import AlertManager
from .exceptions import QuotaExceededError, ValidationError
from .lua_scripts import load_script
from .metrics import GatewayMetrics
from .types import QUOTA_LIMITS, QuotaAlert, QuotaStatus, QuotaTier, QuotaUsageBreakdown

# Usage keys outlive their period by a day so late readers still see totals
PERIOD_GRACE_SECONDS = 24 * 60 * 60

# Daily counters back the last-week breakdown
DAILY_RETENTION_DAYS = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def period_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Start and end of the calendar month containing ``now``"""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class QuotaManager:
    """
    Tracks consumption against a subscription tier's monthly allowance.

    Reservations are optimistic: the estimated cost is added to the period
    counter before the provider is called, and rolled back inside the same
    Lua script when it would push usage past the limit. Concurrent callers
    near the boundary can therefore never drive ``used`` above ``limit``.

    Charged units are also broken down per endpoint and per day for
    reporting. Those counters are best effort and never block a call.
    """

    def __init__(
        self,
        account_id: str,
        tier: Optional[QuotaTier] = None,
        limit: Optional[int] = None,
        redis: Optional[aioredis.Redis] = None,
        alerts: Optional[AlertManager] = None,
        provider: str = "rentcast",
        clock: Callable[[], datetime] = _utcnow,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.account_id = account_id
        self.provider = provider
        self.settings = get_settings()
        self.logger = get_logger("gateway.quota", domain="gateway", account_id=account_id)

        self.tier = QuotaTier(tier or self.settings.quota_tier)
        self.limit = limit or self.settings.quota_limit_override or QUOTA_LIMITS[self.tier]
        self.thresholds: List[float] = list(self.settings.quota_alert_thresholds)

        self.alerts = alerts or AlertManager()
        self.metrics = metrics or GatewayMetrics()
        self._clock = clock

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

    async def _run_script(self, command: str, units: int, ttl: int) -> List[int]:
        redis = await self._get_redis()
        if self._script is None:
            self._script = redis.register_script(load_script("quota"))

        result = await self._script(
            keys=[self._usage_key(self._period())],
            args=[command, units, self.limit, ttl],
        )
        return [int(v) for v in result]

    def _period(self) -> str:
        return self._clock().strftime("%Y%m")

    def _usage_key(self, period: str) -> str:
        return f"quota:{self.account_id}:{period}"

    def _endpoint_key(self, period: str) -> str:
        return f"quota_endpoints:{self.account_id}:{period}"

    def _daily_key(self, day: str) -> str:
        return f"quota_daily:{self.account_id}:{day}"

    def _alert_key(self, period: str, threshold: float) -> str:
        return f"quota_alert:{self.account_id}:{period}:{int(round(threshold * 100))}"

    def _key_ttl(self) -> int:
        now = self._clock()
        _, end = period_bounds(now)
        return int((end - now).total_seconds()) + PERIOD_GRACE_SECONDS

    def _status(self, used: int) -> QuotaStatus:
        start, end = period_bounds(self._clock())
        return QuotaStatus(tier=self.tier, period_start=start, period_end=end, used=used, limit=self.limit)

    async def check_and_reserve(self, estimated_cost_units: int = 1, endpoint: Optional[str] = None) -> QuotaStatus:
        """
        Reserve estimated cost units against the current period

        Args:
            estimated_cost_units: Units the call is expected to consume
            endpoint: Gateway operation charged in the usage breakdown

        Returns:
            QuotaStatus after the reservation

        Raises:
            QuotaExceededError: When the reservation would exceed the tier limit
            ValidationError: When the estimate is not a positive integer
        """
        if estimated_cost_units < 1:
            raise ValidationError("Estimated cost must be at least one unit", field="estimated_cost_units")

        period = self._period()
        try:
            admitted, used = await self._run_script("reserve", estimated_cost_units, self._key_ttl())
        except (RedisError, OSError) as e:
            self.logger.error(f"Quota store unavailable, admitting call without reservation: {e}")
            return self._status(0)

        if not admitted:
            self.metrics.record_quota_exceeded(self.provider, self.tier.value)
            if used >= self.limit:
                # The account is blocked for the rest of the period
                self.logger.warning(f"Quota exhausted for {self.account_id}: {used}/{self.limit} ({period})")
                await self._fire_alerts(period, used, thresholds=[t for t in self.thresholds if t >= 1.0])
            else:
                self.logger.warning(
                    f"Quota reservation rejected for {self.account_id}: "
                    f"{used}+{estimated_cost_units} > {self.limit} ({period})"
                )
            raise QuotaExceededError(self.provider, self.account_id, used, self.limit, period)

        self.metrics.record_quota_usage(self.provider, self.tier.value, estimated_cost_units)
        await self._record_breakdown(period, endpoint, estimated_cost_units)
        await self._fire_alerts(period, used, previous=used - estimated_cost_units)
        return self._status(used)

    async def commit(
        self, actual_cost_units: int, reserved_units: int = 1, endpoint: Optional[str] = None
    ) -> QuotaStatus:
        """
        Settle a reservation with the units the call actually consumed

        The correction never pushes usage above the tier limit.

        Args:
            actual_cost_units: Units consumed by the completed call
            reserved_units: Units taken by check_and_reserve for this call
            endpoint: Gateway operation charged in the usage breakdown
        """
        delta = actual_cost_units - reserved_units
        if delta == 0:
            return await self.get_status()

        period = self._period()
        try:
            used, applied = await self._run_script("commit", delta, self._key_ttl())
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to commit quota usage: {e}")
            return self._status(0)

        if applied != delta:
            self.logger.warning(
                f"Quota commit clamped for {self.account_id}: requested {delta:+d}, applied {applied:+d}"
            )
        if applied != 0:
            await self._record_breakdown(period, endpoint, applied)
        if applied > 0:
            self.metrics.record_quota_usage(self.provider, self.tier.value, applied)
            await self._fire_alerts(period, used, previous=used - applied)

        return self._status(used)

    async def get_status(self) -> QuotaStatus:
        """Current consumption for this account's period"""
        try:
            redis = await self._get_redis()
            used = int(await redis.get(self._usage_key(self._period())) or 0)
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to get quota status: {e}")
            used = 0
        return self._status(used)

    async def get_usage_breakdown(self, days: int = 7) -> QuotaUsageBreakdown:
        """
        Charged units for the current period by endpoint, and for each of
        the last ``days`` days

        Args:
            days: Number of calendar days to report, today included

        Returns:
            QuotaUsageBreakdown. Counts are zero when the store is unavailable.
        """
        if not 1 <= days <= DAILY_RETENTION_DAYS - 1:
            raise ValidationError(f"days must be between 1 and {DAILY_RETENTION_DAYS - 1}", field="days")

        now = self._clock()
        period = now.strftime("%Y%m")
        day_list = [(now - timedelta(days=offset)).strftime("%Y-%m-%d") for offset in range(days)]

        try:
            redis = await self._get_redis()
            monthly = int(await redis.get(self._usage_key(period)) or 0)
            daily_raw = await redis.mget([self._daily_key(day) for day in day_list])
            by_endpoint = await redis.hgetall(self._endpoint_key(period))
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to get quota usage breakdown: {e}")
            return QuotaUsageBreakdown(
                period=period, monthly=0, daily={day: 0 for day in day_list}, by_endpoint={}
            )

        return QuotaUsageBreakdown(
            period=period,
            monthly=monthly,
            daily={day: int(value or 0) for day, value in zip(day_list, daily_raw)},
            by_endpoint={name: int(value) for name, value in sorted(by_endpoint.items())},
        )

    async def _record_breakdown(self, period: str, endpoint: Optional[str], units: int) -> None:
        """Mirror a charge into the per-endpoint and daily counters"""
        day = self._clock().strftime("%Y-%m-%d")
        try:
            redis = await self._get_redis()
            async with redis.pipeline(transaction=False) as pipe:
                pipe.incrby(self._daily_key(day), units)
                pipe.expire(self._daily_key(day), DAILY_RETENTION_DAYS * 24 * 60 * 60)
                if endpoint:
                    pipe.hincrby(self._endpoint_key(period), endpoint, units)
                    pipe.expire(self._endpoint_key(period), self._key_ttl())
                await pipe.execute()
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to record quota usage breakdown: {e}")

    async def _fire_alerts(
        self,
        period: str,
        used: int,
        previous: Optional[int] = None,
        thresholds: Optional[List[float]] = None,
    ) -> None:
        """Emit one alert per threshold per period"""
        candidates = thresholds if thresholds is not None else self.thresholds
        crossed = [
            t
            for t in candidates
            if thresholds is not None or (previous < t * self.limit <= used)
        ]
        if not crossed:
            return

        redis = await self._get_redis()
        for threshold in crossed:
            try:
                first = await redis.set(self._alert_key(period, threshold), "1", nx=True, ex=self._key_ttl())
            except (RedisError, OSError) as e:
                self.logger.error(f"Failed to record quota alert flag: {e}")
                continue

            if first:
                self.alerts.emit(
                    QuotaAlert(
                        account_id=self.account_id,
                        tier=self.tier,
                        threshold=threshold,
                        used=used,
                        limit=self.limit,
                        period=period,
                    )
                )

    async def close(self) -> None:
        """Close Redis connection"""
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
