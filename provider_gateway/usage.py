"""
Per-request usage log and aggregate metrics

Every gateway invocation appends exactly one RequestLogEntry to a per-account
sorted set scored by timestamp. Aggregates are computed on read over a time
window, so the write path stays a single pipelined round-trip.
"""
import math
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from core.config import get_settings
from core.logging import get_logger

from .metrics import GatewayMetrics
from .types import Priority, RequestOutcome


class RequestLogEntry(BaseModel):
    """One finished gateway invocation. Append-only"""

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    account_id: str
    provider: str = "rentcast"
    endpoint: str
    priority: Priority = Priority.STANDARD
    cache_hit: bool = False
    latency_ms: float = 0.0
    outcome: RequestOutcome
    cost_units: int = 0
    attempts: int = 0
    error: Optional[str] = None


class UsageMetrics(BaseModel):
    """Aggregates over the entries of one time window"""

    window_seconds: int
    total_requests: int = 0
    by_endpoint: Dict[str, int] = Field(default_factory=dict)
    by_outcome: Dict[str, int] = Field(default_factory=dict)
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    avg_latency_ms: float = 0.0
    p50_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    cost_units: int = 0


def percentile(values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an unsorted list"""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


def aggregate(entries: List[RequestLogEntry], window_seconds: int) -> UsageMetrics:
    """Fold log entries into UsageMetrics"""
    total = len(entries)
    if total == 0:
        return UsageMetrics(window_seconds=window_seconds)

    latencies = [e.latency_ms for e in entries]
    errors = sum(1 for e in entries if e.outcome.is_error)
    hits = sum(1 for e in entries if e.cache_hit)

    return UsageMetrics(
        window_seconds=window_seconds,
        total_requests=total,
        by_endpoint=dict(Counter(e.endpoint for e in entries)),
        by_outcome=dict(Counter(e.outcome.value for e in entries)),
        cache_hit_rate=round(hits / total, 4),
        error_rate=round(errors / total, 4),
        avg_latency_ms=round(sum(latencies) / total, 2),
        p50_latency_ms=percentile(latencies, 50),
        p95_latency_ms=percentile(latencies, 95),
        cost_units=sum(e.cost_units for e in entries),
    )


class UsageTracker:
    """Records request log entries and serves windowed usage metrics"""

    def __init__(
        self,
        account_id: str,
        redis: Optional[aioredis.Redis] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self.account_id = account_id
        self.settings = get_settings()
        self.logger = get_logger("gateway.usage", domain="gateway", account_id=account_id)
        self.metrics = metrics or GatewayMetrics()
        self.retention_seconds = self.settings.usage_retention_seconds

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
    def key(self) -> str:
        return f"usage:{self.account_id}:requests"

    async def record(self, entry: RequestLogEntry) -> None:
        """
        Append an entry to the usage log

        Writing is best effort: a counter store outage is logged and the
        caller's result is returned unchanged.
        """
        self._record_prometheus(entry)

        score = entry.timestamp.timestamp()
        try:
            redis = await self._get_redis()
            async with redis.pipeline(transaction=False) as pipe:
                pipe.zadd(self.key, {entry.model_dump_json(): score})
                pipe.zremrangebyscore(self.key, "-inf", score - self.retention_seconds)
                pipe.expire(self.key, self.retention_seconds)
                await pipe.execute()
        except (RedisError, OSError) as e:
            self.logger.error(f"Failed to record usage for {entry.request_id}: {e}")

    def _record_prometheus(self, entry: RequestLogEntry) -> None:
        if entry.cache_hit:
            self.metrics.record_cache_hit(entry.provider, entry.endpoint)
        else:
            self.metrics.record_cache_miss(entry.provider, entry.endpoint)
        if entry.outcome is RequestOutcome.RATE_LIMITED:
            self.metrics.record_rate_limit_exceeded(entry.provider, entry.priority.label)
        self.metrics.record_request(
            entry.provider,
            entry.endpoint,
            entry.outcome.value,
            entry.latency_ms / 1000,
            cost_units=entry.cost_units,
            attempts=entry.attempts,
        )

    async def entries(self, window_seconds: int, now: Optional[float] = None) -> List[RequestLogEntry]:
        """
        Entries recorded within the last ``window_seconds``

        RedisError propagates. An unreachable store is never reported as an
        empty window.
        """
        now = time.time() if now is None else now
        redis = await self._get_redis()
        raw = await redis.zrangebyscore(self.key, now - window_seconds, "+inf")
        return [RequestLogEntry.model_validate_json(item) for item in raw]

    async def get_metrics(self, window_seconds: int = 3600, now: Optional[float] = None) -> UsageMetrics:
        """
        Aggregate usage over a time window

        Args:
            window_seconds: How far back to look
            now: Reference epoch seconds, defaults to the current time

        Returns:
            UsageMetrics for the window
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        return aggregate(await self.entries(window_seconds, now=now), window_seconds)

    async def recent(self, limit: int = 20) -> List[RequestLogEntry]:
        """Newest entries first. RedisError propagates like entries()"""
        redis = await self._get_redis()
        raw = await redis.zrevrange(self.key, 0, limit - 1)
        return [RequestLogEntry.model_validate_json(item) for item in raw]

    async def close(self) -> None:
        """Close Redis connection"""
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
