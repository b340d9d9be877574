"""
Type definitions for the provider gateway
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class Priority(IntEnum):
    """Admission priority. Higher values are more latency sensitive"""

    BACKGROUND = 1  # Batch enrichment, prefetching
    STANDARD = 2  # Service-to-service calls
    INTERACTIVE = 3  # User-facing requests

    @property
    def label(self) -> str:
        return self.name.lower()


class QuotaTier(str, Enum):
    """Subscription tiers for the property data provider"""

    FREE = "free"
    STANDARD = "standard"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Monthly cost-unit allowance per tier
QUOTA_LIMITS: Dict[QuotaTier, int] = {
    QuotaTier.FREE: 500,
    QuotaTier.STANDARD: 5_000,
    QuotaTier.PRO: 25_000,
    QuotaTier.ENTERPRISE: 100_000,
}


class CacheType(str, Enum):
    """Data volatility classes, each with its own TTL"""

    PROPERTY_RECORD = "property_record"
    VALUATION = "valuation"
    RENT_ESTIMATE = "rent_estimate"
    MARKET_DATA = "market_data"
    LISTING = "listing"


CACHE_TTL: Dict[CacheType, int] = {
    CacheType.PROPERTY_RECORD: 24 * 60 * 60,  # characteristics rarely change
    CacheType.VALUATION: 6 * 60 * 60,
    CacheType.RENT_ESTIMATE: 6 * 60 * 60,
    CacheType.MARKET_DATA: 30 * 60,
    CacheType.LISTING: 15 * 60,  # status changes often
}


class RequestOutcome(str, Enum):
    """Terminal state of one pipeline invocation"""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_ERROR = "provider_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    SCHEMA_ERROR = "schema_error"

    @property
    def is_error(self) -> bool:
        return self is not RequestOutcome.SUCCESS


class EnrichmentStage(str, Enum):
    """Optional data fetched on top of a property record"""

    VALUATION = "valuation"
    RENT_ESTIMATE = "rent_estimate"
    MARKET = "market"


class EnrichmentStatus(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    COMPLETE = "complete"


@dataclass
class RateLimitResult:
    """Result of one admission check against an account or provider window"""

    allowed: bool
    remaining: int
    reset_at: int  # epoch seconds
    limit: int
    priority: Optional[Priority] = None
    endpoint: Optional[str] = None  # set for provider-wide windows


@dataclass
class QuotaStatus:
    """Consumption against the tier allowance for the current period"""

    tier: QuotaTier
    period_start: datetime
    period_end: datetime
    used: int
    limit: int

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 100.0
        return round(self.used / self.limit * 100, 2)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "percent_used": self.percent_used,
        }


@dataclass
class QuotaUsageBreakdown:
    """Charged units for the current period, by day and by endpoint"""

    period: str  # yyyymm
    monthly: int
    daily: Dict[str, int]  # yyyy-mm-dd, newest first
    by_endpoint: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "monthly": self.monthly,
            "daily": dict(self.daily),
            "by_endpoint": dict(self.by_endpoint),
        }


@dataclass
class QuotaAlert:
    """Emitted once per period when usage crosses a threshold"""

    account_id: str
    tier: QuotaTier
    threshold: float  # fraction of the limit, e.g. 0.8
    used: int
    limit: int
    period: str  # yyyymm
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def percent(self) -> int:
        return int(round(self.threshold * 100))


@dataclass
class RetryConfig:
    """Retry policy for a provider call"""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 8000
    jitter: bool = True


@dataclass
class RetryResult(Generic[T]):
    """Successful outcome of a retried call"""

    value: T
    attempts: int
    total_delay_ms: float = 0.0
