"""
Provider Gateway - resilient access to the paid property data API

Every outbound property data call goes through this package: response
caching, tiered quota, priority-aware rate limiting, retries with backoff
and usage telemetry. No other module talks to the provider directly.
"""

from .base import BaseAPIClient
from .cache import MISS, ResponseCache
from .exceptions import (
    AuthenticationError,
    GatewayError,
    GatewayTimeoutError,
    NetworkError,
    NotFoundError,
    ProviderError,
    QuotaExceededError,
    RateLimitError,
    SchemaError,
    ValidationError,
)
from .facade import PropertyDataGateway
from .factory import GatewayFactory, GatewayProfile, get_gateway, get_gateway_factory
from .metrics import GatewayMetrics
from .pipeline import GatewayPipeline, GatewayRequest
from .quota import QuotaManager
from .rate_limiter import ProviderRateLimiter, RateLimiter
from .retry import RetryController
from .schemas import (
    EnrichmentResult,
    ListingDTO,
    ListingSearchCriteria,
    MarketDataDTO,
    PropertyDTO,
    RentEstimateDTO,
    ValuationDTO,
)
from .types import (
    CacheType,
    EnrichmentStage,
    EnrichmentStatus,
    Priority,
    QuotaAlert,
    QuotaStatus,
    QuotaTier,
    QuotaUsageBreakdown,
    RateLimitResult,
    RequestOutcome,
    RetryConfig,
    RetryResult,
)
from .usage import RequestLogEntry, UsageMetrics, UsageTracker

__all__ = [
    "PropertyDataGateway",
    "GatewayFactory",
    "GatewayProfile",
    "get_gateway",
    "get_gateway_factory",
    "GatewayPipeline",
    "GatewayRequest",
    "BaseAPIClient",
    "RateLimiter",
    "ProviderRateLimiter",
    "QuotaManager",
    "ResponseCache",
    "MISS",
    "RetryController",
    "UsageTracker",
    "GatewayMetrics",
    # Exceptions
    "GatewayError",
    "AuthenticationError",
    "RateLimitError",
    "QuotaExceededError",
    "NotFoundError",
    "ValidationError",
    "NetworkError",
    "GatewayTimeoutError",
    "ProviderError",
    "SchemaError",
    # Types
    "Priority",
    "QuotaTier",
    "CacheType",
    "RequestOutcome",
    "RateLimitResult",
    "QuotaStatus",
    "QuotaAlert",
    "QuotaUsageBreakdown",
    "EnrichmentStage",
    "EnrichmentStatus",
    "RetryConfig",
    "RetryResult",
    "RequestLogEntry",
    "UsageMetrics",
    # DTOs
    "PropertyDTO",
    "ValuationDTO",
    "RentEstimateDTO",
    "MarketDataDTO",
    "ListingDTO",
    "ListingSearchCriteria",
    "EnrichmentResult",
]
