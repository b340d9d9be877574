"""
Gateway admin API endpoints: usage, quota, rate limits and health
"""
from typing import Dict

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel
from redis.exceptions import RedisError

from core.logging import get_logger

from .factory import GatewayFactory, get_gateway_factory
from .types import RateLimitResult
from .usage import UsageMetrics

logger = get_logger("gateway.api", domain="gateway")

# Create main gateway router
router = APIRouter(prefix="/api/v1/gateway", tags=["gateway"])


# Response models
class QuotaStatusResponse(BaseModel):
    """Quota consumption for the current period"""

    account_id: str
    tier: str
    period_start: str
    period_end: str
    used: int
    limit: int
    remaining: int
    percent_used: float


class RateLimitWindow(BaseModel):
    """Current admission window for one priority class"""

    limit: int
    remaining: int
    reset_at: int


class RateLimitStatusResponse(BaseModel):
    account_id: str
    windows: Dict[str, RateLimitWindow]
    provider_windows: Dict[str, RateLimitWindow] = {}


class QuotaUsageResponse(BaseModel):
    """Units charged this period by day and by endpoint"""

    account_id: str
    period: str
    monthly: int
    daily: Dict[str, int]
    by_endpoint: Dict[str, int]


def get_factory() -> GatewayFactory:
    return get_gateway_factory()


# API endpoints
@router.get("/usage", response_model=UsageMetrics)
async def get_usage(
    x_account_id: str = Header(..., alias="X-Account-Id"),
    window: int = Query(3600, ge=1, le=7 * 24 * 3600, description="Window in seconds"),
    factory: GatewayFactory = Depends(get_factory),
) -> UsageMetrics:
    """
    Get aggregated provider usage for an account

    Args:
        window: How many seconds to look back (default: one hour)

    Returns:
        Request counts, cache hit rate, error rate, latency percentiles and cost units
    """
    gateway = factory.create_gateway(x_account_id)
    try:
        return await gateway.get_usage_metrics(window)
    except (RedisError, OSError) as e:
        logger.error(f"Failed to read usage metrics: {e}")
        raise HTTPException(status_code=503, detail="Usage store unavailable")


@router.get("/quota", response_model=QuotaStatusResponse)
async def get_quota(
    x_account_id: str = Header(..., alias="X-Account-Id"),
    factory: GatewayFactory = Depends(get_factory),
) -> QuotaStatusResponse:
    """Get quota consumption for the current billing period"""
    gateway = factory.create_gateway(x_account_id)
    status = await gateway.get_quota_status()
    return QuotaStatusResponse(account_id=x_account_id, **status.to_dict())


@router.get("/quota/usage", response_model=QuotaUsageResponse)
async def get_quota_usage(
    x_account_id: str = Header(..., alias="X-Account-Id"),
    days: int = Query(7, ge=1, le=7, description="Days of daily counts, newest first"),
    factory: GatewayFactory = Depends(get_factory),
) -> QuotaUsageResponse:
    """Get units charged this period per endpoint and per day"""
    gateway = factory.create_gateway(x_account_id)
    breakdown = await gateway.get_quota_usage_breakdown(days)
    return QuotaUsageResponse(account_id=x_account_id, **breakdown.to_dict())


@router.get("/rate-limits", response_model=RateLimitStatusResponse)
async def get_rate_limits(
    x_account_id: str = Header(..., alias="X-Account-Id"),
    factory: GatewayFactory = Depends(get_factory),
) -> RateLimitStatusResponse:
    """Get the account window of each priority class and the provider-wide window of each endpoint"""
    gateway = factory.create_gateway(x_account_id)
    windows = await gateway.get_rate_limit_status()
    provider_windows = await gateway.get_provider_rate_limit_status()
    return RateLimitStatusResponse(
        account_id=x_account_id,
        windows={label: _window(r) for label, r in windows.items()},
        provider_windows={endpoint: _window(r) for endpoint, r in provider_windows.items()},
    )


def _window(result: RateLimitResult) -> RateLimitWindow:
    return RateLimitWindow(limit=result.limit, remaining=result.remaining, reset_at=result.reset_at)


# Add gateway health endpoint
@router.get("/health")
async def gateway_health(factory: GatewayFactory = Depends(get_factory)):
    """Check gateway service health"""
    try:
        redis_ok = bool(await factory.redis.ping())
    except (RedisError, OSError) as e:
        logger.error(f"Counter store health check failed: {e}")
        redis_ok = False

    return {
        "status": "healthy" if redis_ok else "degraded",
        "service": "provider_gateway",
        "redis": redis_ok,
        "api_key_configured": bool(factory.settings.rentcast_api_key or factory.api_key),
    }
