"""
Prometheus metrics for provider gateway monitoring
"""
from prometheus_client import Counter, Histogram, Info

from core.config import get_settings
from core.logging import get_logger


class GatewayMetrics:
    """Prometheus metrics collector for the provider gateway"""

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.logger = get_logger("gateway.metrics", domain="gateway")
        self.enabled = get_settings().prometheus_enabled

        # Request metrics
        self.requests_total = Counter(
            "gateway_requests_total",
            "Total number of gateway requests by terminal outcome",
            ["provider", "endpoint", "outcome"],
        )

        self.request_latency_seconds = Histogram(
            "gateway_request_latency_seconds",
            "Gateway request latency in seconds, including retries",
            ["provider", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        )

        self.cost_units_total = Counter(
            "gateway_cost_units_total",
            "Provider cost units consumed",
            ["provider", "endpoint"],
        )

        # Cache metrics
        self.cache_hits_total = Counter(
            "gateway_response_cache_hits_total",
            "Total number of cache hits",
            ["provider", "endpoint"],
        )

        self.cache_misses_total = Counter(
            "gateway_response_cache_misses_total",
            "Total number of cache misses",
            ["provider", "endpoint"],
        )

        # Rate limiting metrics
        self.rate_limit_exceeded_total = Counter(
            "gateway_rate_limit_exceeded_total",
            "Total number of rate limit rejections",
            ["provider", "priority"],
        )

        # Quota metrics
        self.quota_units_total = Counter(
            "gateway_quota_units_total",
            "Cost units charged against tier quotas",
            ["provider", "tier"],
        )

        self.quota_exceeded_total = Counter(
            "gateway_quota_exceeded_total",
            "Calls rejected because the account quota was exhausted",
            ["provider", "tier"],
        )

        self.retry_attempts_total = Counter(
            "gateway_retry_attempts_total",
            "Provider attempts beyond the first",
            ["provider", "endpoint"],
        )

        # Gateway info
        self.gateway_info = Info("gateway_info", "Gateway version and configuration info")
        self.gateway_info.info({"version": get_settings().app_version, "domain": "provider_gateway"})

        # Mark as initialized
        self.__class__._initialized = True

    def record_request(
        self,
        provider: str,
        endpoint: str,
        outcome: str,
        duration: float,
        cost_units: int = 0,
        attempts: int = 1,
    ) -> None:
        """Record one finished gateway request"""
        if not self.enabled:
            return

        try:
            self.requests_total.labels(provider=provider, endpoint=endpoint, outcome=outcome).inc()
            self.request_latency_seconds.labels(provider=provider, endpoint=endpoint).observe(duration)

            if cost_units:
                self.cost_units_total.labels(provider=provider, endpoint=endpoint).inc(cost_units)
            if attempts > 1:
                self.retry_attempts_total.labels(provider=provider, endpoint=endpoint).inc(attempts - 1)

            self.logger.debug(
                f"Recorded request: {provider}/{endpoint} outcome={outcome} duration={duration:.3f}s"
            )

        except ValueError as e:
            self.logger.error(f"Failed to record request metrics: {e}")

    def record_cache_hit(self, provider: str, endpoint: str) -> None:
        """Record cache hit"""
        if self.enabled:
            self.cache_hits_total.labels(provider=provider, endpoint=endpoint).inc()

    def record_cache_miss(self, provider: str, endpoint: str) -> None:
        """Record cache miss"""
        if self.enabled:
            self.cache_misses_total.labels(provider=provider, endpoint=endpoint).inc()

    def record_rate_limit_exceeded(self, provider: str, priority: str) -> None:
        """Record rate limit rejection"""
        if self.enabled:
            self.rate_limit_exceeded_total.labels(provider=provider, priority=priority).inc()

    def record_quota_usage(self, provider: str, tier: str, units: int) -> None:
        """Record units charged against a tier quota"""
        if self.enabled and units > 0:
            self.quota_units_total.labels(provider=provider, tier=tier).inc(units)

    def record_quota_exceeded(self, provider: str, tier: str) -> None:
        """Record quota rejection"""
        if self.enabled:
            self.quota_exceeded_total.labels(provider=provider, tier=tier).inc()
