"""
Configuration management using Pydantic Settings
Handles environment variables and validation
"""
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings

from core.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    # Application
    app_name: str = "RealtyFlow"
    app_version: str = "0.1.0"

    # Redis (shared counter store and response cache)
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0, gt=0, description="Seconds per Redis command")
    redis_connect_timeout: float = Field(default=2.0, gt=0)

    # RentCast property data provider
    rentcast_api_key: Optional[SecretStr] = Field(default=None)
    rentcast_base_url: str = Field(default="https://api.rentcast.io/v1")
    request_timeout: float = Field(default=30.0, description="Per-attempt HTTP timeout in seconds")

    # Rate limiting - one fixed window per priority class
    rate_limit_window_seconds: int = Field(default=60)
    rate_limit_background: int = Field(default=30, description="BACKGROUND calls per window")
    rate_limit_standard: int = Field(default=60, description="STANDARD calls per window")
    rate_limit_interactive: int = Field(default=20, description="Reserved INTERACTIVE calls per window")

    # Provider-wide windows per endpoint, shared by every account
    rate_limit_provider_default: int = Field(default=100, description="Provider calls per endpoint per window")
    rate_limit_provider_endpoints: Dict[str, int] = Field(
        default={"fetch_valuation": 50, "fetch_rent_estimate": 50},
        description="Per-endpoint overrides, keyed by gateway operation",
    )

    # Quota
    quota_tier: str = Field(default="standard")
    account_tiers: Dict[str, str] = Field(default={}, description="Subscription tier per account id")
    quota_limit_override: Optional[int] = Field(default=None, description="Replace the tier allowance")
    quota_alert_thresholds: List[float] = Field(default=[0.80, 0.95, 1.00])
    quota_alert_webhook: Optional[str] = Field(default=None, description="Webhook for quota alerts")

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    retry_max_delay_ms: int = Field(default=8000, ge=0)
    retry_jitter: bool = Field(default=True)

    # Cache TTL overrides in seconds, keyed by cache type value
    cache_ttl_overrides: Dict[str, int] = Field(default={})

    # Usage tracking
    usage_retention_seconds: int = Field(default=2 * 24 * 60 * 60)

    # Gateway factory
    gateway_cache_size: int = Field(default=1000, ge=1, description="Per-account gateways kept in memory")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Monitoring
    prometheus_enabled: bool = Field(default=True)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("account_tiers")
    @classmethod
    def validate_account_tiers(cls, v):
        allowed = ["free", "standard", "pro", "enterprise"]
        for account_id, tier in v.items():
            if tier not in allowed:
                raise ValueError(f"Tier for {account_id} must be one of: {allowed}")
        return v

    @field_validator("quota_alert_thresholds")
    @classmethod
    def validate_thresholds(cls, v):
        for threshold in v:
            if not 0 < threshold <= 1:
                raise ValueError("Quota alert thresholds must be in (0, 1]")
        return sorted(v)

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Validate production-specific settings after all fields are set"""
        if self.environment == "production" and not self.rentcast_api_key:
            raise ValueError("RentCast API key required in production")
        if self.retry_base_delay_ms > self.retry_max_delay_ms:
            raise ValueError("retry_base_delay_ms cannot exceed retry_max_delay_ms")
        return self

    def get_api_key(self, service: str) -> str:
        """Get API key for a service"""
        keys = {
            "rentcast": self.rentcast_api_key.get_secret_value() if self.rentcast_api_key else None,
        }

        key = keys.get(service)
        if not key:
            raise ConfigurationError(f"API key not configured for {service}", setting=f"{service}_api_key")
        return key

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        for field in ["rentcast_api_key"]:
            if field in data and data[field]:
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
