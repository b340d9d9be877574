"""
Gateway-specific exceptions
"""
from typing import Any, Optional

from core.exceptions import RealtyFlowError


class GatewayError(RealtyFlowError):
    """Base exception for the provider gateway"""

    retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: int = 500,
        request_id: Optional[str] = None,
        **details,
    ):
        self.provider = provider
        self.request_id = request_id
        super().__init__(
            message=f"{provider}: {message}" if provider else message,
            details={"provider": provider, "request_id": request_id, **details},
            status_code=status_code,
        )


class AuthenticationError(GatewayError):
    """Missing or rejected API key. Surfaced to operators, never retried"""

    def __init__(self, provider: str, message: str = "Authentication failed", request_id: Optional[str] = None):
        super().__init__(message, provider=provider, status_code=401, request_id=request_id)


class RateLimitError(GatewayError):
    """Provider returned 429 or the local limiter rejected the call"""

    retryable = True

    def __init__(
        self,
        provider: str,
        retry_after: Optional[float] = None,
        limit_type: str = "provider",
        request_id: Optional[str] = None,
    ):
        self.retry_after = retry_after
        self.limit_type = limit_type
        message = f"Rate limit exceeded ({limit_type})"
        if retry_after:
            message += f", retry after {retry_after:g}s"
        super().__init__(
            message,
            provider=provider,
            status_code=429,
            request_id=request_id,
            retry_after=retry_after,
            limit_type=limit_type,
        )


class QuotaExceededError(GatewayError):
    """Account is over its tier allowance for the current period"""

    def __init__(self, provider: str, account_id: str, used: int, limit: int, period: str):
        self.account_id = account_id
        self.used = used
        self.limit = limit
        self.period = period
        super().__init__(
            f"Quota exceeded for {account_id} ({used}/{limit} units in {period})",
            provider=provider,
            status_code=429,
            account_id=account_id,
            used=used,
            limit=limit,
            period=period,
        )


class NotFoundError(GatewayError):
    """Requested resource does not exist upstream"""

    def __init__(
        self,
        provider: str,
        resource: str,
        identifier: Any = None,
        request_id: Optional[str] = None,
    ):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found" + (f": {identifier}" if identifier is not None else "")
        super().__init__(
            message,
            provider=provider,
            status_code=404,
            request_id=request_id,
            resource=resource,
            identifier=None if identifier is None else str(identifier),
        )


class ValidationError(GatewayError):
    """Malformed caller input, rejected before any network call"""

    def __init__(self, message: str, field: Optional[str] = None, provider: Optional[str] = None, **details):
        self.field = field
        super().__init__(message, provider=provider, status_code=400, field=field, **details)
        self.error_code = "VALIDATION_ERROR"


class NetworkError(GatewayError):
    """Transport-level failure talking to the provider"""

    retryable = True

    def __init__(self, provider: str, message: str, request_id: Optional[str] = None):
        super().__init__(message, provider=provider, status_code=503, request_id=request_id)


class GatewayTimeoutError(GatewayError):
    """A provider attempt, or the caller's overall deadline, timed out"""

    retryable = True

    def __init__(self, provider: str, timeout_seconds: float, request_id: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request timed out after {timeout_seconds:g}s",
            provider=provider,
            status_code=504,
            request_id=request_id,
            timeout_seconds=timeout_seconds,
        )


class ProviderError(GatewayError):
    """Unexpected HTTP status from the provider. 5xx responses are retryable"""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int = 502,
        response_body: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        self.upstream_status = status_code
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            request_id=request_id,
            response_body=response_body,
        )

    @property
    def retryable(self) -> bool:
        return self.upstream_status >= 500


class SchemaError(GatewayError):
    """Provider payload did not match the expected response schema"""

    def __init__(
        self,
        provider: str,
        endpoint: str,
        errors: Optional[list] = None,
        request_id: Optional[str] = None,
    ):
        self.endpoint = endpoint
        self.errors = errors or []
        super().__init__(
            f"Unexpected response schema from {endpoint}",
            provider=provider,
            status_code=502,
            request_id=request_id,
            endpoint=endpoint,
            errors=self.errors,
        )


def is_retryable(error: BaseException) -> bool:
    """Classify an error before any retry decision"""
    if isinstance(error, GatewayError):
        return bool(error.retryable)
    return False
