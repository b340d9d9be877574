"""
Base API client with the transport concerns shared by data providers

A client performs exactly one HTTP attempt per call and maps every failure
onto the gateway error taxonomy. Caching, quota, admission and retries are
layered on top by the pipeline.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from core.config import get_settings
from core.exceptions import ConfigurationError
from core.logging import get_logger

from .exceptions import (AuthenticationError, GatewayTimeoutError,
                         NetworkError, NotFoundError, ProviderError,
                         RateLimitError, SchemaError, ValidationError)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class BaseAPIClient(ABC):
    """Abstract base class for property data provider clients"""

    def __init__(
        self,
        provider: str,
        api_key: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.provider = provider
        self.settings = get_settings()
        self.logger = get_logger(f"gateway.{provider}", domain="gateway")

        self.api_key = api_key or self._configured_api_key()
        self.base_url = (base_url or self._get_base_url()).rstrip("/")
        self.timeout = timeout or self.settings.request_timeout

        # A client handed in by the factory is shared and closed by its owner
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _configured_api_key(self) -> str | None:
        try:
            return self.settings.get_api_key(self.provider)
        except ConfigurationError:
            self.logger.warning(f"No API key configured for {self.provider}")
            return None

    @abstractmethod
    def _get_base_url(self) -> str:
        """Get the base URL for this provider"""

    @abstractmethod
    def _get_headers(self) -> dict[str, str]:
        """Get authentication headers for this provider"""

    @abstractmethod
    def calculate_cost(self, operation: str, **kwargs) -> int:
        """Cost units charged for an operation"""

    async def make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        request_id: str | None = None,
        resource: str = "resource",
    ) -> Any:
        """
        Make one authenticated API request

        Args:
            method: HTTP method
            endpoint: Path relative to the provider base URL
            params: Query parameters
            request_id: Correlation id sent as X-Request-Id
            resource: Resource name used in NotFoundError messages

        Returns:
            Decoded JSON body

        Raises:
            AuthenticationError: Missing or rejected API key
            RateLimitError: Provider returned 429
            NotFoundError: Provider returned 404
            ValidationError: Provider rejected the request parameters
            ProviderError: Any other non-success status
            GatewayTimeoutError: The attempt exceeded the per-request timeout
            NetworkError: Connection-level failure
            SchemaError: Body is not valid JSON
        """
        request_id = request_id or str(uuid.uuid4())
        if not self.api_key:
            raise AuthenticationError(self.provider, "API key not configured", request_id=request_id)

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {**self._get_headers(), "X-Request-Id": request_id}

        try:
            response = await self.client.request(method, url, params=params, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            self.logger.warning(f"{method} {endpoint} timed out: {e}")
            raise GatewayTimeoutError(self.provider, self.timeout, request_id=request_id) from e
        except httpx.TransportError as e:
            self.logger.warning(f"{method} {endpoint} failed: {e}")
            raise NetworkError(self.provider, str(e) or e.__class__.__name__, request_id=request_id) from e

        self._raise_for_status(response, endpoint, request_id, resource, params)

        try:
            return response.json()
        except ValueError as e:
            raise SchemaError(self.provider, endpoint, errors=[f"invalid JSON: {e}"], request_id=request_id) from e

    def _raise_for_status(
        self,
        response: httpx.Response,
        endpoint: str,
        request_id: str,
        resource: str,
        params: dict[str, Any] | None,
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        body = response.text[:500]

        if status in (401, 403):
            raise AuthenticationError(self.provider, f"Provider rejected credentials ({status})", request_id=request_id)
        if status == 404:
            raise NotFoundError(self.provider, resource, identifier=endpoint, request_id=request_id)
        if status == 429:
            raise RateLimitError(
                self.provider,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                request_id=request_id,
            )
        if status in (400, 422):
            raise ValidationError(
                f"Provider rejected request parameters: {body}",
                provider=self.provider,
                params=params,
                request_id=request_id,
            )

        raise ProviderError(
            self.provider,
            f"HTTP {status} from {endpoint}",
            status_code=status,
            response_body=body,
            request_id=request_id,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
