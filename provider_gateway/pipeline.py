"""
Gateway request pipeline

Drives one provider call through cache lookup, quota reservation, admission
control and retried execution, and records exactly one usage log entry for
every invocation whatever its terminal state.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.logging import get_logger

from .base import BaseAPIClient
from .cache import MISS, ResponseCache
from .exceptions import (AuthenticationError, GatewayError,
                         GatewayTimeoutError, NetworkError, NotFoundError,
                         QuotaExceededError, RateLimitError, SchemaError,
                         ValidationError)
from .metrics import GatewayMetrics
from .quota import QuotaManager
from .rate_limiter import ProviderRateLimiter, RateLimiter
from .retry import RetryController
from .types import CacheType, Priority, RequestOutcome, RetryConfig
from .usage import RequestLogEntry, UsageTracker

T = TypeVar("T")

_OUTCOMES = [
    (QuotaExceededError, RequestOutcome.QUOTA_EXCEEDED),
    (RateLimitError, RequestOutcome.RATE_LIMITED),
    (AuthenticationError, RequestOutcome.AUTH_ERROR),
    (NotFoundError, RequestOutcome.NOT_FOUND),
    (ValidationError, RequestOutcome.VALIDATION_ERROR),
    (SchemaError, RequestOutcome.SCHEMA_ERROR),
    (GatewayTimeoutError, RequestOutcome.TIMEOUT),
    (NetworkError, RequestOutcome.NETWORK_ERROR),
]


def outcome_for(error: BaseException) -> RequestOutcome:
    """Terminal outcome recorded for an error"""
    for error_type, outcome in _OUTCOMES:
        if isinstance(error, error_type):
            return outcome
    return RequestOutcome.PROVIDER_ERROR


@dataclass
class GatewayRequest(Generic[T]):
    """
    One logical provider operation

    ``call`` performs a single provider attempt given the request id and
    returns the decoded body. ``parse`` turns that body into the DTO (or list
    of DTOs) of type ``model``; a pydantic validation failure there becomes a
    SchemaError.
    """

    endpoint: str
    params: Dict[str, Any]
    call: Callable[[str], Awaitable[Any]]
    parse: Callable[[Any], T]
    model: Type[BaseModel]
    cache_type: CacheType
    many: bool = False
    priority: Priority = Priority.STANDARD
    cost_units: int = 1
    timeout: Optional[float] = None
    retry_config: Optional[RetryConfig] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class _Progress:
    """State of one invocation, written into its usage log entry"""

    outcome: RequestOutcome = RequestOutcome.SUCCESS
    error: Optional[str] = None
    cache_hit: bool = False
    attempts: int = 0
    charged: int = 0

    def count_attempt(self, attempt: int) -> None:
        self.attempts = attempt

    def fail(self, outcome: RequestOutcome, error: str) -> None:
        self.outcome, self.error = outcome, error


class GatewayPipeline:
    """Composes cache, quota, rate limiters, retries and usage tracking"""

    def __init__(
        self,
        account_id: str,
        client: BaseAPIClient,
        cache: ResponseCache,
        quota: QuotaManager,
        rate_limiter: RateLimiter,
        usage: UsageTracker,
        retry: Optional[RetryController] = None,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[GatewayMetrics] = None,
        provider_limiter: Optional[ProviderRateLimiter] = None,
    ):
        self.account_id = account_id
        self.client = client
        self.cache = cache
        self.quota = quota
        self.rate_limiter = rate_limiter
        self.provider_limiter = provider_limiter
        self.usage = usage
        self.retry = retry or RetryController()
        self.retry_config = retry_config
        self.metrics = metrics or GatewayMetrics()
        self.logger = get_logger("gateway.pipeline", domain="gateway", account_id=account_id)

    async def execute(self, request: GatewayRequest[T]) -> T:
        """
        Run a request to completion

        The caller's timeout bounds every stage: cache lookup, quota
        reservation, admission and the retried provider call. Only the usage
        log write runs after the deadline, bounded by the store's socket
        timeout.

        Returns:
            The parsed DTO, from cache or from the provider

        Raises:
            QuotaExceededError: Period allowance exhausted, provider not contacted
            RateLimitError: Admission rejected locally or provider kept returning 429
            GatewayTimeoutError: Caller deadline elapsed
            GatewayError: Any other terminal provider failure
        """
        start = time.perf_counter()
        progress = _Progress()

        try:
            async with asyncio.timeout(request.timeout):
                return await self._execute(request, progress)

        except TimeoutError as e:
            progress.fail(RequestOutcome.TIMEOUT, f"deadline of {request.timeout}s exceeded")
            self.logger.warning(f"{request.endpoint} timed out after {request.timeout}s [{request.request_id}]")
            raise GatewayTimeoutError(
                self.client.provider, request.timeout, request_id=request.request_id
            ) from e
        except QuotaExceededError as e:
            progress.fail(RequestOutcome.QUOTA_EXCEEDED, str(e))
            raise
        except SchemaError as e:
            progress.fail(RequestOutcome.SCHEMA_ERROR, str(e))
            self.logger.error(
                f"Schema mismatch on {request.endpoint} [{request.request_id}]: {e.errors}",
                extra={"endpoint": request.endpoint, "request_id": request.request_id},
            )
            raise
        except GatewayError as e:
            progress.fail(outcome_for(e), str(e))
            self.logger.warning(f"{request.endpoint} failed [{request.request_id}]: {e}")
            raise
        except asyncio.CancelledError:
            progress.fail(RequestOutcome.TIMEOUT, "cancelled")
            raise
        except Exception as e:
            progress.fail(RequestOutcome.PROVIDER_ERROR, f"{e.__class__.__name__}: {e}")
            self.logger.error(f"Unexpected error on {request.endpoint} [{request.request_id}]: {e}")
            raise

        finally:
            await self.usage.record(
                RequestLogEntry(
                    request_id=request.request_id,
                    account_id=self.account_id,
                    provider=self.client.provider,
                    endpoint=request.endpoint,
                    priority=request.priority,
                    cache_hit=progress.cache_hit,
                    latency_ms=round((time.perf_counter() - start) * 1000, 3),
                    outcome=progress.outcome,
                    cost_units=progress.charged,
                    attempts=progress.attempts,
                    error=progress.error,
                )
            )

    async def _execute(self, request: GatewayRequest[T], progress: _Progress) -> T:
        cached = await self._cached(request)
        if cached is not MISS:
            progress.cache_hit = True
            return cached

        await self.quota.check_and_reserve(request.cost_units, endpoint=request.endpoint)
        progress.charged = request.cost_units

        await self._admit(request)

        result = await self._run(request, progress.count_attempt)

        await self.cache.set(request.endpoint, request.params, self._dump(result), request.cache_type)

        actual = request.cost_units * max(1, progress.attempts)
        if actual != request.cost_units:
            await self.quota.commit(actual, request.cost_units, endpoint=request.endpoint)
        progress.charged = actual

        return result

    async def _cached(self, request: GatewayRequest[T]) -> Any:
        cached = await self.cache.get(request.endpoint, request.params)
        if cached is MISS:
            return MISS
        try:
            return self._restore(request, cached)
        except PydanticValidationError as e:
            # Entry written by an older DTO shape
            self.logger.warning(f"Ignoring stale cache entry for {request.endpoint}: {e.error_count()} errors")
            return MISS

    async def _admit(self, request: GatewayRequest[T]) -> None:
        """Account window first, then the provider-wide window of the endpoint"""
        admission = await self.rate_limiter.admit(request.priority)
        if not admission.allowed:
            raise RateLimitError(
                self.client.provider,
                retry_after=max(0, admission.reset_at - int(time.time())),
                limit_type=f"local:{request.priority.label}",
                request_id=request.request_id,
            )

        if self.provider_limiter is None:
            return
        admission = await self.provider_limiter.admit(request.endpoint)
        if not admission.allowed:
            raise RateLimitError(
                self.client.provider,
                retry_after=max(0, admission.reset_at - int(time.time())),
                limit_type=f"provider:{request.endpoint}",
                request_id=request.request_id,
            )

    async def _run(self, request: GatewayRequest[T], on_attempt: Callable[[int], None]) -> T:
        async def attempt() -> T:
            raw = await request.call(request.request_id)
            try:
                return request.parse(raw)
            except PydanticValidationError as e:
                raise SchemaError(
                    self.client.provider,
                    request.endpoint,
                    errors=_describe(e),
                    request_id=request.request_id,
                ) from e

        retried = await self.retry.execute(attempt, request.retry_config or self.retry_config, on_attempt=on_attempt)
        return retried.value

    @staticmethod
    def _dump(result: Any) -> Any:
        if isinstance(result, list):
            return [item.model_dump(mode="json") for item in result]
        return result.model_dump(mode="json")

    @staticmethod
    def _restore(request: GatewayRequest[T], cached: Any) -> T:
        if request.many:
            return [request.model.model_validate(item) for item in cached]
        return request.model.model_validate(cached)


def _describe(error: PydanticValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in error.errors()]
