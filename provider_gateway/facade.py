"""
Property data gateway facade - typed operations over the request pipeline
"""
import asyncio
import re
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from core.logging import get_logger

from .exceptions import GatewayError, ValidationError
from .pipeline import GatewayPipeline, GatewayRequest
from .providers.rentcast import RentCastClient
from .schemas import (EnrichmentResult, ListingDTO, ListingSearchCriteria,
                      MarketDataDTO, PropertyDTO, RentCastListing,
                      RentCastMarketData, RentCastProperty,
                      RentCastRentEstimate, RentCastValuation,
                      RentEstimateDTO, ValuationDTO, normalize_listing,
                      normalize_market_data, normalize_property,
                      normalize_rent_estimate, normalize_valuation)
from .types import (CacheType, EnrichmentStage, Priority, QuotaStatus,
                    QuotaUsageBreakdown, RateLimitResult)
from .usage import RequestLogEntry, UsageMetrics

ZIP_CODE_RE = re.compile(r"^\d{5}$")
ENDPOINTS = (
    "fetch_property",
    "fetch_valuation",
    "fetch_rent_estimate",
    "search_listings",
    "fetch_market_data",
)
MAX_ID_LENGTH = 256

_listings = TypeAdapter(List[RentCastListing])


class PropertyDataGateway:
    """
    Single entry point for property data used by business services.

    Every operation validates its input before touching the network or the
    counter store, then runs through the gateway pipeline. Errors are typed
    GatewayError subclasses.
    """

    def __init__(self, account_id: str, client: RentCastClient, pipeline: GatewayPipeline):
        self.account_id = account_id
        self.client = client
        self.pipeline = pipeline
        self.logger = get_logger("gateway.facade", domain="gateway", account_id=account_id)

    # Property records

    async def fetch_property(
        self,
        property_id: str,
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> PropertyDTO:
        """
        Get a normalized property record

        Args:
            property_id: Provider property identifier
            priority: Admission priority of the caller
            timeout: Overall deadline in seconds

        Returns:
            PropertyDTO
        """
        property_id = self._validate_property_id(property_id)
        self._validate_timeout(timeout)

        return await self.pipeline.execute(
            GatewayRequest(
                endpoint="fetch_property",
                params={"property_id": property_id},
                call=lambda request_id: self.client.get_property(property_id, request_id=request_id),
                parse=lambda raw: normalize_property(RentCastProperty.model_validate(raw)),
                model=PropertyDTO,
                cache_type=CacheType.PROPERTY_RECORD,
                priority=priority,
                cost_units=self.client.calculate_cost("property"),
                timeout=timeout,
            )
        )

    async def fetch_valuation(
        self,
        property_id: str,
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> ValuationDTO:
        """
        Get the automated valuation for a property

        The property's address is resolved through fetch_property first,
        which is normally served from cache.
        """
        property_id = self._validate_property_id(property_id)
        self._validate_timeout(timeout)

        deadline = self._deadline(timeout)
        record = await self.fetch_property(property_id, priority=priority, timeout=timeout)

        return await self.pipeline.execute(
            GatewayRequest(
                endpoint="fetch_valuation",
                params={"property_id": property_id},
                call=lambda request_id: self.client.get_value_estimate(record.address, request_id=request_id),
                parse=lambda raw: normalize_valuation(RentCastValuation.model_validate(raw), property_id),
                model=ValuationDTO,
                cache_type=CacheType.VALUATION,
                priority=priority,
                cost_units=self.client.calculate_cost("valuation"),
                timeout=self._remaining(deadline),
            )
        )

    async def fetch_rent_estimate(
        self,
        property_id: str,
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> RentEstimateDTO:
        """Get the long-term rent estimate for a property"""
        property_id = self._validate_property_id(property_id)
        self._validate_timeout(timeout)

        deadline = self._deadline(timeout)
        record = await self.fetch_property(property_id, priority=priority, timeout=timeout)

        return await self.pipeline.execute(
            GatewayRequest(
                endpoint="fetch_rent_estimate",
                params={"property_id": property_id},
                call=lambda request_id: self.client.get_rent_estimate(record.address, request_id=request_id),
                parse=lambda raw: normalize_rent_estimate(RentCastRentEstimate.model_validate(raw), property_id),
                model=RentEstimateDTO,
                cache_type=CacheType.RENT_ESTIMATE,
                priority=priority,
                cost_units=self.client.calculate_cost("rent_estimate"),
                timeout=self._remaining(deadline),
            )
        )

    # Listings and markets

    async def search_listings(
        self,
        criteria: Union[ListingSearchCriteria, Dict[str, Any]],
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> List[ListingDTO]:
        """
        Search sale listings

        Args:
            criteria: ListingSearchCriteria or an equivalent dict
            priority: Admission priority of the caller
            timeout: Overall deadline in seconds

        Returns:
            Normalized listings, possibly empty
        """
        criteria = self._validate_criteria(criteria)
        self._validate_timeout(timeout)
        params = criteria.to_query_params()

        return await self.pipeline.execute(
            GatewayRequest(
                endpoint="search_listings",
                params=params,
                call=lambda request_id: self.client.search_sale_listings(params, request_id=request_id),
                parse=lambda raw: [normalize_listing(item) for item in _listings.validate_python(raw)],
                model=ListingDTO,
                many=True,
                cache_type=CacheType.LISTING,
                priority=priority,
                cost_units=self.client.calculate_cost("listings"),
                timeout=timeout,
            )
        )

    async def fetch_market_data(
        self,
        zip_code: str,
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> MarketDataDTO:
        """Get market statistics for a five digit zip code"""
        if not isinstance(zip_code, str) or not ZIP_CODE_RE.match(zip_code.strip()):
            raise ValidationError(f"Invalid zip code: {zip_code!r}", field="zip_code")
        zip_code = zip_code.strip()
        self._validate_timeout(timeout)

        return await self.pipeline.execute(
            GatewayRequest(
                endpoint="fetch_market_data",
                params={"zip_code": zip_code},
                call=lambda request_id: self.client.get_market_data(zip_code, request_id=request_id),
                parse=lambda raw: normalize_market_data(RentCastMarketData.model_validate(raw)),
                model=MarketDataDTO,
                cache_type=CacheType.MARKET_DATA,
                priority=priority,
                cost_units=self.client.calculate_cost("market_data"),
                timeout=timeout,
            )
        )

    # Enrichment

    async def enrich_property(
        self,
        property_id: str,
        stages: Optional[Sequence[EnrichmentStage]] = None,
        priority: Priority = Priority.STANDARD,
        timeout: Optional[float] = None,
    ) -> EnrichmentResult:
        """
        Fetch a property record plus valuation, rent and market data

        The property record is required and its errors propagate. The
        enrichment stages run in order under one shared deadline; a failed
        stage is recorded in ``errors`` and the remaining stages still run.

        Args:
            property_id: Provider property identifier
            stages: Stages to run, all of them when omitted
            priority: Admission priority of the caller
            timeout: Overall deadline in seconds for the record and all stages

        Returns:
            EnrichmentResult, whose ``status`` is none, partial or complete
        """
        property_id = self._validate_property_id(property_id)
        self._validate_timeout(timeout)
        requested = self._validate_stages(stages)

        deadline = self._deadline(timeout)
        record = await self.fetch_property(property_id, priority=priority, timeout=timeout)
        result = EnrichmentResult(property=record, requested_stages=requested)

        for stage in requested:
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                result.errors.append(f"{stage.value}: deadline exceeded")
                continue

            try:
                if stage is EnrichmentStage.VALUATION:
                    result.valuation = await self.fetch_valuation(property_id, priority=priority, timeout=remaining)
                elif stage is EnrichmentStage.RENT_ESTIMATE:
                    result.rent_estimate = await self.fetch_rent_estimate(
                        property_id, priority=priority, timeout=remaining
                    )
                else:
                    if not record.zip_code:
                        result.errors.append(f"{stage.value}: property has no zip code")
                        continue
                    result.market_data = await self.fetch_market_data(
                        record.zip_code[:5], priority=priority, timeout=remaining
                    )
            except GatewayError as e:
                self.logger.warning(f"Enrichment stage {stage.value} failed for {property_id}: {e}")
                result.errors.append(f"{stage.value}: {e}")
                continue

            result.completed_stages.append(stage)

        self.logger.info(
            f"Enriched {property_id}: {result.status.value}, "
            f"{len(result.completed_stages)}/{len(requested)} stages"
        )
        return result

    # Usage and quota

    async def get_usage_metrics(self, window_seconds: int = 3600) -> UsageMetrics:
        """Aggregated usage for this account over a time window"""
        if window_seconds <= 0:
            raise ValidationError("window_seconds must be positive", field="window_seconds")
        return await self.pipeline.usage.get_metrics(window_seconds)

    async def get_recent_requests(self, limit: int = 20) -> List[RequestLogEntry]:
        """Newest request log entries for this account"""
        return await self.pipeline.usage.recent(limit)

    async def get_quota_status(self) -> QuotaStatus:
        """Quota consumption for the current period"""
        return await self.pipeline.quota.get_status()

    async def get_quota_usage_breakdown(self, days: int = 7) -> QuotaUsageBreakdown:
        """Units charged this period per endpoint, and per day over the last ``days`` days"""
        return await self.pipeline.quota.get_usage_breakdown(days)

    async def get_rate_limit_status(self) -> Dict[str, RateLimitResult]:
        """Current admission window for every priority class"""
        return await self.pipeline.rate_limiter.get_usage()

    async def get_provider_rate_limit_status(self) -> Dict[str, RateLimitResult]:
        """Provider-wide admission window for every endpoint, shared by all accounts"""
        if self.pipeline.provider_limiter is None:
            return {}
        return await self.pipeline.provider_limiter.get_usage(ENDPOINTS)

    async def close(self) -> None:
        """Release connections owned by this gateway"""
        await self.pipeline.quota.alerts.drain()
        for component in (
            self.client,
            self.pipeline.cache,
            self.pipeline.quota,
            self.pipeline.rate_limiter,
            self.pipeline.usage,
        ):
            await component.close()

    # Validation

    @staticmethod
    def _validate_property_id(property_id: str) -> str:
        if not isinstance(property_id, str) or not property_id.strip():
            raise ValidationError("property_id is required", field="property_id")
        property_id = property_id.strip()
        if len(property_id) > MAX_ID_LENGTH or any(c in property_id for c in "/?#"):
            raise ValidationError(f"Invalid property_id: {property_id!r}", field="property_id")
        return property_id

    @staticmethod
    def _validate_timeout(timeout: Optional[float]) -> None:
        if timeout is not None and timeout <= 0:
            raise ValidationError("timeout must be positive", field="timeout")

    @staticmethod
    def _validate_stages(stages: Optional[Sequence[EnrichmentStage]]) -> List[EnrichmentStage]:
        if stages is None:
            return list(EnrichmentStage)
        try:
            return list(dict.fromkeys(EnrichmentStage(stage) for stage in stages))
        except ValueError as e:
            raise ValidationError(f"Unknown enrichment stage: {e}", field="stages") from e

    @staticmethod
    def _validate_criteria(criteria: Union[ListingSearchCriteria, Dict[str, Any]]) -> ListingSearchCriteria:
        if isinstance(criteria, ListingSearchCriteria):
            return criteria
        try:
            return ListingSearchCriteria.model_validate(criteria)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first["loc"]) or None
            raise ValidationError(f"Invalid listing search criteria: {first['msg']}", field=field) from e

    @staticmethod
    def _deadline(timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        # A spent budget still runs the pipeline so the timeout is logged
        return max(0.0, deadline - asyncio.get_running_loop().time())
