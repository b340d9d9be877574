"""
Test property data gateway end to end over fake Redis and a fake provider
"""
import asyncio
import time

import httpx
import pytest

from provider_gateway.exceptions import (GatewayTimeoutError, NotFoundError, ProviderError,
                                         QuotaExceededError, RateLimitError,
                                         SchemaError, ValidationError)
from core.config import Settings
from provider_gateway.factory import GatewayFactory
from provider_gateway.retry import RetryController
from provider_gateway.schemas import ListingDTO, PropertyDTO, ValuationDTO
from provider_gateway.types import (EnrichmentStage, EnrichmentStatus, Priority,
                                    QuotaTier, RequestOutcome)
from tests.unit.provider_gateway.fakes import (API_KEY, LISTINGS_PAYLOAD, MARKET_PAYLOAD,
                                               RENT_PAYLOAD, VALUATION_PAYLOAD,
                                               property_payload)

HIGH_LIMITS = {Priority.BACKGROUND: 1000, Priority.STANDARD: 1000, Priority.INTERACTIVE: 1000}


class TestPropertyDataGateway:
    @pytest.fixture
    def gateway(self, factory):
        return factory.create_gateway("acct-1", quota_limit=100, rate_limits=HIGH_LIMITS)

    @pytest.mark.asyncio
    async def test_fetch_property_normalizes_record(self, gateway, rentcast):
        """Test the property DTO"""
        rentcast.json("/properties/p1", property_payload("p1"))

        result = await gateway.fetch_property("p1")

        assert isinstance(result, PropertyDTO)
        assert result.provider_id == "p1"
        assert result.owner_name == "Jane Doe"
        assert result.is_absentee is True
        assert result.mailing_address == "9 Elm St, Dallas, TX 75201"
        assert result.equity_percent == 25.0
        assert result.last_sale_date.isoformat() == "2019-06-01"

    @pytest.mark.asyncio
    async def test_cache_hit_avoids_provider_call(self, gateway, rentcast):
        """Test that a repeated request within TTL is served from cache"""
        rentcast.json("/properties/p1", property_payload("p1"))

        first = await gateway.fetch_property("p1")
        second = await gateway.fetch_property("p1")

        assert first == second
        assert len(rentcast.calls("/properties/p1")) == 1

        recent = await gateway.get_recent_requests()
        assert [e.cache_hit for e in recent] == [True, False]
        assert recent[0].cost_units == 0
        assert recent[1].cost_units == 1
        assert (await gateway.get_quota_status()).used == 1

    @pytest.mark.asyncio
    async def test_quota_exhaustion_blocks_provider(self, gateway, rentcast):
        """Test that call 101 on a 100 unit allowance never reaches the provider"""
        for i in range(101):
            rentcast.json(f"/properties/p{i}", property_payload(f"p{i}"))

        for i in range(100):
            await gateway.fetch_property(f"p{i}")

        with pytest.raises(QuotaExceededError) as exc_info:
            await gateway.fetch_property("p100")

        assert exc_info.value.used == 100
        assert exc_info.value.limit == 100
        assert len(rentcast.requests) == 100
        assert rentcast.calls("/properties/p100") == []

        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.outcome == RequestOutcome.QUOTA_EXCEEDED
        assert latest.attempts == 0

    @pytest.mark.asyncio
    async def test_local_rate_limit_rejects_without_provider_call(self, factory, rentcast):
        """Test admission control"""
        gateway = factory.create_gateway("acct-2", quota_limit=100, rate_limits={Priority.STANDARD: 2})
        for i in range(3):
            rentcast.json(f"/properties/p{i}", property_payload(f"p{i}"))

        await gateway.fetch_property("p0")
        await gateway.fetch_property("p1")
        with pytest.raises(RateLimitError) as exc_info:
            await gateway.fetch_property("p2")

        assert exc_info.value.limit_type == "local:standard"
        assert 0 <= exc_info.value.retry_after <= 60
        assert rentcast.calls("/properties/p2") == []
        # A rejected call keeps its quota reservation
        assert (await gateway.get_quota_status()).used == 3

    @pytest.mark.asyncio
    async def test_provider_429_waits_retry_after(self, gateway, rentcast, sleeper):
        """Test that Retry-After: 5 delays the retry by five seconds"""
        rentcast.add(
            "/properties/p1",
            httpx.Response(429, json={"message": "slow down"}, headers={"Retry-After": "5"}),
            httpx.Response(200, json=property_payload("p1")),
        )

        result = await gateway.fetch_property("p1")

        assert result.provider_id == "p1"
        assert sleeper.calls == [5.0]
        assert len(rentcast.calls("/properties/p1")) == 2

        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.attempts == 2
        assert latest.cost_units == 2
        assert (await gateway.get_quota_status()).used == 2

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, gateway, rentcast, sleeper):
        """Test that a persistently failing provider surfaces its error"""
        rentcast.add("/properties/p1", httpx.Response(503, text="unavailable"))

        with pytest.raises(ProviderError) as exc_info:
            await gateway.fetch_property("p1")

        assert exc_info.value.status_code == 503
        assert len(rentcast.calls("/properties/p1")) == 3
        assert len(sleeper.calls) == 2

        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.outcome == RequestOutcome.PROVIDER_ERROR
        assert latest.attempts == 3

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_not_cached(self, gateway, rentcast):
        """Test that an unexpected payload raises SchemaError every time"""
        rentcast.json("/properties/p1", {"id": "p1", "bedrooms": "many"})

        with pytest.raises(SchemaError) as exc_info:
            await gateway.fetch_property("p1")
        with pytest.raises(SchemaError):
            await gateway.fetch_property("p1")

        assert any("formattedAddress" in e for e in exc_info.value.errors)
        assert len(rentcast.calls("/properties/p1")) == 2

        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.outcome == RequestOutcome.SCHEMA_ERROR

    @pytest.mark.asyncio
    async def test_not_found(self, gateway, rentcast):
        """Test that unknown properties are not retried"""
        with pytest.raises(NotFoundError):
            await gateway.fetch_property("missing")

        assert len(rentcast.calls("/properties/missing")) == 1
        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.outcome == RequestOutcome.NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("property_id", ["", "   ", "a/b", "a?b", "x" * 257])
    async def test_invalid_property_id_is_rejected_locally(self, gateway, rentcast, property_id):
        """Test that malformed input reaches neither the provider nor the counters"""
        with pytest.raises(ValidationError):
            await gateway.fetch_property(property_id)

        assert rentcast.requests == []
        assert await gateway.get_recent_requests() == []
        assert (await gateway.get_quota_status()).used == 0

    @pytest.mark.asyncio
    async def test_non_positive_timeout_is_rejected(self, gateway):
        with pytest.raises(ValidationError) as exc_info:
            await gateway.fetch_property("p1", timeout=0)

        assert exc_info.value.field == "timeout"

    @pytest.mark.asyncio
    async def test_deadline_is_enforced(self, gateway, rentcast):
        """Test that a slow provider surfaces as a gateway timeout"""

        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=property_payload("p1"))

        rentcast.add("/properties/p1", slow)

        with pytest.raises(GatewayTimeoutError):
            await gateway.fetch_property("p1", timeout=0.05)

        [latest] = await gateway.get_recent_requests(limit=1)
        assert latest.outcome == RequestOutcome.TIMEOUT

    @pytest.mark.asyncio
    async def test_deadline_covers_counter_store_calls(self, gateway, rentcast, monkeypatch):
        """Test that a stalled cache lookup cannot outlive the caller's deadline"""

        async def stalled_get(endpoint, params):
            await asyncio.sleep(1)

        monkeypatch.setattr(gateway.pipeline.cache, "get", stalled_get)

        start = time.perf_counter()
        with pytest.raises(GatewayTimeoutError):
            await gateway.fetch_property("p1", timeout=0.05)

        assert time.perf_counter() - start < 0.5
        assert rentcast.requests == []
        [entry] = await gateway.get_recent_requests()
        assert entry.outcome == RequestOutcome.TIMEOUT
        assert entry.cost_units == 0

    @pytest.mark.asyncio
    async def test_fetch_valuation_resolves_address(self, gateway, rentcast):
        """Test that the valuation is requested for the property's address"""
        rentcast.json("/properties/p1", property_payload("p1"))
        rentcast.json("/avm/value", VALUATION_PAYLOAD)

        valuation = await gateway.fetch_valuation("p1")
        again = await gateway.fetch_valuation("p1")

        assert isinstance(valuation, ValuationDTO)
        assert valuation.property_id == "p1"
        assert valuation.estimated_value == 410000
        assert valuation.comparable_count == 2
        assert again.estimated_value == valuation.estimated_value

        [request] = rentcast.calls("/avm/value")
        assert request.url.params["address"] == "p1 Main St, Austin, TX 78701"
        assert len(rentcast.calls("/properties/p1")) == 1

        recent = await gateway.get_recent_requests()
        assert [e.endpoint for e in recent] == [
            "fetch_valuation",
            "fetch_property",
            "fetch_valuation",
            "fetch_property",
        ]

    @pytest.mark.asyncio
    async def test_fetch_rent_estimate(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1"))
        rentcast.json("/avm/rent/long-term", RENT_PAYLOAD)

        estimate = await gateway.fetch_rent_estimate("p1")

        assert estimate.rent_estimate == 2400
        assert estimate.rent_range_low == 2200

    @pytest.mark.asyncio
    async def test_search_listings(self, gateway, rentcast):
        """Test listing search with dict criteria and caching of lists"""
        rentcast.json("/listings/sale", LISTINGS_PAYLOAD)

        listings = await gateway.search_listings({"city": "Austin", "state": "tx"})
        cached = await gateway.search_listings({"city": "Austin", "state": "TX"})

        assert [item.provider_id for item in listings] == ["l1", "l2"]
        assert all(isinstance(item, ListingDTO) for item in cached)
        assert cached == listings

        [request] = rentcast.calls("/listings/sale")
        assert request.url.params["state"] == "TX"
        assert request.url.params["limit"] == "50"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "criteria,field",
        [
            ({"city": "Austin", "zip_code": "7870"}, "zip_code"),
            ({"city": "Austin", "radius": 5}, "radius"),
            ({"city": "Austin", "price_min": 500, "price_max": 100}, None),
            ({}, None),
        ],
    )
    async def test_invalid_search_criteria(self, gateway, rentcast, criteria, field):
        with pytest.raises(ValidationError) as exc_info:
            await gateway.search_listings(criteria)

        assert exc_info.value.field == field
        assert rentcast.requests == []

    @pytest.mark.asyncio
    async def test_market_data_cached_for_thirty_minutes(self, gateway, rentcast, redis):
        """Test the MARKET_DATA TTL"""
        rentcast.json("/markets", MARKET_PAYLOAD)

        market = await gateway.fetch_market_data("78701")

        assert market.zip_code == "78701"
        assert market.inventory_count == 140
        key = gateway.pipeline.cache.generate_key("fetch_market_data", {"zip_code": "78701"})
        assert 1790 < await redis.ttl(key) <= 1800

    @pytest.mark.asyncio
    @pytest.mark.parametrize("zip_code", ["7870", "787011", "abcde", ""])
    async def test_invalid_zip_code(self, gateway, rentcast, zip_code):
        with pytest.raises(ValidationError):
            await gateway.fetch_market_data(zip_code)

        assert rentcast.requests == []

    @pytest.mark.asyncio
    async def test_one_log_entry_per_invocation(self, gateway, rentcast):
        """Test that every terminal state is logged exactly once"""
        rentcast.json("/properties/p1", property_payload("p1"))

        await gateway.fetch_property("p1")
        await gateway.fetch_property("p1")
        with pytest.raises(NotFoundError):
            await gateway.fetch_property("p2")

        metrics = await gateway.get_usage_metrics(3600)

        assert metrics.total_requests == 3
        assert metrics.by_outcome == {"success": 2, "not_found": 1}
        assert metrics.cache_hit_rate == round(1 / 3, 4)
        assert metrics.cost_units == 2

    @pytest.mark.asyncio
    async def test_rate_limit_status(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1"))
        await gateway.fetch_property("p1", priority=Priority.INTERACTIVE)

        status = await gateway.get_rate_limit_status()

        assert status["interactive"].remaining == 999
        assert status["standard"].remaining == 1000

    @pytest.mark.asyncio
    async def test_provider_rate_limit_status(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1"))
        await gateway.fetch_property("p1")

        status = await gateway.get_provider_rate_limit_status()

        assert status["fetch_property"].remaining == 99
        assert status["fetch_valuation"].limit == 50


class TestEnrichment:
    @pytest.fixture
    def gateway(self, factory):
        return factory.create_gateway("acct-1", quota_limit=100, rate_limits=HIGH_LIMITS)

    @pytest.mark.asyncio
    async def test_all_stages_complete(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1"))
        rentcast.json("/avm/value", VALUATION_PAYLOAD)
        rentcast.json("/avm/rent/long-term", RENT_PAYLOAD)
        rentcast.json("/markets", MARKET_PAYLOAD)

        result = await gateway.enrich_property("p1")

        assert result.status == EnrichmentStatus.COMPLETE
        assert result.errors == []
        assert result.property.provider_id == "p1"
        assert result.valuation.estimated_value == 410000
        assert result.rent_estimate.rent_estimate == 2400
        assert result.market_data.zip_code == "78701"
        assert result.completed_stages == [
            EnrichmentStage.VALUATION,
            EnrichmentStage.RENT_ESTIMATE,
            EnrichmentStage.MARKET,
        ]
        [market_request] = rentcast.calls("/markets")
        assert market_request.url.params["zipCode"] == "78701"

    @pytest.mark.asyncio
    async def test_failed_stage_yields_partial_result(self, gateway, rentcast):
        """Test that one failing stage does not discard the others"""
        rentcast.json("/properties/p1", property_payload("p1"))
        rentcast.json("/avm/rent/long-term", RENT_PAYLOAD)
        rentcast.json("/markets", MARKET_PAYLOAD)

        result = await gateway.enrich_property("p1")

        assert result.status == EnrichmentStatus.PARTIAL
        assert result.valuation is None
        assert result.rent_estimate is not None
        assert result.market_data is not None
        assert len(result.errors) == 1
        assert result.errors[0].startswith("valuation: ")

    @pytest.mark.asyncio
    async def test_requested_stages_only(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1", zipCode="78701-1234"))
        rentcast.json("/markets", MARKET_PAYLOAD)

        result = await gateway.enrich_property("p1", stages=[EnrichmentStage.MARKET])

        assert result.status == EnrichmentStatus.COMPLETE
        assert result.requested_stages == [EnrichmentStage.MARKET]
        assert rentcast.calls("/avm/value") == []
        [market_request] = rentcast.calls("/markets")
        assert market_request.url.params["zipCode"] == "78701"

    @pytest.mark.asyncio
    async def test_missing_zip_code_fails_market_stage(self, gateway, rentcast):
        rentcast.json("/properties/p1", property_payload("p1", zipCode=None))

        result = await gateway.enrich_property("p1", stages=["market"])

        assert result.status == EnrichmentStatus.NONE
        assert result.errors == ["market: property has no zip code"]
        assert rentcast.calls("/markets") == []

    @pytest.mark.asyncio
    async def test_missing_property_propagates(self, gateway, rentcast):
        with pytest.raises(NotFoundError):
            await gateway.enrich_property("p1")

        assert rentcast.calls("/avm/value") == []

    @pytest.mark.asyncio
    async def test_unknown_stage_is_rejected(self, gateway, rentcast):
        with pytest.raises(ValidationError) as exc_info:
            await gateway.enrich_property("p1", stages=["photos"])

        assert exc_info.value.field == "stages"
        assert rentcast.requests == []

    @pytest.mark.asyncio
    async def test_spent_deadline_skips_remaining_stages(self, gateway, rentcast):
        async def slow_valuation(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json=VALUATION_PAYLOAD)

        rentcast.json("/properties/p1", property_payload("p1"))
        rentcast.add("/avm/value", slow_valuation)
        rentcast.json("/avm/rent/long-term", RENT_PAYLOAD)

        result = await gateway.enrich_property(
            "p1", stages=[EnrichmentStage.VALUATION, EnrichmentStage.RENT_ESTIMATE], timeout=0.2
        )

        assert result.status == EnrichmentStatus.NONE
        assert result.errors[0].startswith("valuation: ")
        assert result.errors[1] == "rent_estimate: deadline exceeded"
        assert rentcast.calls("/avm/rent/long-term") == []


class TestGatewayFactory:
    @pytest.mark.asyncio
    async def test_gateways_are_cached_per_account(self, factory):
        first = factory.create_gateway("acct-1")
        second = factory.create_gateway("acct-1")
        other = factory.create_gateway("acct-2")

        assert first is second
        assert first is not other
        assert factory.create_gateway("acct-1", use_cache=False) is not first

    @pytest.mark.asyncio
    async def test_accounts_are_isolated(self, factory, rentcast):
        """Test that quota and cache are scoped by account"""
        rentcast.json("/properties/p1", property_payload("p1"))
        first = factory.create_gateway("acct-1", quota_limit=1, rate_limits=HIGH_LIMITS)
        second = factory.create_gateway("acct-2", quota_limit=1, rate_limits=HIGH_LIMITS)

        await first.fetch_property("p1")
        await second.fetch_property("p1")

        assert len(rentcast.calls("/properties/p1")) == 2
        assert (await first.get_quota_status()).used == 1
        assert (await second.get_quota_status()).used == 1

    def test_requires_account(self):
        factory = GatewayFactory(redis=object(), http_client=object(), api_key="k")
        with pytest.raises(ValueError):
            factory.create_gateway("")

    @pytest.mark.asyncio
    async def test_explicit_tier_replaces_cached_gateway(self, factory):
        """Test that the first caller does not pin the account's limits"""
        default = factory.create_gateway("acct-x")
        pro = factory.create_gateway("acct-x", tier=QuotaTier.PRO)

        status = await pro.get_quota_status()
        assert pro is not default
        assert status.tier == QuotaTier.PRO
        assert status.limit == 25_000
        assert factory.create_gateway("acct-x") is pro
        assert factory.create_gateway("acct-x", tier=QuotaTier.PRO) is pro

    @pytest.mark.asyncio
    async def test_tier_comes_from_account_settings(self, factory):
        factory.settings = Settings(account_tiers={"acct-big": "enterprise"})

        status = await factory.create_gateway("acct-big").get_quota_status()
        other = await factory.create_gateway("acct-small").get_quota_status()

        assert status.tier == QuotaTier.ENTERPRISE
        assert status.limit == 100_000
        assert other.tier == QuotaTier(factory.settings.quota_tier)

    @pytest.mark.asyncio
    async def test_gateway_cache_is_bounded(self, redis, rentcast):
        """Test least recently used eviction"""
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(rentcast))
        factory = GatewayFactory(redis=redis, http_client=http_client, api_key=API_KEY, max_gateways=2)

        first = factory.create_gateway("acct-1")
        second = factory.create_gateway("acct-2")
        assert factory.create_gateway("acct-1") is first
        factory.create_gateway("acct-3")

        assert len(factory._gateways) == 2
        assert factory.create_gateway("acct-1") is first
        assert factory.create_gateway("acct-2") is not second

        await factory.close()
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_provider_window_is_shared_by_accounts(self, redis, rentcast, sleeper):
        """Test that tenants together cannot exceed the provider's rate"""
        for property_id in ("p1", "p2", "p3"):
            rentcast.json(f"/properties/{property_id}", property_payload(property_id))
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(rentcast))
        factory = GatewayFactory(
            redis=redis,
            http_client=http_client,
            retry=RetryController(sleep=sleeper),
            api_key=API_KEY,
            provider_limits={"fetch_property": 2},
        )
        first = factory.create_gateway("acct-1", rate_limits=HIGH_LIMITS)
        second = factory.create_gateway("acct-2", rate_limits=HIGH_LIMITS)

        await first.fetch_property("p1")
        await second.fetch_property("p2")
        with pytest.raises(RateLimitError) as exc_info:
            await first.fetch_property("p3")

        assert exc_info.value.limit_type == "provider:fetch_property"
        assert len(rentcast.requests) == 2
        [entry] = await first.get_recent_requests(limit=1)
        assert entry.outcome == RequestOutcome.RATE_LIMITED

        await factory.close()
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_owned_redis_has_socket_timeouts(self, rentcast):
        """Test that a stalled counter store cannot block a call indefinitely"""
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(rentcast))
        factory = GatewayFactory(http_client=http_client, api_key=API_KEY)

        kwargs = factory.redis.connection_pool.connection_kwargs
        assert kwargs["socket_timeout"] == factory.settings.redis_socket_timeout
        assert kwargs["socket_connect_timeout"] == factory.settings.redis_connect_timeout

        await factory.close()
        await http_client.aclose()
