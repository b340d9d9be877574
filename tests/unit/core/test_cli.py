"""
Tests for the RealtyFlow command-line interface
"""
import json
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import fakeredis.aioredis
import httpx
import pytest
from click.testing import CliRunner
from redis.exceptions import ConnectionError as RedisConnectionError

import core.cli as cli_module
from core.cli import cli
from provider_gateway.factory import GatewayFactory
from provider_gateway.types import RequestOutcome
from provider_gateway.usage import RequestLogEntry
from tests.unit.provider_gateway.fakes import API_KEY, FakeRentCast

pytestmark = pytest.mark.unit


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def seed(server):
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture(autouse=True)
def fake_factory(monkeypatch, server):
    """Point the CLI at fake Redis and a fake provider"""

    def build():
        return GatewayFactory(
            redis=fakeredis.aioredis.FakeRedis(server=server, decode_responses=True),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(FakeRentCast())),
            api_key=API_KEY,
        )

    monkeypatch.setattr(cli_module, "GatewayFactory", build)


@pytest.fixture
def runner():
    return CliRunner()


class TestQuotaCommand:
    def test_quota_text(self, runner, seed):
        period = datetime.now(timezone.utc).strftime("%Y%m")
        seed.set(f"quota:acct-1:{period}", 1250)

        result = runner.invoke(cli, ["quota", "--account", "acct-1"])

        assert result.exit_code == 0, result.output
        assert "Tier: standard" in result.output
        assert "Used: 1250/5000 (25.0%)" in result.output
        assert "Remaining: 3750" in result.output

    def test_quota_json(self, runner):
        result = runner.invoke(cli, ["quota", "--account", "acct-1", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["account_id"] == "acct-1"
        assert data["used"] == 0

    def test_quota_requires_account(self, runner):
        result = runner.invoke(cli, ["quota"])
        assert result.exit_code == 2


class TestQuotaUsageCommand:
    def test_quota_usage_text(self, runner, seed):
        now = datetime.now(timezone.utc)
        period = now.strftime("%Y%m")
        seed.set(f"quota:acct-1:{period}", 7)
        seed.set(f"quota_daily:acct-1:{now:%Y-%m-%d}", 3)
        seed.hset(f"quota_endpoints:acct-1:{period}", mapping={"fetch_property": 5, "fetch_market_data": 2})

        result = runner.invoke(cli, ["quota-usage", "--account", "acct-1", "--days", "2"])

        assert result.exit_code == 0, result.output
        assert f"Period {period}: 7 units" in result.output
        assert f"  {now:%Y-%m-%d}: 3" in result.output
        assert "  fetch_property: 5" in result.output
        assert "  fetch_market_data: 2" in result.output

    def test_quota_usage_json(self, runner):
        result = runner.invoke(cli, ["quota-usage", "--account", "acct-1", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["monthly"] == 0
        assert len(data["daily"]) == 7
        assert data["by_endpoint"] == {}

    def test_quota_usage_rejects_bad_days(self, runner):
        result = runner.invoke(cli, ["quota-usage", "--account", "acct-1", "--days", "8"])
        assert result.exit_code == 2


class TestUsageCommand:
    def test_usage(self, runner, seed):
        entry = RequestLogEntry(
            account_id="acct-1",
            endpoint="search_listings",
            outcome=RequestOutcome.SUCCESS,
            latency_ms=42.0,
            cost_units=1,
            attempts=1,
        )
        seed.zadd("usage:acct-1:requests", {entry.model_dump_json(): time.time()})

        result = runner.invoke(cli, ["usage", "--account", "acct-1", "--window", "600"])

        assert result.exit_code == 0, result.output
        assert "Requests: 1" in result.output
        assert "Cost units: 1" in result.output
        assert "search_listings: 1" in result.output

    def test_usage_json(self, runner):
        result = runner.invoke(cli, ["usage", "--account", "acct-1", "--json"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["total_requests"] == 0

    def test_usage_rejects_bad_window(self, runner):
        result = runner.invoke(cli, ["usage", "--account", "acct-1", "--window", "0"])
        assert result.exit_code == 2

    def test_usage_store_unavailable(self, runner, monkeypatch):
        """Test a clean error instead of a traceback when Redis is down"""
        broken = MagicMock()
        broken.zrangebyscore = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        monkeypatch.setattr(
            cli_module,
            "GatewayFactory",
            lambda: GatewayFactory(redis=broken, http_client=MagicMock(), api_key=API_KEY),
        )

        result = runner.invoke(cli, ["usage", "--account", "acct-1"])

        assert result.exit_code == 1
        assert "Counter store unavailable" in result.output
        assert "Traceback" not in result.output


class TestCheckApi:
    def test_configured_key(self, runner):
        result = runner.invoke(cli, ["check-api"])

        assert result.exit_code == 0
        assert "API key configured: test..." in result.output

    def test_missing_key(self, runner, monkeypatch):
        monkeypatch.setattr(cli_module.settings, "rentcast_api_key", None)

        result = runner.invoke(cli, ["check-api"])

        assert result.exit_code == 1


def test_env_info(runner):
    result = runner.invoke(cli, ["env-info"])

    assert result.exit_code == 0
    assert "Environment: test" in result.output
    assert "standard=60" in result.output
