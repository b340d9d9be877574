"""
Shared test configuration for provider gateway tests
"""
import fakeredis
import fakeredis.aioredis
import httpx
import pytest
from prometheus_client import REGISTRY

from provider_gateway.factory import GatewayFactory
from provider_gateway.metrics import GatewayMetrics
from provider_gateway.retry import RetryController
from tests.unit.provider_gateway.fakes import API_KEY, FakeRentCast, RecordingSleep


@pytest.fixture(autouse=True)
def cleanup_prometheus_registry():
    """Clear Prometheus registry and the metrics singleton around each test"""

    def clear():
        collectors = list(REGISTRY._collector_to_names.keys())
        for collector in collectors:
            try:
                REGISTRY.unregister(collector)
            except KeyError:
                pass
        GatewayMetrics._instance = None
        GatewayMetrics._initialized = False

    clear()
    yield
    clear()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis(redis_server):
    """Async fake Redis with Lua support"""
    client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def rentcast():
    return FakeRentCast()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
async def factory(redis, rentcast, sleeper):
    """Gateway factory wired to fake Redis and a fake provider"""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(rentcast))
    gateway_factory = GatewayFactory(
        redis=redis,
        http_client=http_client,
        retry=RetryController(sleep=sleeper),
        api_key=API_KEY,
    )
    yield gateway_factory
    await gateway_factory.close()
    await http_client.aclose()
