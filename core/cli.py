"""
Command-line interface for RealtyFlow
"""
import asyncio
import json

import click
from redis.exceptions import RedisError

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import get_logger
from provider_gateway.factory import GatewayFactory

logger = get_logger(__name__)


async def _run_with_gateway(account_id: str, action):
    factory = GatewayFactory()
    try:
        gateway = factory.create_gateway(account_id)
        return await action(gateway)
    finally:
        await factory.close()


def _run(account_id: str, action):
    """Run an action against the account's gateway, failing cleanly when Redis is down"""
    try:
        return asyncio.run(_run_with_gateway(account_id, action))
    except (RedisError, OSError) as e:
        logger.error(f"Counter store unavailable: {e}")
        raise click.ClickException(f"Counter store unavailable: {e}")


@click.group()
@click.version_option(version=settings.app_version)
def cli():
    """RealtyFlow CLI - property data gateway administration"""
    pass


@cli.command()
@click.option("--account", "account_id", required=True, help="Account to inspect")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def quota(account_id: str, as_json: bool):
    """Show quota consumption for the current period"""

    async def action(gateway):
        return await gateway.get_quota_status()

    status = _run(account_id, action)

    if as_json:
        click.echo(json.dumps({"account_id": account_id, **status.to_dict()}))
        return

    click.echo(f"Account: {account_id}")
    click.echo(f"Tier: {status.tier.value}")
    click.echo(f"Period: {status.period_start:%Y-%m-%d} to {status.period_end:%Y-%m-%d}")
    click.echo(f"Used: {status.used}/{status.limit} ({status.percent_used}%)")
    click.echo(f"Remaining: {status.remaining}")


@cli.command("quota-usage")
@click.option("--account", "account_id", required=True, help="Account to inspect")
@click.option("--days", default=7, type=click.IntRange(min=1, max=7), help="Days of daily counts")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def quota_usage(account_id: str, days: int, as_json: bool):
    """Show units charged this period by day and by endpoint"""

    async def action(gateway):
        return await gateway.get_quota_usage_breakdown(days)

    breakdown = _run(account_id, action)

    if as_json:
        click.echo(json.dumps({"account_id": account_id, **breakdown.to_dict()}))
        return

    click.echo(f"Account: {account_id}")
    click.echo(f"Period {breakdown.period}: {breakdown.monthly} units")
    click.echo("Daily:")
    for day, units in breakdown.daily.items():
        click.echo(f"  {day}: {units}")
    click.echo("By endpoint:")
    for endpoint, units in breakdown.by_endpoint.items():
        click.echo(f"  {endpoint}: {units}")


@cli.command()
@click.option("--account", "account_id", required=True, help="Account to inspect")
@click.option("--window", default=3600, type=click.IntRange(min=1), help="Window in seconds")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def usage(account_id: str, window: int, as_json: bool):
    """Show provider usage over a time window"""

    async def action(gateway):
        return await gateway.get_usage_metrics(window)

    metrics = _run(account_id, action)

    if as_json:
        click.echo(metrics.model_dump_json())
        return

    click.echo(f"Account: {account_id} (last {window}s)")
    click.echo(f"Requests: {metrics.total_requests}")
    click.echo(f"Cache hit rate: {metrics.cache_hit_rate:.1%}")
    click.echo(f"Error rate: {metrics.error_rate:.1%}")
    click.echo(f"Latency p50/p95: {metrics.p50_latency_ms:.0f}ms / {metrics.p95_latency_ms:.0f}ms")
    click.echo(f"Cost units: {metrics.cost_units}")
    for endpoint, count in sorted(metrics.by_endpoint.items()):
        click.echo(f"  {endpoint}: {count}")


@cli.command()
def check_api():
    """Check provider API configuration"""
    click.echo("Checking rentcast API configuration...")

    try:
        api_key = settings.get_api_key("rentcast")
    except ConfigurationError as e:
        click.echo(f"✗ {e.message}", err=True)
        raise SystemExit(1)

    masked_key = api_key[:4] + "..." if len(api_key) > 4 else "***"
    click.echo(f"✓ API key configured: {masked_key}")
    click.echo(f"✓ Base URL: {settings.rentcast_base_url}")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
def runserver(host: str, port: int, reload: bool):
    """Run the gateway admin API server"""
    import uvicorn

    click.echo(f"Starting RealtyFlow gateway API on {host}:{port}")
    click.echo(f"Environment: {settings.environment}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
def env_info():
    """Display environment information"""
    click.echo(f"RealtyFlow v{settings.app_version}")
    click.echo(f"Environment: {settings.environment}")
    click.echo(f"Redis: {settings.redis_url}")
    click.echo(f"Quota tier: {settings.quota_tier}")
    click.echo(
        f"Rate limits per {settings.rate_limit_window_seconds}s: "
        f"background={settings.rate_limit_background} "
        f"standard={settings.rate_limit_standard} "
        f"interactive={settings.rate_limit_interactive}"
    )
    click.echo(
        f"Provider limit per endpoint: {settings.rate_limit_provider_default} "
        f"(overrides: {settings.rate_limit_provider_endpoints})"
    )


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
