"""
Main entry point for MarketPulse
Provides CLI commands over the market data resolver
"""

import asyncio
import sys

import click

from marketpulse.config.settings import get_config
from marketpulse.orchestration.resolver import MarketDataResolver, create_resolver
from marketpulse.utils.errors import MarketDataError
from marketpulse.utils.logger import get_logger

logger = get_logger(__name__)


def _fmt(value, spec=".2f", default="n/a"):
    return format(value, spec) if value is not None else default


def _stale_marker(resolved) -> str:
    return " ⚠️ stale" if resolved.is_stale else ""


async def _with_resolver(action):
    resolver = create_resolver()
    resolver.start()
    try:
        return await action(resolver)
    finally:
        await resolver.close()


def _run(action):
    try:
        asyncio.run(_with_resolver(action))
    except MarketDataError as e:
        logger.error(f"Command failed: {e}")
        click.echo(f"\n❌ {e.message}")
        sys.exit(1)


@click.group()
def cli():
    """MarketPulse market data CLI"""
    pass


@cli.command()
def status():
    """Check configuration and provider keys"""
    config = get_config()
    logger.info("MarketPulse status check")

    click.echo("\n📋 Configuration:")
    click.echo(f"  • Log Level: {config.system.log_level}")
    click.echo(f"  • Database: {config.system.database_path}")
    redis = config.cache.build_redis_url() if config.cache.enable_redis else "disabled"
    click.echo(f"  • Redis: {redis}")
    click.echo(f"  • Cache: {config.cache.max_entries} entries, default TTL {config.cache.default_ttl}s")

    click.echo("\n🔑 Provider Keys:")
    pools = [
        ("Alpha Vantage", config.api.alpha_vantage_keys),
        ("Twelve Data", config.api.twelve_data_keys),
        ("Finnhub", config.api.finnhub_keys),
    ]
    for name, keys in pools:
        state = f"✅ {len(keys)} key(s)" if keys else "❌ Missing"
        click.echo(f"  • {name}: {state}")
    yahoo = "✅ Enabled" if config.api.enable_yahoo_finance else "❌ Disabled"
    click.echo(f"  • Yahoo Finance: {yahoo}")

    click.echo("\n🛡️ Reliability:")
    rel = config.reliability
    click.echo(f"  • Key rotation after {rel.key_rotation_threshold} rate limits, cooldown {rel.key_cooldown_seconds:.0f}s")
    click.echo(f"  • Circuit opens after {rel.circuit_failure_threshold} failures for {rel.circuit_recovery_seconds:.0f}s")
    click.echo(f"  • Retries: {rel.retry_max_retries} (base {rel.retry_base_delay}s, max {rel.retry_max_delay}s)")


@cli.command()
@click.argument('symbols', nargs=-1, required=True)
@click.option('--refresh', is_flag=True, help='Bypass cache and stored data')
def quote(symbols, refresh):
    """Latest price for one or more SYMBOLS"""

    async def action(resolver: MarketDataResolver):
        response = await resolver.get_batch_quotes(list(symbols), force_refresh=refresh)
        click.echo(f"\n💹 Quotes ({response.from_cache} cached, {response.from_api} fetched):")
        for symbol, price in response.data.items():
            change = _fmt(price.change_percent)
            click.echo(f"  • {symbol}: {_fmt(price.price)} ({change}%) via {price.source}")
        for error in response.errors:
            click.echo(f"  • {error['symbol']}: ❌ {error['error']}")

    _run(action)


@cli.command()
@click.argument('symbol')
@click.option('--refresh', is_flag=True, help='Bypass cache and stored data')
def asset(symbol, refresh):
    """Asset details for SYMBOL"""

    async def action(resolver: MarketDataResolver):
        resolved = await resolver.get_asset(symbol, force_refresh=refresh)
        item = resolved.data
        click.echo(f"\n🏢 {item.symbol} - {item.name}{_stale_marker(resolved)}")
        click.echo(f"  • Type: {item.asset_type}")
        click.echo(f"  • Exchange: {item.exchange or 'n/a'}")
        click.echo(f"  • Currency: {item.currency}")
        if item.sector:
            click.echo(f"  • Sector: {item.sector}")
        if item.market_cap:
            click.echo(f"  • Market Cap: {item.market_cap:,.0f}")
        click.echo(f"  • Source: {resolved.source or item.source} ({resolved.origin.value})")

    _run(action)


@cli.command()
@click.argument('symbol')
@click.option('--period', default='1y', help='1d, 5d, 1mo, 3mo, 6mo, 1y, 2y, 5y, 10y, ytd, max')
@click.option('--interval', default='1d', help='Bar interval, e.g. 1d, 1wk, 1h')
@click.option('--tail', default=5, help='Number of most recent bars to print')
def history(symbol, period, interval, tail):
    """Historical bars for SYMBOL"""

    async def action(resolver: MarketDataResolver):
        resolved = await resolver.get_historical(symbol, period, interval)
        series = resolved.data
        click.echo(
            f"\n📈 {series.symbol} {series.period}/{series.interval}: "
            f"{len(series.bars)} bars via {series.source}{_stale_marker(resolved)}"
        )
        for bar in series.bars[-tail:]:
            click.echo(
                f"  • {bar.timestamp:%Y-%m-%d %H:%M} O {_fmt(bar.open)} H {_fmt(bar.high)} "
                f"L {_fmt(bar.low)} C {_fmt(bar.close)} V {bar.volume}"
            )

    _run(action)


@cli.command()
@click.argument('query')
@click.option('--limit', default=20, help='Maximum results')
def search(query, limit):
    """Search assets by symbol or name"""

    async def action(resolver: MarketDataResolver):
        resolved = await resolver.search_assets(query, limit=limit)
        click.echo(f"\n🔍 {len(resolved.data)} result(s) for '{query}'{_stale_marker(resolved)}:")
        for item in resolved.data:
            click.echo(f"  • {item.symbol}: {item.name} [{item.asset_type}] {item.exchange or ''}")

    _run(action)


@cli.command()
def health():
    """Provider, circuit and cache health"""

    async def action(resolver: MarketDataResolver):
        report = await resolver.get_health_status()
        emoji = {"healthy": "🟢", "degraded": "🟡"}.get(report['status'], "🔴")
        click.echo(f"\n{emoji} Overall: {report['status']}")

        cache = report['cache']
        click.echo(f"\n🗄️ Cache: {cache['status']} (redis {cache['redis']['status']}, "
                   f"{cache['memory']['key_count']} keys in memory)")

        click.echo("\n🌐 Providers:")
        for name, info in report['providers'].items():
            state = "✅" if info['healthy'] else "❌"
            circuit = (info['circuit'] or {}).get('state', 'n/a')
            line = f"  • {name}: {state} circuit {circuit}"
            keys = info['keys']
            if keys:
                line += f", {keys['active_keys']}/{keys['total_keys']} keys active"
            click.echo(line)

        quota = report.get('quota') or {}
        if quota:
            click.echo("\n📊 Local request budget:")
            for name, windows in quota.items():
                usage = ", ".join(
                    f"{w['used']}/{w['limit']} per {period}" for period, w in windows.items()
                )
                click.echo(f"  • {name}: {usage}")

    _run(action)


@cli.command('clear-cache')
@click.option('--pattern', default=None, help='Glob pattern, e.g. "price:*"')
def clear_cache(pattern):
    """Clear cached market data"""

    async def action(resolver: MarketDataResolver):
        removed = await resolver.clear_cache(pattern)
        if pattern:
            click.echo(f"🧹 Removed {removed} key(s) matching {pattern}")
        else:
            click.echo("🧹 Cache flushed")

    _run(action)


if __name__ == "__main__":
    cli()
