import asyncio
import json
import sys
from pathlib import Path

import click

from .config import ConfigManager
from .errors import PyroThorError, ScanError
from .logging_config import setup_logging
from .rules.store import RuleStore
from .rules.sync import sync_from_directory
from .scanning.lifecycle import ScanLifecycle
from .scanning.models import ScanContext, ScanMode
from .scanning.platform import PlatformInfo, select_platform_hooks
from .scanning.transport import HttpxTransport


def _load(ctx):
    """Load configuration once per invocation and set up logging."""
    if 'pyro_config' not in ctx.obj:
        try:
            config = ConfigManager(ctx.obj['config']).get_config()
        except PyroThorError as e:
            raise click.ClickException(str(e))
        level = 'DEBUG' if ctx.obj['verbose'] else config.logging.level
        setup_logging(level, config.logging.file)
        ctx.obj['pyro_config'] = config
    return ctx.obj['pyro_config']


def _open_store(config):
    try:
        return RuleStore.open(config.store.path)
    except PyroThorError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--config', '-c', default='config.yaml', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config, verbose):
    """Thor YARA rules scanner for Pyro"""
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose


@cli.command()
@click.option('--path', '-p', 'scan_path', default='/', help='Path to scan')
@click.option('--output', '-o', default='scan_results.json', help='Output file for results')
@click.option('--store/--no-store', 'use_store', default=False, help='Attach the rule store')
@click.option('--redb-enabled', is_flag=True, hidden=True, help='Same as --store')
@click.option('--enterprise-mode', is_flag=True, help='Enable enterprise features')
@click.option('--scan-uuid', help='Unique scan identifier')
@click.pass_context
def scan(ctx, scan_path, output, use_store, redb_enabled, enterprise_mode, scan_uuid):
    """Run a THOR scan and save its JSON report"""
    config = _load(ctx)
    use_store = use_store or redb_enabled

    store = None
    if use_store:
        store = _open_store(config)
        rules_dir = Path(config.store.rules_dir)
        if rules_dir.is_dir():
            try:
                synced = sync_from_directory(store, rules_dir)
            except PyroThorError as e:
                raise click.ClickException(str(e))
            click.echo(f"Synced {synced} YARA rules to the rule store")

    platform = PlatformInfo.detect()
    lifecycle = ScanLifecycle(
        config,
        transport=HttpxTransport(),
        hooks=select_platform_hooks(platform),
        platform=platform,
    )
    context_args = {
        'scan_path': Path(scan_path),
        'output_path': Path(output),
        'mode': ScanMode.ENTERPRISE if enterprise_mode else ScanMode.STANDARD,
        'store': store,
    }
    if scan_uuid:
        context_args['scan_id'] = scan_uuid
    context = ScanContext(**context_args)

    try:
        outcome = asyncio.run(lifecycle.run(context))
    except ScanError as e:
        click.echo(f"Scan failed: {e}", err=True)
        if e.retryable:
            click.echo("This error may be transient; retrying could succeed.", err=True)
        sys.exit(1)

    click.echo("Scan completed successfully")
    click.echo(f"Scan UUID: {outcome.scan_id}")
    click.echo(f"Results: {outcome.output_path}")
    if outcome.duration_seconds is not None:
        click.echo(f"Duration: {outcome.duration_seconds:.1f}s")
    if outcome.publish_error:
        click.echo(f"Warning: results were not uploaded: {outcome.publish_error}", err=True)


@cli.group()
def rules():
    """Rule store management"""
    pass


@rules.command()
@click.argument('directory', required=False)
@click.pass_context
def sync(ctx, directory):
    """Import rule files from DIRECTORY (default: store.rules_dir)"""
    config = _load(ctx)
    store = _open_store(config)
    directory = directory or config.store.rules_dir
    try:
        synced = sync_from_directory(store, directory)
    except PyroThorError as e:
        raise click.ClickException(str(e))
    click.echo(f"Synced {synced} YARA rules from {directory}")


@rules.command()
@click.pass_context
def stats(ctx):
    """Show rule store statistics"""
    config = _load(ctx)
    try:
        store_stats = _open_store(config).stats()
    except PyroThorError as e:
        raise click.ClickException(str(e))
    click.echo(f"Store: {store_stats.store_path}")
    click.echo(f"Rules: {store_stats.rules_count}")
    click.echo(f"Rule metadata: {store_stats.metadata_count}")
    click.echo(f"Threat intel indicators: {store_stats.indicators_count}")


@cli.group()
def intel():
    """Threat intelligence queries"""
    pass


@intel.command()
@click.option('--min-confidence', '-m', type=float, default=0.8, help='Minimum confidence')
@click.pass_context
def rank(ctx, min_confidence):
    """List indicators by confidence, highest first"""
    config = _load(ctx)
    try:
        indicators = _open_store(config).rank_by_confidence(min_confidence)
    except PyroThorError as e:
        raise click.ClickException(str(e))
    for indicator in indicators:
        click.echo(
            f"{indicator.confidence:.2f}  {indicator.indicator_type.value:<7} "
            f"{indicator.value}  ({indicator.id})"
        )
    click.echo(f"{len(indicators)} indicators")


@intel.command()
@click.argument('value')
@click.pass_context
def search(ctx, value):
    """Find indicators whose value contains VALUE"""
    config = _load(ctx)
    try:
        indicators = _open_store(config).find_indicators_by_value(value)
    except PyroThorError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps([i.model_dump(mode='json') for i in indicators], indent=2))


@intel.command()
@click.option('--days', '-d', type=click.FloatRange(min=0), default=30,
              help='Remove indicators not seen for this many days')
@click.pass_context
def purge(ctx, days):
    """Remove stale threat intel indicators"""
    config = _load(ctx)
    try:
        removed = _open_store(config).purge_indicators_older_than(days)
    except PyroThorError as e:
        raise click.ClickException(str(e))
    click.echo(f"Removed {removed} indicators older than {days:g} days")


@cli.group()
def config():
    """Configuration management"""
    pass


@config.command()
@click.pass_context
def show(ctx):
    """Show current configuration"""
    pyro_config = _load(ctx)
    click.echo(f"Configuration ({ctx.obj['config']}):")
    click.echo("=" * 40)
    click.echo(json.dumps(pyro_config.model_dump(), indent=2))


if __name__ == '__main__':
    cli()
