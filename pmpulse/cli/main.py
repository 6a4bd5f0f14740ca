"""
PMPulse CLI - Main entry point.
Built with Click for a rich command-line interface.
"""

import logging
import signal
import sys
import threading

import click
from rich.console import Console
from rich.table import Table

from pmpulse import __version__
from pmpulse.datalayer.sync_tracker import ActiveSyncError, VALID_MODES
from pmpulse.datalayer.vendor_dedup import VendorLinkError

console = Console()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_services(ctx):
    """Service container from the context, built from the environment on first use."""
    services = ctx.obj.get('services')
    if services is None:
        from pmpulse.common.config import AppConfig
        from pmpulse.scheduler.config import SchedulerConfig
        from pmpulse.scheduler.jobs import build_services

        scheduler_config = SchedulerConfig.from_yaml(ctx.obj.get('config_path'))
        services = build_services(AppConfig.from_env(), scheduler_config)
        ctx.obj['services'] = services
    return services


def _date_option(value):
    return value.date() if value is not None else None


@click.group()
@click.version_option(version=__version__, prog_name='pmpulse')
@click.option('--config', '-c', 'config_path', default=None,
              help='Path to scheduler config file (default: config/scheduler.yaml)')
@click.option('--log-level', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
@click.pass_context
def cli(ctx, config_path, log_level):
    """PMPulse - AppFolio ingestion and reconciliation."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path


# =============================================================================
# Sync Commands
# =============================================================================

@cli.command()
@click.option('--mode', '-m', type=click.Choice(list(VALID_MODES)), default='incremental',
              help='Sync mode')
@click.option('--force', is_flag=True, help='Start even if another run is in progress')
@click.option('--no-wait', 'no_wait', is_flag=True, help='Queue the run for the daemon and return')
@click.option('--from', 'from_date', type=click.DateTime(formats=['%Y-%m-%d']),
              help='Start date for bill_details/work_orders (YYYY-MM-DD)')
@click.option('--to', 'to_date', type=click.DateTime(formats=['%Y-%m-%d']),
              help='End date for bill_details/work_orders (YYYY-MM-DD)')
@click.pass_context
def sync(ctx, mode, force, no_wait, from_date, to_date):
    """Sync AppFolio data into the database."""
    from pmpulse.scheduler.engine import JobQueue
    from pmpulse.scheduler.jobs import sync_job

    services = get_services(ctx)

    options = {}
    if from_date and to_date:
        options = {'from_date': from_date.date().isoformat(), 'to_date': to_date.date().isoformat()}
    elif from_date or to_date:
        raise click.UsageError('--from and --to must be given together')

    try:
        run = services.tracker.create_run(mode, triggered_by='command', force=force, options=options)
    except ActiveSyncError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if no_wait:
        console.print(f"[green]Sync run {run.id} queued ({mode}). The daemon will pick it up.[/green]")
        return

    console.print(f"[yellow]Starting {mode} sync (run {run.id})...[/yellow]")

    queue = JobQueue(services.scheduler_config)
    queue.start()
    try:
        job_id = queue.enqueue(sync_job, job_id=f"sync_{run.id}", name=f"{mode} sync",
                               services=services, run_id=run.id)
        outcome = queue.wait(job_id)
    finally:
        queue.shutdown(wait=True)

    if not outcome.succeeded:
        console.print(f"[red]Sync job crashed: {outcome.exception}[/red]")
        sys.exit(1)

    summary = services.tracker.summary(run.id)
    _print_sync_summary(summary)

    if summary['status'] == 'completed':
        console.print(f"[green]Sync completed successfully![/green]")
        return

    stored = services.tracker.get(run.id)
    console.print(f"[red]Sync {summary['status']}![/red]")
    if stored is not None and stored.error_summary:
        console.print(f"Error: {stored.error_summary}")
    sys.exit(1)


def _print_sync_summary(summary):
    table = Table(title=f"Sync Run {summary['id']} ({summary['mode']})")
    table.add_column("Resource", style="cyan")
    table.add_column("Created", style="green", justify="right")
    table.add_column("Updated", style="blue", justify="right")
    table.add_column("Skipped", style="yellow", justify="right")
    table.add_column("Errors", style="red", justify="right")
    table.add_column("Duration", style="magenta", justify="right")

    for resource_type, metrics in summary['resources'].items():
        table.add_row(
            resource_type,
            str(metrics['created']),
            str(metrics['updated']),
            str(metrics['skipped']),
            str(metrics['errors']),
            f"{metrics['duration_ms'] / 1000:.1f}s",
        )
    table.add_row(
        "[bold]Total[/bold]",
        str(summary['created']),
        str(summary['updated']),
        str(summary['skipped']),
        str(summary['errors']),
        f"{summary['duration_seconds']:.1f}s" if summary['duration_seconds'] is not None else 'N/A',
    )
    console.print(table)


# =============================================================================
# Utilities Commands
# =============================================================================

@cli.command('utilities:reprocess')
@click.option('--from', 'from_date', type=click.DateTime(formats=['%Y-%m-%d']),
              help='Only bills dated on or after (YYYY-MM-DD)')
@click.option('--to', 'to_date', type=click.DateTime(formats=['%Y-%m-%d']),
              help='Only bills dated on or before (YYYY-MM-DD)')
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.pass_context
def reprocess_utilities(ctx, from_date, to_date, force):
    """Rebuild utility expenses from stored bill details."""
    services = get_services(ctx)
    from_date, to_date = _date_option(from_date), _date_option(to_date)

    window = f"{from_date or 'the beginning'} to {to_date or 'today'}"
    if not force and not click.confirm(
        f"Delete and rebuild bill-derived utility expenses from {window}?"
    ):
        console.print("[yellow]Aborted[/yellow]")
        return

    stats = services.reclassification.reprocess_all(from_date, to_date)

    table = Table(title="Utility Expense Reprocessing")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green", justify="right")
    table.add_row("Deleted", str(stats.deleted))
    table.add_row("Created", str(stats.created))
    table.add_row("Updated", str(stats.updated))
    table.add_row("Skipped", str(stats.skipped))
    table.add_row("Unmatched", str(stats.unmatched))
    table.add_row("Errors", f"[red]{stats.errors}[/red]" if stats.errors else "0")
    console.print(table)

    for detail in stats.error_details[:10]:
        console.print(f"[red]  bill {detail.get('txn_id')}: {detail.get('error')}[/red]")

    if stats.errors:
        sys.exit(1)


# =============================================================================
# Vendor Commands
# =============================================================================

@cli.command('vendors:duplicates')
@click.option('--threshold', '-t', type=click.FloatRange(0.0, 1.0), default=0.6,
              help='Minimum similarity score')
@click.option('--limit', '-l', type=click.IntRange(min=1), default=50, help='Maximum pairs to report')
@click.pass_context
def vendor_duplicates(ctx, threshold, limit):
    """Find potential duplicate vendors."""
    from pmpulse.scheduler.jobs import vendor_analysis_job

    services = get_services(ctx)
    analysis = services.vendor_dedup.create_analysis(threshold, limit, requested_by='cli')
    analysis = vendor_analysis_job(services, analysis.id)

    table = Table(title=f"Potential Duplicate Vendors (threshold {threshold})")
    table.add_column("Vendor", style="cyan")
    table.add_column("Possible Duplicate", style="cyan")
    table.add_column("Score", style="green", justify="right")
    table.add_column("Reasons", style="yellow")

    for pair in analysis.results or []:
        first, second = pair['vendor1'], pair['vendor2']
        table.add_row(
            f"{first['id']}: {first['company_name'] or 'N/A'}",
            f"{second['id']}: {second['company_name'] or 'N/A'}",
            f"{pair['similarity']:.2f}",
            ', '.join(pair['match_reasons']),
        )

    console.print(table)
    console.print(
        f"{analysis.total_vendors} vendors, {analysis.comparisons_made} comparisons, "
        f"{analysis.duplicates_found} potential duplicates"
    )


@cli.command('vendors:link')
@click.argument('vendor_id', type=int)
@click.argument('canonical_id', type=int)
@click.pass_context
def link_vendor(ctx, vendor_id, canonical_id):
    """Mark VENDOR_ID as a duplicate of CANONICAL_ID."""
    services = get_services(ctx)
    try:
        root_id = services.vendor_dedup.link_as_duplicate(vendor_id, canonical_id)
    except VendorLinkError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"[green]Vendor {vendor_id} linked to canonical vendor {root_id}[/green]")


@cli.command('vendors:unlink')
@click.argument('vendor_id', type=int)
@click.pass_context
def unlink_vendor(ctx, vendor_id):
    """Clear the duplicate link of VENDOR_ID."""
    services = get_services(ctx)
    try:
        services.vendor_dedup.unlink(vendor_id)
    except VendorLinkError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"[green]Vendor {vendor_id} unlinked[/green]")


# =============================================================================
# Connection Commands
# =============================================================================

@cli.command('connection:test')
@click.pass_context
def test_connection(ctx):
    """Check the stored AppFolio credentials with a one-row request."""
    services = get_services(ctx)
    connected, message = services.client_factory().test_connection()
    if not connected:
        console.print(f"[red]Connection failed: {message}[/red]")
        sys.exit(1)
    console.print(f"[green]{message}[/green]")


# =============================================================================
# Alert Commands
# =============================================================================

@cli.command('alerts:status')
@click.option('--connection', default='appfolio', help='Connection name')
@click.pass_context
def alert_status(ctx, connection):
    """Show the sync failure alert state."""
    services = get_services(ctx)
    status = services.alert_service.get_alert_status(connection)

    table = Table(title="Sync Failure Alert")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Connection", status['connection'])
    table.add_row("Active", "[red]Yes[/red]" if status['has_alert'] else "No")
    table.add_row("Consecutive Failures", str(status['consecutive_failures']))
    table.add_row("Last Failure", status.get('last_failure_at') or 'N/A')
    table.add_row("Last Alert Sent", status.get('last_alert_sent_at') or 'N/A')
    acknowledged = 'No'
    if status['is_acknowledged']:
        acknowledged = f"Yes, by {status.get('acknowledged_by') or 'unknown'}"
    table.add_row("Acknowledged", acknowledged)
    console.print(table)


@cli.command('alerts:ack')
@click.option('--user', '-u', required=True, help='Who is acknowledging')
@click.option('--connection', default='appfolio', help='Connection name')
@click.pass_context
def acknowledge_alert(ctx, user, connection):
    """Acknowledge the sync failure alert, silencing it until the next success."""
    services = get_services(ctx)
    if services.alert_service.acknowledge(connection, user):
        console.print(f"[green]Alert for {connection} acknowledged by {user}[/green]")
    else:
        console.print(f"[yellow]No active alert for {connection}[/yellow]")


# =============================================================================
# Daemon
# =============================================================================

@cli.command()
@click.pass_context
def daemon(ctx):
    """Run the scheduler in the foreground. Press Ctrl+C to stop."""
    from pmpulse.scheduler.engine import JobQueue
    from pmpulse.scheduler.jobs import pending_runs_job, scheduled_sync_job

    services = get_services(ctx)
    scheduler_config = services.scheduler_config
    queue = JobQueue(scheduler_config)

    if scheduler_config.sync_enabled:
        queue.schedule_incremental_sync(scheduled_sync_job, services=services)
    else:
        console.print("[yellow]Recurring sync disabled in config[/yellow]")
    queue.schedule_pending_runs(pending_runs_job, services=services)

    stop = threading.Event()

    def signal_handler(signum, frame):
        console.print("\n[yellow]Shutting down...[/yellow]")
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    console.print("[yellow]Starting scheduler...[/yellow]")
    queue.start()
    console.print("[green]Running in foreground mode. Press Ctrl+C to stop.[/green]")

    try:
        while not stop.wait(1):
            pass
    finally:
        queue.shutdown()
        console.print("[green]Scheduler stopped[/green]")


if __name__ == '__main__':
    cli()
