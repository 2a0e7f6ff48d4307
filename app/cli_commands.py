"""
Flask CLI commands for running and operating the sale pipeline.

Commands:
- flask init-db: Create all tables
- flask process-sales: Run one worker pass
- flask recover-stale-sales: Requeue sales whose processing lease expired
- flask queue-stats: Print queue counts
- flask replay-sale: Requeue a dead-lettered sale
- flask low-stock-audit: Full low stock scan of a branch
"""

import click
from flask import current_app
from app import database
from app.models import Branch
from app.services import low_stock_service
from app.services.cache_service import get_cache
from app.services.job_queue_service import JobQueueService
from app.services.sale_processor import SaleProcessor
from app.utils.formatters import fmt_qty

SEVERITY_COLORS = {
    low_stock_service.CRITICAL: 'red',
    low_stock_service.WARNING: 'yellow',
    low_stock_service.LOW: 'cyan',
}


def _job_queue():
    return JobQueueService(
        database.get_session(),
        current_app.extensions['pipeline_settings'],
        cache=get_cache()
    )


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables (development / tests)."""
        database.create_all()
        click.echo(click.style('Tables created.', fg='green'))

    @app.cli.command('process-sales')
    @click.option('--limit', type=int, default=None, help='Max sales to claim (default SALES_BATCH_SIZE)')
    def process_sales(limit):
        """Recover stale sales, claim a batch and process it."""
        processor = SaleProcessor.from_app(current_app, database.get_session())
        batch = processor.run_batch(limit)

        color = 'green' if not batch.failed else 'yellow'
        click.echo(click.style(
            f'Processed {batch.processed}: {batch.succeeded} ok, {batch.failed} failed, '
            f'{batch.recovered} recovered ({batch.duration_ms} ms)',
            fg=color, bold=True
        ))
        for error in batch.errors:
            click.echo(click.style(f'  {error}', fg='red'))

    @app.cli.command('recover-stale-sales')
    @click.option('--timeout', type=int, default=None, help='Lease timeout in minutes')
    def recover_stale_sales(timeout):
        """Return sales stuck in processing to the queue."""
        recovered = _job_queue().recover_stale_sales(timeout)
        click.echo(f'Recovered {recovered} stale sales')

    @app.cli.command('queue-stats')
    @click.option('--tenant', 'tenant_id', type=int, default=None, help='Restrict to one tenant')
    def queue_stats(tenant_id):
        """Print sale counts per queue status."""
        stats = _job_queue().get_queue_stats(tenant_id, use_cache=False)
        for name, value in stats.to_dict().items():
            click.echo(f'{name:>16}: {value}')

    @app.cli.command('replay-sale')
    @click.argument('sale_id', type=int)
    def replay_sale(sale_id):
        """Requeue a dead-lettered or failed sale with a fresh retry budget."""
        result = _job_queue().replay_sale(sale_id)
        if result.success:
            click.echo(click.style(f'Sale {sale_id} requeued', fg='green'))
        else:
            click.echo(click.style(f'Could not replay sale {sale_id}: {result.error}', fg='red'))
            raise SystemExit(1)

    @app.cli.command('low-stock-audit')
    @click.argument('branch_id', type=int)
    def low_stock_audit(branch_id):
        """Full low stock scan of one branch."""
        db_session = database.get_session()
        branch = db_session.query(Branch).filter_by(id=branch_id).first()
        if not branch:
            click.echo(click.style(f'Branch {branch_id} not found', fg='red'))
            raise SystemExit(1)

        report = low_stock_service.check_branch(db_session, branch.tenant_id, branch.id)
        click.echo(
            f'{branch.name}: {report.items_checked} items checked, '
            f'{report.critical_count} critical, {report.warning_count} warning, {report.low_count} low'
        )
        for alert in report.alerts:
            click.echo(click.style(
                f'  [{alert.severity.upper()}] {alert.item_name}: '
                f'{fmt_qty(alert.current_stock)} / {fmt_qty(alert.minimum_stock)} {alert.unit or ""}',
                fg=SEVERITY_COLORS[alert.severity]
            ))
