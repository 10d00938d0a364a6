"""
CLI entrypoint for the copy-trading worker.

Provides the long-running worker plus one-shot commands for each job.
"""
import asyncio
import sys
import traceback
from pathlib import Path
from typing import Optional

import typer

from copytrader import __version__
from copytrader.billing.quarters import parse_quarter_label
from copytrader.config.config import Config, load_config
from copytrader.config.dotenv_loader import load_env_files
from copytrader.exceptions import CopyTraderError, StartupError
from copytrader.monitoring.alerting import STARTUP_FAILED, send_alert
from copytrader.monitoring.logger import get_logger, setup_logging
from copytrader.storage.db import get_db, init_db

app = typer.Typer(
    name="copytrader",
    help="Leader/follower copy-trading worker",
    add_completion=False,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _print_critical(title: str, error: Exception) -> None:
    print("=" * 80, file=sys.stderr)
    print(f"CRITICAL ERROR - {title}", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    print(f"Error: {error}", file=sys.stderr)
    print(f"Type: {type(error).__name__}", file=sys.stderr)
    traceback.print_exc(file=sys.stderr)
    print("=" * 80, file=sys.stderr)


def _bootstrap(config_path: Path, log_file: Optional[Path] = None) -> Config:
    """Load config, configure logging and open the database."""
    try:
        config = load_config(str(config_path))
    except Exception as e:
        _print_critical("Failed to load configuration", e)
        raise typer.Exit(1)

    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )

    try:
        if config.data.database_url:
            init_db(config.data.database_url)
        else:
            get_db()
    except Exception as e:
        _print_critical("Failed to connect to database", e)
        raise typer.Exit(1)
    return config


def _build_worker(config: Config):
    from copytrader.worker import Worker

    try:
        return Worker(config)
    except StartupError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(1)


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the worker: reconcile, then stream leader orders and copy fills.

    Example:
        copytrader run --config copytrader/config/config.yaml
    """
    config = _bootstrap(config_path, log_file)
    from copytrader.worker import run_worker

    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except StartupError as e:
        logger.critical("STARTUP_FAILED", error=str(e))
        asyncio.run(send_alert(STARTUP_FAILED, f"Worker failed to start: {e}", urgent=True))
        typer.secho(f"❌ {e}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(1)
    except Exception as e:
        logger.critical(
            "Worker failed with unhandled error",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        _print_critical("Worker Failed", e)
        raise typer.Exit(1)


@app.command()
def reconcile(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Backfill leader orders missed while the worker was down (no copying)."""
    config = _bootstrap(config_path)
    worker = _build_worker(config)

    async def _run():
        try:
            leader, credentials = worker.resolve_leader()
        except StartupError as e:
            typer.secho(f"❌ {e}", fg=typer.colors.RED, bold=True)
            raise typer.Exit(1)
        return await worker.reconciler.reconcile(leader, credentials)

    result = asyncio.run(_run())
    if result.error:
        typer.secho(f"Reconciliation failed: {result.error}", fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(
        f"Open orders: {result.open_orders}  Closed orders: {result.closed_orders}  "
        f"Recovered: {len(result.recovered_order_ids)}  Ledgered fills: {result.ledgered_fills}"
    )


@app.command(name="snapshot-balances")
def snapshot_balances(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Record today's balance for every follower with API keys."""
    config = _bootstrap(config_path)
    worker = _build_worker(config)
    count = asyncio.run(worker.balance_snapshots.run())
    typer.echo(f"Snapshots recorded: {count}")


@app.command(name="track-transfers")
def track_transfers(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Import follower deposits and withdrawals from the exchange."""
    config = _bootstrap(config_path)
    worker = _build_worker(config)
    count = asyncio.run(worker.transfer_tracker.run())
    typer.echo(f"New transfers recorded: {count}")


@app.command(name="generate-invoices")
def generate_invoices(
    quarter: Optional[str] = typer.Option(None, "--quarter", help="Quarter label, e.g. 2026-Q2 (default: previous quarter)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Generate quarterly invoices for active followers."""
    target = None
    if quarter:
        try:
            target = parse_quarter_label(quarter)
        except ValueError as e:
            typer.secho(str(e), fg=typer.colors.RED)
            raise typer.Exit(1)

    config = _bootstrap(config_path)
    worker = _build_worker(config)
    invoices = asyncio.run(worker.invoice_generator.run(target))
    for inv in invoices:
        typer.echo(f"  follower={inv.follower_id} {inv.quarter_label} fee=${inv.total_amount:,.2f} ({inv.bracket_label})")
    typer.echo(f"Invoices generated: {len(invoices)}")


@app.command(name="expire-pending")
def expire_pending(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Expire pending trades whose approval window has passed."""
    config = _bootstrap(config_path)
    worker = _build_worker(config)
    count = worker.pending_trades.expire_due()
    typer.echo(f"Expired: {count}")


@app.command()
def decide(
    pending_id: int = typer.Argument(..., help="Pending trade id"),
    follower_id: int = typer.Option(..., "--follower", help="Follower id owning the pending trade"),
    decision: str = typer.Option(..., "--decision", help="approve or reject"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Approve or reject a pending manual-mode trade."""
    config = _bootstrap(config_path)
    worker = _build_worker(config)
    try:
        outcome = asyncio.run(worker.pending_trades.decide(pending_id, follower_id, decision))
    except CopyTraderError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(1)
    except Exception as e:
        logger.error(
            "PENDING_DECISION_FAILED",
            pending_id=pending_id,
            follower_id=follower_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        typer.secho(f"❌ {type(e).__name__}: {e}", fg=typer.colors.RED, bold=True)
        raise typer.Exit(1)
    typer.echo(f"Pending trade {pending_id}: {outcome.value}")


@app.command()
def status(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Show worker heartbeat and per-follower copy success."""
    config = _bootstrap(config_path)
    from copytrader.reporting.health import collect_health, render_health

    health = collect_health(config.scheduler.heartbeat_stale_seconds)
    render_health(health)
    if health.stale:
        raise typer.Exit(1)


@app.command(name="init-db")
def init_database(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
):
    """Create database tables."""
    _bootstrap(config_path)
    typer.echo("Database initialized")


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Copy-trading worker

    Mirrors a leader account's spot fills onto follower accounts.
    """
    if version:
        typer.echo(f"copytrader v{__version__}")
        raise typer.Exit()
    load_env_files()


if __name__ == "__main__":
    app()
