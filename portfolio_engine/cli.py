"""
Portfolio Engine — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Open the database (schema applied idempotently).
  4. Call one lifecycle / processor / sweeper operation.
  5. Report result to stdout.

Exit codes:
  0  success
  1  error (unknown id, bad input, upstream service unavailable)
  2  blocked by a guard (already active, cooling off, empty portfolio,
     wrong state) — printed as ``[BLOCKED] <reason>: <message>``

Install and run::

    pip install -e .
    pfe --help
    pfe init-db
    pfe create-portfolio --user u1 --name "Core"
    pfe set-holding --portfolio <id> --symbol ACME --quantity 10
    pfe request-optimization --user u1 --portfolio <id>
    pfe apply-optimization --user u1 --optimization <id>
    pfe process-transactions
    pfe reconcile
"""

from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="portfolio-engine",
    help="Portfolio optimization lifecycle and transaction execution engine.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from portfolio_engine.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from portfolio_engine.utils.logging import configure_logging
    configure_logging(config.logging)


def _bootstrap(config_path: Optional[str], db_path: Optional[str]):
    """Load config, configure logging, and return ``(config, connect)``.

    The schema is applied on every call so commands work against a fresh file.
    """
    from portfolio_engine.db.connection import connection_factory
    from portfolio_engine.db.schema import apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    connect = connection_factory(config.database, db_path)
    with connect() as conn:
        apply_schema(conn)
    return config, connect


def _build_manager(config, connect):
    from portfolio_engine.engine.lifecycle import OptimizationLifecycleManager
    from portfolio_engine.providers.prediction_client import HttpPredictionProvider

    return OptimizationLifecycleManager(
        connect,
        HttpPredictionProvider.from_config(config.prediction),
        config=config.lifecycle,
    )


def _build_processor(config, connect):
    from portfolio_engine.engine.processor import TransactionProcessor
    from portfolio_engine.providers.price_oracle import build_price_oracle

    return TransactionProcessor(
        connect,
        build_price_oracle(config, connect),
        config=config.processor,
        market_hours=config.market_hours,
    )


def _build_sweeper(config, connect):
    from portfolio_engine.engine.reconciler import ReconciliationSweeper

    return ReconciliationSweeper(connect, config=config.reconciliation)


@contextmanager
def _engine_errors():
    """Translate engine errors into messages and exit codes."""
    from portfolio_engine.engine.errors import (
        EngineError,
        GuardViolation,
        NotFoundError,
    )

    try:
        yield
    except GuardViolation as exc:
        typer.echo(f"[BLOCKED] {exc.reason}: {exc}", err=True)
        raise typer.Exit(code=2)
    except NotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except EngineError as exc:
        typer.echo(f"[ERROR] {exc.reason}: {exc}", err=True)
        raise typer.Exit(code=1)


def _parse_datetime_or_exit(value: Optional[str], label: str) -> Optional[datetime]:
    from portfolio_engine.utils.time_utils import ensure_utc

    if value is None:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        typer.echo(f"[ERROR] Invalid {label} '{value}'. Use ISO format, e.g. 2026-01-31.", err=True)
        raise typer.Exit(code=1)


_DB_PATH_HELP = "Override DB path from config (e.g. data/db/test.db)."
_CONFIG_HELP = "Path to TOML config file."


# ── Setup commands ────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times — all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from portfolio_engine.db.connection import get_connection
    from portfolio_engine.db.migrations import run_migrations
    from portfolio_engine.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to TOML config file (default: config/default.toml)."
    ),
    show_full: bool = typer.Option(False, "--full", help="Print full config including all fields."),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:     {config.database.db_path}")
    typer.echo(f"  Cool-off:          {config.lifecycle.cool_off_hours:g}h")
    typer.echo(f"  Prediction URL:    {config.prediction.base_url}")
    typer.echo(f"  Price source:      {config.pricing.source}")
    typer.echo(f"  Market hours gate: {config.processor.enforce_market_hours}")
    typer.echo(f"  Log level:         {config.logging.level}")
    typer.echo(f"  Debug mode:        {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        dumped = config.model_dump()
        if dumped["prediction"].get("api_key"):
            dumped["prediction"]["api_key"] = "***"
        typer.echo(json.dumps(dumped, indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("create-portfolio")
def create_portfolio(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    name: str = typer.Option(..., "--name", help="Display name."),
    portfolio_id: Optional[str] = typer.Option(
        None, "--portfolio-id", help="Explicit id (default: random uuid4)."
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Create an empty portfolio and print its id."""
    from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
    from portfolio_engine.models.portfolio import Portfolio
    from portfolio_engine.utils.time_utils import utcnow

    _, connect = _bootstrap(config_path, db_path)
    now = utcnow()
    portfolio = Portfolio(
        portfolio_id=portfolio_id or str(uuid.uuid4()),
        user_id=user_id,
        name=name,
        created_at=now,
        last_updated=now,
    )
    with connect() as conn:
        repo = PortfolioRepository(conn)
        if repo.get_portfolio(portfolio.portfolio_id) is not None:
            typer.echo(f"[ERROR] Portfolio '{portfolio.portfolio_id}' already exists.", err=True)
            raise typer.Exit(code=1)
        repo.create_portfolio(portfolio)

    typer.echo(portfolio.portfolio_id)


@app.command("set-holding")
def set_holding(
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    symbol: str = typer.Option(..., "--symbol", help="Ticker symbol."),
    quantity: float = typer.Option(..., "--quantity", min=0, help="Shares held."),
    base_value: Optional[float] = typer.Option(
        None, "--base-value", help="Cost basis (default: current value)."
    ),
    current_value: float = typer.Option(0.0, "--current-value", help="Current market value."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Seed or overwrite one position (not an executed trade)."""
    from pydantic import ValidationError

    from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
    from portfolio_engine.models.portfolio import Holding
    from portfolio_engine.utils.time_utils import utcnow

    _, connect = _bootstrap(config_path, db_path)
    base = current_value if base_value is None else base_value
    pct = (current_value - base) / base * 100 if base > 0 else 0.0

    with connect() as conn:
        repo = PortfolioRepository(conn)
        if repo.get_portfolio(portfolio_id) is None:
            typer.echo(f"[ERROR] Portfolio '{portfolio_id}' not found.", err=True)
            raise typer.Exit(code=1)
        try:
            holding = Holding(
                portfolio_id=portfolio_id,
                symbol=symbol,
                quantity=quantity,
                total_base_value=base,
                current_total_value=current_value,
                percentage_change=pct,
                last_updated=utcnow(),
            )
        except ValidationError as exc:
            typer.echo(f"[ERROR] Invalid holding: {exc}", err=True)
            raise typer.Exit(code=1)
        repo.set_holding(holding)

    typer.echo(f"[OK] {holding.symbol}: {quantity:g} shares.")


@app.command("record-price")
def record_price(
    symbol: str = typer.Option(..., "--symbol", help="Ticker symbol."),
    price: float = typer.Option(..., "--price", help="Price per share."),
    kind: str = typer.Option("intraday", "--kind", help="'intraday' or 'close'."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Store a price quote for the database-backed price oracle."""
    from pydantic import ValidationError

    from portfolio_engine.db.repositories.price_repo import PriceQuoteRepository
    from portfolio_engine.models.portfolio import PriceQuote
    from portfolio_engine.utils.time_utils import utcnow

    _, connect = _bootstrap(config_path, db_path)
    try:
        quote = PriceQuote(symbol=symbol, price=price, kind=kind, quoted_at=utcnow())
    except ValidationError as exc:
        typer.echo(f"[ERROR] Invalid quote: {exc}", err=True)
        raise typer.Exit(code=1)

    with connect() as conn:
        PriceQuoteRepository(conn).insert(quote)

    typer.echo(f"[OK] {quote.symbol} {quote.kind.value} @ {quote.price:g}")


# ── Lifecycle commands ────────────────────────────────────────────────────────

@app.command("request-optimization")
def request_optimization(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Fetch recommendations from the prediction service and store them."""
    from portfolio_engine.reporting.formatters import format_optimization_detail

    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        optimization = manager.request_optimization(user_id, portfolio_id)

    typer.echo(format_optimization_detail(optimization))
    typer.echo("")
    typer.echo(f"[OK] Optimization {optimization.optimization_id} created.")


@app.command("apply-optimization")
def apply_optimization(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    optimization_id: str = typer.Option(..., "--optimization", help="Optimization id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Queue the trades that realize a created optimization."""
    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        optimization = manager.apply(user_id, optimization_id)

    typer.echo(
        f"[OK] Optimization {optimization_id} is {optimization.status.value} "
        f"({len(optimization.transaction_ids)} transactions queued)."
    )


@app.command("cancel-optimization")
def cancel_optimization(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    optimization_id: str = typer.Option(..., "--optimization", help="Optimization id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Cancel a created or in-progress optimization.  Executed trades stay."""
    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        manager.cancel(user_id, optimization_id)

    typer.echo(f"[OK] Optimization {optimization_id} canceled.")


@app.command("status")
def status(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    optimization_id: str = typer.Option(..., "--optimization", help="Optimization id."),
    as_json: bool = typer.Option(False, "--json", help="Print the full record as JSON."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Show one optimization."""
    from portfolio_engine.reporting.formatters import format_optimization_detail

    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        optimization = manager.get_optimization(user_id, optimization_id)

    if as_json:
        typer.echo(optimization.model_dump_json(indent=2))
    else:
        typer.echo(format_optimization_detail(optimization))


@app.command("history")
def history(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    start: Optional[str] = typer.Option(None, "--start", help="Window start (ISO date/time)."),
    end: Optional[str] = typer.Option(None, "--end", help="Window end (ISO date/time)."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """List a portfolio's optimizations, newest first (default: last 30 days)."""
    from portfolio_engine.reporting.formatters import format_history_table

    start_dt = _parse_datetime_or_exit(start, "--start")
    end_dt = _parse_datetime_or_exit(end, "--end")
    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        try:
            optimizations = manager.get_history(user_id, portfolio_id, start_dt, end_dt)
        except ValueError as exc:
            typer.echo(f"[ERROR] {exc}", err=True)
            raise typer.Exit(code=1)

    typer.echo(format_history_table(optimizations))


@app.command("cool-off")
def cool_off(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Show how long until the portfolio may be optimized again."""
    from portfolio_engine.reporting.formatters import format_duration

    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        left = manager.get_remaining_cool_off(user_id, portfolio_id)

    if left > timedelta(0):
        typer.echo(f"Cooling off: {format_duration(left)} remaining.")
    else:
        typer.echo("Ready: no cool-off in effect.")


@app.command("show-portfolio")
def show_portfolio(
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Only this symbol's trades."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Show a portfolio's holdings and its transactions."""
    from portfolio_engine.db.repositories.portfolio_repo import PortfolioRepository
    from portfolio_engine.db.repositories.transaction_repo import TransactionRepository
    from portfolio_engine.reporting.formatters import (
        format_holdings_table,
        format_transactions_table,
    )

    _, connect = _bootstrap(config_path, db_path)
    with connect() as conn:
        portfolios = PortfolioRepository(conn)
        portfolio = portfolios.get_portfolio(portfolio_id)
        if portfolio is None:
            typer.echo(f"[ERROR] Portfolio '{portfolio_id}' not found.", err=True)
            raise typer.Exit(code=1)
        holdings = portfolios.get_holdings(portfolio_id)
        transactions = TransactionRepository(conn).list_for_portfolio(portfolio_id, symbol)

    typer.echo(f"Portfolio {portfolio.name} ({portfolio.portfolio_id}), user {portfolio.user_id}")
    typer.echo("")
    typer.echo(format_holdings_table(holdings))
    typer.echo("")
    typer.echo(format_transactions_table(transactions))


@app.command("invalidate-symbols")
def invalidate_symbols(
    symbols: list[str] = typer.Argument(..., help="Symbols with fresh predictions."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Cancel active optimizations made stale by new predictions."""
    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    canceled = manager.on_new_predictions_available(symbols)

    for optimization_id in canceled:
        typer.echo(f"  canceled {optimization_id}")
    typer.echo(f"[OK] {len(canceled)} optimization(s) invalidated.")


# ── Background passes ─────────────────────────────────────────────────────────

@app.command("process-transactions")
def process_transactions(
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Run one transaction pass (execute pending trades)."""
    config, connect = _bootstrap(config_path, db_path)
    result = _build_processor(config, connect).process_pending()

    typer.echo(f"  Succeeded: {len(result.succeeded)}")
    typer.echo(f"  Failed:    {len(result.failed)}")
    typer.echo(f"  Deferred:  {len(result.deferred)}")
    typer.echo("[OK] Transaction pass complete.")


@app.command("reconcile")
def reconcile(
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Run one reconciliation pass (derive optimization outcomes)."""
    config, connect = _bootstrap(config_path, db_path)
    result = _build_sweeper(config, connect).sweep()

    typer.echo(f"  Applied:          {len(result.applied)}")
    typer.echo(f"  Failed:           {len(result.failed)}")
    typer.echo(f"  Orphans canceled: {result.orphans_canceled}")
    if result.stale:
        typer.echo(f"  [WARN] Stale in-progress: {', '.join(result.stale)}")
    typer.echo("[OK] Reconciliation pass complete.")


@app.command("export-history")
def export_history(
    user_id: str = typer.Option(..., "--user", help="Owner user id."),
    portfolio_id: str = typer.Option(..., "--portfolio", help="Portfolio id."),
    output: Path = typer.Option(..., "--output", help="Destination file."),
    fmt: str = typer.Option("csv", "--format", help="'csv' or 'json'."),
    start: Optional[str] = typer.Option(None, "--start", help="Window start (ISO date/time)."),
    end: Optional[str] = typer.Option(None, "--end", help="Window end (ISO date/time)."),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Export optimization history to CSV (one row per recommendation) or JSON."""
    from portfolio_engine.reporting.export import export_history as write_history

    if fmt not in ("csv", "json"):
        typer.echo(f"[ERROR] Unsupported format '{fmt}'. Use csv or json.", err=True)
        raise typer.Exit(code=1)

    start_dt = _parse_datetime_or_exit(start, "--start")
    end_dt = _parse_datetime_or_exit(end, "--end")
    config, connect = _bootstrap(config_path, db_path)
    manager = _build_manager(config, connect)
    with _engine_errors():
        optimizations = manager.get_history(user_id, portfolio_id, start_dt, end_dt)

    path = write_history(optimizations, output, fmt)
    typer.echo(f"[OK] {len(optimizations)} optimization(s) written to {path}")


@app.command("start-scheduler")
def start_scheduler(
    skip_initial: bool = typer.Option(
        False, "--skip-initial", help="Wait one interval before the first passes."
    ),
    db_path: Optional[str] = typer.Option(None, "--db-path", help=_DB_PATH_HELP),
    config_path: Optional[str] = typer.Option(None, "--config", help=_CONFIG_HELP),
) -> None:
    """Run the transaction and reconciliation passes until Ctrl-C."""
    from portfolio_engine.scheduler import SchedulerDaemon

    config, connect = _bootstrap(config_path, db_path)
    daemon = SchedulerDaemon(
        _build_processor(config, connect),
        _build_sweeper(config, connect),
        config.scheduler,
    )
    daemon.start(skip_initial=skip_initial)


if __name__ == "__main__":
    app()
