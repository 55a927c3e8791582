"""
CLI entry point: tradeledger init-db | import | sync | match.

Every command loads config from --config (default tradeledger.yaml). Flex
tokens come from the environment (a local .env file is honoured).
"""

import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv

from tradeledger.config import AccountConfig, AppConfig, load_config
from tradeledger.errors import ConfigError, SyncCancelled

load_dotenv()

logger = logging.getLogger("tradeledger")


def _setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s  %(message)s",
        stream=sys.stderr,
    )


def _load(ctx: click.Context) -> AppConfig:
    path = ctx.obj["config_path"]
    if not Path(path).exists():
        # Commands that only need the database still work without a file
        return AppConfig()
    try:
        return load_config(path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _session(cfg: AppConfig):
    from tradeledger.db.session import get_session, init_db, make_engine

    engine = make_engine(cfg.database_url)
    init_db(engine)
    return get_session(engine)


def _account_config(cfg: AppConfig, account_id: str) -> AccountConfig:
    try:
        return cfg.account(account_id)
    except ConfigError:
        # Unconfigured accounts can still import files with default settings
        return AccountConfig(account_id=account_id)


@click.group()
@click.option("--config", "config_path", default="tradeledger.yaml", help="Path to config file.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool) -> None:
    """tradeledger: IBKR execution ledger with FIFO position matching."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """Create database tables."""
    cfg = _load(ctx)
    with _session(cfg):
        pass
    click.echo(f"Database ready: {cfg.database_url}")


@cli.command("import")
@click.argument("xml_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--account", "account_id", required=True, help="Broker account number, e.g. U1234567.")
@click.pass_context
def import_command(ctx: click.Context, xml_file: Path, account_id: str) -> None:
    """Import a downloaded Flex XML statement."""
    from tradeledger.sync import ingest_statements

    cfg = _load(ctx)
    account_config = _account_config(cfg, account_id)
    with _session(cfg) as session:
        report = ingest_statements(
            session,
            account_config,
            [xml_file.read_text(encoding="utf-8")],
            broker_timezone=cfg.broker_timezone,
        )
    click.echo(f"{account_id}: {report.summary()}")
    for warning in report.warnings:
        click.echo(f"  warning: {warning}")
    if report.report_failures:
        sys.exit(1)


@cli.command()
@click.option("--account", "account_ids", multiple=True, help="Only sync these accounts (repeatable).")
@click.pass_context
def sync(ctx: click.Context, account_ids) -> None:
    """Download Flex reports for configured accounts and ingest them."""
    from tradeledger.sync import sync_accounts

    cfg = _load(ctx)
    if not cfg.accounts:
        raise click.ClickException("No accounts configured. Add them to the config file.")

    unknown = set(account_ids) - {a.account_id for a in cfg.accounts}
    if unknown:
        raise click.ClickException(f"Unknown account(s): {', '.join(sorted(unknown))}")

    with _session(cfg) as session:
        try:
            reports = sync_accounts(session, cfg, account_ids=list(account_ids) or None)
        except SyncCancelled as exc:
            raise click.ClickException(str(exc)) from exc

    failed = False
    for report in reports:
        click.echo(f"{report.account_id}: {report.summary()}")
        for name, reason in report.report_failures.items():
            click.echo(f"  {name}: {reason}")
        failed = failed or report.error is not None
    if failed:
        sys.exit(1)


@cli.command()
@click.option("--account", "account_id", required=True, help="Broker account number.")
@click.option("--symbol", default=None, help="Only this symbol.")
@click.option("--mode", default=None, type=click.Choice(["net_position", "realized_pnl"]), help="Classifier (default: account setting).")
@click.pass_context
def match(ctx: click.Context, account_id: str, symbol: str | None, mode: str | None) -> None:
    """Run FIFO matching over stored executions and print the annotated log."""
    from sqlmodel import select

    from tradeledger.db.models import Account
    from tradeledger.domain.matcher import format_duration, process_executions
    from tradeledger.io.importer import ExecutionImporter

    cfg = _load(ctx)
    account_cfg = _account_config(cfg, account_id)
    mode = mode or account_cfg.classifier

    with _session(cfg) as session:
        account = session.exec(select(Account).where(Account.account_number == account_id)).first()
        if account is None:
            raise click.ClickException(f"No stored executions for {account_id}. Run 'tradeledger sync' first.")
        executions = ExecutionImporter.load_executions(
            session, account, symbol=symbol, exclude_before=account_cfg.exclude_before
        )
        result = process_executions(executions, mode=mode)

        click.echo(f"{'time (UTC)':<20} {'id':<14} {'symbol':<8} {'side':<4} {'qty':>10} {'price':>10} {'pnl':>10} {'dir':>3} {'held':>12}")
        for p in result.processed:
            pnl = "" if p.realized_pnl is None else f"{p.realized_pnl:.2f}"
            click.echo(
                f"{p.ts_utc:%Y-%m-%d %H:%M:%S} {p.execution_id:<14} {p.symbol:<8} {p.side:<4} "
                f"{p.quantity:>10g} {p.price:>10.2f} {pnl:>10} {p.position_direction or '':>3} "
                f"{format_duration(p.holding_duration):>12}"
            )

    click.echo(f"{len(result.processed)} executions, {len(result.matches)} lot matches, {result.anomaly_count} anomalies")
    for anomaly in result.anomalies:
        click.echo(f"  anomaly {anomaly.kind} on {anomaly.symbol} {anomaly.execution_id}: {anomaly.detail}")


if __name__ == "__main__":
    cli()
