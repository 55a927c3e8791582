"""
Account sync: fetch Flex reports, normalize them and persist the result.

``ingest_statements`` is the offline half (already-downloaded XML, e.g. an
uploaded file); ``sync_account`` adds the Flex Web Service download in front.
Runs for the same account are serialized within the process.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from sqlmodel import Session

from tradeledger.config import AccountConfig, AppConfig, FlexSettings
from tradeledger.db.models import AccountSnapshot
from tradeledger.domain.ledger import (
    BalanceSeries,
    apply_cutoff,
    canonical_key,
    canonical_order,
    deduplicate,
    reconcile_ending_balance,
    reconstruct_balances,
)
from tradeledger.errors import ConfigError, FlexServiceError, SyncCancelled
from tradeledger.io.flex_client import FlexWebServiceClient, fetch_reports
from tradeledger.io.ibkr_flex_parser import CashSummary, IBKRFlexParser, ParsedStatement
from tradeledger.io.importer import ExecutionImporter

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_account_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)


def account_lock(account_id: str) -> threading.Lock:
    with _locks_guard:
        return _account_locks[account_id]


@dataclass
class SyncReport:
    """Outcome of one sync for one account."""
    account_id: str
    reports_ok: List[str] = field(default_factory=list)
    report_failures: Dict[str, str] = field(default_factory=dict)
    fetched: int = 0
    unique: int = 0
    excluded: int = 0
    purged: int = 0  # stored rows removed by the cutoff
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    rebalanced: int = 0  # stored rows whose running balance changed
    degraded_timestamps: int = 0
    open_positions: Optional[int] = None  # None when the snapshot was not replaced
    equity_points: int = 0
    starting_balance: Optional[float] = None
    ending_balance: Optional[float] = None
    calibrated: bool = False
    discrepancy: Optional[float] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None  # fatal for this account (e.g. configuration)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.report_failures and self.discrepancy is None

    def summary(self) -> str:
        """One line suitable for showing to the user."""
        if self.error:
            return f"sync failed: {self.error}"

        problems = []
        if self.report_failures:
            n = len(self.report_failures)
            problems.append(f"{n} report fetch failure{'s' if n != 1 else ''}")
        if self.discrepancy is not None:
            problems.append(f"ending balance differs by ${abs(self.discrepancy):,.2f} from broker-reported total")
        if not self.calibrated and self.unique:
            problems.append("balance uncalibrated (no starting balance)")
        if self.degraded_timestamps:
            problems.append(f"{self.degraded_timestamps} unparseable timestamp(s)")

        counts = f"{self.inserted} new, {self.updated} updated, {self.unchanged} unchanged"
        if problems:
            return f"partial sync: {', '.join(problems)} ({counts})"
        return f"synced {self.unique} executions ({counts})"


def _merge(statements: Iterable[ParsedStatement]) -> ParsedStatement:
    merged = ParsedStatement()
    for statement in statements:
        merged.executions.extend(statement.executions)
        merged.equity_points.extend(statement.equity_points)
        merged.warnings.extend(statement.warnings)
        if statement.has_open_positions:
            # Each report carries a full snapshot; the last one wins
            merged.open_positions = list(statement.open_positions)
            merged.has_open_positions = True
        if statement.cash_summary is not None:
            merged.cash_summary = _merge_cash(merged.cash_summary, statement.cash_summary)
    return merged


def _merge_cash(current: Optional[CashSummary], new: CashSummary) -> CashSummary:
    if current is None:
        return new
    # Earliest report supplies the starting cash, latest the ending cash
    return CashSummary(
        starting_cash=current.starting_cash if current.starting_cash is not None else new.starting_cash,
        ending_cash=new.ending_cash if new.ending_cash is not None else current.ending_cash,
        currency=new.currency,
    )


def _rebalance(
    stored: List,
    batch: List,
    account_config: AccountConfig,
    cash: Optional[CashSummary],
    starting_cash: Optional[float],
    previous: Optional[AccountSnapshot],
) -> Tuple[List, BalanceSeries]:
    """
    Recompute stored running balances from the batch's first execution onward.

    Under ``forward`` the stored balance just before the batch seeds the series,
    so history outside a partial download keeps its balances. An uncalibrated
    history is replayed from the start instead. ``reconcile`` anchors on a
    current balance and always replays the whole stored log.
    """
    start_at, opening = 0, None
    calibrated_history = previous is None or previous.balance_calibrated
    if account_config.balance_policy == "forward" and stored and calibrated_history:
        if batch:
            first = canonical_key(batch[0])
            start_at = sum(1 for row in stored if canonical_key(row) < first)
        else:
            start_at = len(stored)
        if start_at:
            opening = stored[start_at - 1].running_balance
            if opening is None:
                start_at = 0

    rows = stored[start_at:]
    series = reconstruct_balances(
        rows,
        policy=account_config.balance_policy,
        basis=account_config.balance_basis,
        statement_starting_cash=starting_cash,
        statement_ending_cash=cash.ending_cash if cash else None,
        configured_starting_balance=account_config.starting_balance,
        configured_current_balance=account_config.current_balance,
        opening_balance=opening,
    )
    return rows, series


def _through_batch(rows: List, series: BalanceSeries, batch: List) -> BalanceSeries:
    """The series cut at the batch's last execution, where the statement's ending cash applies."""
    if not batch:
        return series
    last = batch[-1].execution_id
    for i in range(len(rows) - 1, -1, -1):
        if rows[i].execution_id == last:
            return replace(series, balances=series.balances[: i + 1])
    return series


def ingest_statements(
    session: Session,
    account_config: AccountConfig,
    statements: Iterable[str],
    broker_timezone: str = "US/Eastern",
    report: Optional[SyncReport] = None,
) -> SyncReport:
    """Parse, normalize and persist already-downloaded Flex statements."""
    report = report or SyncReport(account_id=account_config.account_id)

    parsed = []
    for i, xml_content in enumerate(statements):
        try:
            parsed.append(
                IBKRFlexParser.parse_statement(
                    xml_content,
                    default_account_id=account_config.account_id,
                    broker_timezone=broker_timezone,
                )
            )
        except ValueError as exc:
            logger.warning("Statement %d for %s could not be parsed: %s", i, account_config.account_id, exc)
            report.report_failures[f"statement-{i}"] = str(exc)

    merged = _merge(parsed)
    report.warnings.extend(merged.warnings)
    report.fetched = len(merged.executions)

    executions = deduplicate(merged.executions)
    kept = apply_cutoff(executions, account_config.exclude_before)
    report.excluded = len(executions) - len(kept)
    executions = canonical_order(kept)
    report.unique = len(executions)
    report.degraded_timestamps = sum(1 for e in executions if e.ts_degraded)

    if report.excluded:
        logger.info(
            "Excluded %d executions before %s for %s",
            report.excluded,
            account_config.exclude_before.isoformat(),
            account_config.account_id,
        )

    missing_pnl = sum(1 for e in executions if e.realized_pnl is None)
    if missing_pnl and "realized_pnl" in (account_config.balance_basis, account_config.classifier):
        report.warnings.append(f"{missing_pnl} execution(s) without a realized P&L value")

    account = ExecutionImporter.get_or_create_account(
        session,
        account_config.account_id,
        label=account_config.label,
        currency=account_config.currency,
    )

    if account_config.exclude_before is not None:
        report.purged = ExecutionImporter.delete_executions_before(session, account, account_config.exclude_before)

    upserted = ExecutionImporter.upsert_executions(session, account, executions)
    report.inserted = upserted.inserted
    report.updated = upserted.updated
    report.unchanged = upserted.unchanged

    # The statement's starting cash predates any fills the cutoff dropped
    cash = merged.cash_summary
    starting_cash = cash.starting_cash if cash and not report.excluded else None
    stored = ExecutionImporter.load_executions(session, account, exclude_before=account_config.exclude_before)
    previous = ExecutionImporter.get_account_snapshot(session, account)
    rows, series = _rebalance(stored, executions, account_config, cash, starting_cash, previous)
    report.rebalanced = ExecutionImporter.update_running_balances(session, rows, series.balances)

    report.starting_balance = series.starting_balance
    report.ending_balance = series.ending_balance
    report.calibrated = series.calibrated
    if not series.calibrated:
        report.warnings.append("No starting balance available; running balance starts at 0")
    else:
        discrepancy = reconcile_ending_balance(
            _through_batch(rows, series, executions),
            cash.ending_cash if cash else None,
        )
        if discrepancy is not None:
            report.discrepancy = discrepancy.difference
            report.warnings.append(str(discrepancy))

    if merged.has_open_positions:
        report.open_positions = ExecutionImporter.replace_open_positions(session, account, merged.open_positions)
    report.equity_points = ExecutionImporter.upsert_equity_snapshots(session, account, merged.equity_points)

    ExecutionImporter.save_account_snapshot(
        session,
        account,
        starting_cash=starting_cash if starting_cash is not None else series.starting_balance,
        ending_cash=cash.ending_cash if cash and cash.ending_cash is not None else series.ending_balance,
        calibrated=series.calibrated,
        discrepancy=report.discrepancy,
    )

    logger.info("Sync %s: %s", account_config.account_id, report.summary())
    return report


def sync_account(
    session: Session,
    account_config: AccountConfig,
    settings: FlexSettings = FlexSettings(),
    client: Optional[FlexWebServiceClient] = None,
    cancel_event: Optional[threading.Event] = None,
    broker_timezone: str = "US/Eastern",
) -> SyncReport:
    """
    Download every configured report for one account and ingest them.

    Configuration problems are fatal for this account only and come back in
    ``SyncReport.error``. Failed reports are recorded and treated as empty.
    Cancellation propagates as ``SyncCancelled``; rows committed before it stay.
    """
    report = SyncReport(account_id=account_config.account_id)
    try:
        query_ids = account_config.require_query_ids()
        if client is None:
            client = FlexWebServiceClient.from_settings(account_config.resolve_token(), settings)
    except ConfigError as exc:
        logger.error("Cannot sync %s: %s", account_config.account_id, exc)
        report.error = str(exc)
        return report

    with account_lock(account_config.account_id):
        logger.info("Starting sync for %s (%s)", account_config.account_id, ", ".join(query_ids))
        statements, failures = fetch_reports(client, query_ids, cancel_event)
        report.report_failures.update(failures)
        report.reports_ok = sorted(statements)

        if not statements:
            report.warnings.append("No report could be downloaded; nothing ingested")
            logger.warning("Sync %s: %s", account_config.account_id, report.summary())
            return report

        # Preserve configured report order (historical before today)
        ordered = [statements[name] for name in query_ids if name in statements]
        return ingest_statements(
            session,
            account_config,
            ordered,
            broker_timezone=broker_timezone,
            report=report,
        )


def sync_accounts(
    session: Session,
    config: AppConfig,
    account_ids: Optional[List[str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[SyncReport]:
    """Sync several accounts; one account's failure never stops the rest."""
    reports = []
    for account_config in config.accounts:
        if account_ids and account_config.account_id not in account_ids:
            continue
        try:
            reports.append(
                sync_account(
                    session,
                    account_config,
                    settings=config.flex,
                    cancel_event=cancel_event,
                    broker_timezone=config.broker_timezone,
                )
            )
        except SyncCancelled:
            raise
        except FlexServiceError as exc:
            logger.error("Sync %s failed: %s", account_config.account_id, exc)
            reports.append(SyncReport(account_id=account_config.account_id, error=str(exc)))
    return reports
