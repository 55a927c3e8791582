"""Idempotent persistence of normalized executions and broker snapshots."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlmodel import Session, select

from tradeledger.db.models import Account, AccountSnapshot, EquitySnapshot, Execution, OpenPosition, utcnow
from tradeledger.domain.ledger import canonical_order, naive_utc
from tradeledger.io.ibkr_flex_parser import ParsedEquityPoint, ParsedExecution, ParsedOpenPosition

logger = logging.getLogger(__name__)

# Columns overwritten on re-ingestion of a known execution id
UPSERT_FIELDS = (
    "symbol",
    "asset_class",
    "ts_utc",
    "ts_raw",
    "ts_degraded",
    "side",
    "quantity",
    "price",
    "commission",
    "net_cash",
    "currency",
    "realized_pnl",
    "running_balance",
)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged


def _same(a, b) -> bool:
    if isinstance(a, float) or isinstance(b, float):
        if a is None or b is None:
            return a is b
        return abs(a - b) <= 1e-9
    return a == b


class ExecutionImporter:
    """Handles idempotent writes for one account."""

    @staticmethod
    def get_or_create_account(session: Session, account_number: str, label: str = "", currency: str = "USD") -> Account:
        account = session.exec(select(Account).where(Account.account_number == account_number)).first()
        if account is None:
            account = Account(account_number=account_number, label=label, currency=currency)
            session.add(account)
            session.commit()
            session.refresh(account)
            logger.info("Created account %s", account_number)
        return account

    @staticmethod
    def upsert_executions(
        session: Session,
        account: Account,
        parsed_executions: Sequence[ParsedExecution],
        running_balances: Optional[Sequence[Optional[float]]] = None,
    ) -> UpsertResult:
        """
        Upsert executions keyed by (account, execution_id).

        A known id is overwritten in place, never duplicated. Rows whose stored
        values already match are left untouched. Without ``running_balances``
        the stored balance of a known id is kept.
        """
        result = UpsertResult()
        fields = UPSERT_FIELDS
        if running_balances is None:
            running_balances = [None] * len(parsed_executions)
            fields = tuple(name for name in UPSERT_FIELDS if name != "running_balance")
        if len(running_balances) != len(parsed_executions):
            raise ValueError("running_balances must align with parsed_executions")

        ids = [p.execution_id for p in parsed_executions]
        existing: Dict[str, Execution] = {}
        if ids:
            stmt = select(Execution).where(
                Execution.account_id == account.id,
                Execution.execution_id.in_(ids),
            )
            existing = {row.execution_id: row for row in session.exec(stmt).all()}

        for parsed, balance in zip(parsed_executions, running_balances):
            values = {
                "symbol": parsed.symbol,
                "asset_class": parsed.asset_class,
                "ts_utc": naive_utc(parsed.ts_utc),
                "ts_raw": parsed.ts_raw,
                "ts_degraded": parsed.ts_degraded,
                "side": parsed.side,
                "quantity": parsed.quantity,
                "price": parsed.price,
                "commission": parsed.commission,
                "net_cash": parsed.net_cash,
                "currency": parsed.currency,
                "realized_pnl": parsed.realized_pnl,
                "running_balance": balance,
            }

            row = existing.get(parsed.execution_id)
            if row is None:
                row = Execution(account_id=account.id, execution_id=parsed.execution_id, **values)
                session.add(row)
                existing[parsed.execution_id] = row
                result.inserted += 1
                continue

            changed = False
            for name in fields:
                if not _same(getattr(row, name), values[name]):
                    setattr(row, name, values[name])
                    changed = True
            if changed:
                session.add(row)
                result.updated += 1
            else:
                result.unchanged += 1

        session.commit()
        logger.info(
            "Upserted executions for %s: %d inserted, %d updated, %d unchanged",
            account.account_number,
            result.inserted,
            result.updated,
            result.unchanged,
        )
        return result

    @staticmethod
    def update_running_balances(session: Session, rows: Sequence[Execution], balances: Sequence[float]) -> int:
        """Write recomputed balances onto stored rows; returns how many changed."""
        if len(rows) != len(balances):
            raise ValueError("balances must align with rows")
        changed = 0
        for row, balance in zip(rows, balances):
            if not _same(row.running_balance, balance):
                row.running_balance = balance
                session.add(row)
                changed += 1
        session.commit()
        return changed

    @staticmethod
    def delete_executions_before(session: Session, account: Account, cutoff: datetime) -> int:
        """Remove stored executions strictly before the cutoff."""
        try:
            deleted = session.query(Execution).filter(
                Execution.account_id == account.id,
                Execution.ts_utc < naive_utc(cutoff),
            ).delete(synchronize_session=False)
            session.commit()
        except Exception:
            session.rollback()
            raise
        if deleted:
            logger.info("Deleted %d executions before %s for %s", deleted, cutoff.isoformat(), account.account_number)
        return deleted

    @staticmethod
    def replace_open_positions(
        session: Session,
        account: Account,
        positions: Sequence[ParsedOpenPosition],
        as_of: Optional[datetime] = None,
    ) -> int:
        """
        Replace the account's open-position snapshot.

        Delete and insert share one transaction, so readers see either the old
        snapshot or the new one.
        """
        as_of = as_of or utcnow()
        try:
            session.query(OpenPosition).filter(OpenPosition.account_id == account.id).delete(
                synchronize_session=False
            )
            by_symbol: Dict[str, ParsedOpenPosition] = {}
            for pos in positions:
                by_symbol[pos.symbol] = pos  # later rows for a symbol win
            for pos in by_symbol.values():
                session.add(
                    OpenPosition(
                        account_id=account.id,
                        symbol=pos.symbol,
                        quantity=pos.quantity,
                        cost_price=pos.cost_price,
                        market_price=pos.market_price,
                        market_value=pos.market_value,
                        unrealized_pnl=pos.unrealized_pnl,
                        currency=pos.currency,
                        position_date=as_of,
                    )
                )
            session.commit()
        except Exception:
            session.rollback()
            raise
        logger.info("Replaced open positions for %s with %d rows", account.account_number, len(by_symbol))
        return len(by_symbol)

    @staticmethod
    def upsert_equity_snapshots(session: Session, account: Account, points: Sequence[ParsedEquityPoint]) -> int:
        if not points:
            return 0
        stmt = select(EquitySnapshot).where(EquitySnapshot.account_id == account.id)
        existing = {row.report_date: row for row in session.exec(stmt).all()}

        for point in points:
            row = existing.get(point.report_date)
            if row is None:
                row = EquitySnapshot(account_id=account.id, report_date=point.report_date)
                existing[point.report_date] = row
            row.total_equity = point.total_equity
            row.cash = point.cash
            row.stock_value = point.stock_value
            session.add(row)

        session.commit()
        return len({p.report_date for p in points})

    @staticmethod
    def get_account_snapshot(session: Session, account: Account) -> Optional[AccountSnapshot]:
        return session.exec(select(AccountSnapshot).where(AccountSnapshot.account_id == account.id)).first()

    @staticmethod
    def save_account_snapshot(
        session: Session,
        account: Account,
        starting_cash: Optional[float],
        ending_cash: Optional[float],
        calibrated: bool,
        discrepancy: Optional[float],
    ) -> AccountSnapshot:
        snapshot = ExecutionImporter.get_account_snapshot(session, account)
        if snapshot is None:
            snapshot = AccountSnapshot(account_id=account.id)
        snapshot.starting_cash = starting_cash
        snapshot.ending_cash = ending_cash
        snapshot.synced_at = utcnow()
        snapshot.balance_calibrated = calibrated
        snapshot.balance_discrepancy = discrepancy
        session.add(snapshot)
        session.commit()
        session.refresh(snapshot)
        return snapshot

    @staticmethod
    def load_executions(
        session: Session,
        account: Account,
        symbol: Optional[str] = None,
        exclude_before: Optional[datetime] = None,
    ) -> List[Execution]:
        """Stored executions in canonical order, optionally from a cutoff onward."""
        stmt = select(Execution).where(Execution.account_id == account.id)
        if symbol:
            stmt = stmt.where(Execution.symbol == symbol)
        if exclude_before is not None:
            stmt = stmt.where(Execution.ts_utc >= naive_utc(exclude_before))
        return canonical_order(session.exec(stmt).all())
