"""Metrics and reporting calculations."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

import pandas as pd
import pytz
from sqlmodel import Session, select

from tradeledger.db.models import EquitySnapshot, Execution
from tradeledger.domain.ledger import as_utc, canonical_order, naive_utc


def local_date(ts, report_timezone: str = "US/Eastern") -> date:
    return as_utc(ts).astimezone(pytz.timezone(report_timezone)).date()


@dataclass(frozen=True)
class ExclusionRule:
    """Hide one symbol on the given local dates (display only)."""
    symbol: str
    dates: FrozenSet[date] = field(default_factory=frozenset)

    def matches(self, execution, report_timezone: str = "US/Eastern") -> bool:
        if execution.symbol != self.symbol:
            return False
        # No dates means every date
        return not self.dates or local_date(execution.ts_utc, report_timezone) in self.dates


def apply_exclusions(processed: Iterable, rules: Sequence[ExclusionRule], report_timezone: str = "US/Eastern") -> List:
    if not rules:
        return list(processed)
    return [p for p in processed if not any(rule.matches(p, report_timezone) for rule in rules)]


def _realized(p) -> Optional[float]:
    pnl = p.realized_pnl
    if pnl is None or pnl == 0:
        return None
    return pnl


class MetricsCalculator:
    """Calculate trading metrics and equity curve."""

    @staticmethod
    def get_overview_stats(processed: Iterable) -> Dict:
        """Overall statistics over executions that realized P&L."""
        items = list(processed)
        closed = [p for p in items if _realized(p) is not None]

        if not closed:
            return {
                "total_trades": 0,
                "winning_trades": 0,
                "losing_trades": 0,
                "win_rate": 0.0,
                "total_pnl": 0.0,
                "total_commissions": sum(abs(p.commission or 0.0) for p in items),
                "avg_win": 0.0,
                "avg_loss": 0.0,
                "profit_factor": 0.0,
                "avg_holding": None,
            }

        wins = [p.realized_pnl for p in closed if p.realized_pnl > 0]
        losses = [p.realized_pnl for p in closed if p.realized_pnl < 0]
        gross_losses = sum(abs(x) for x in losses)

        durations = [p.holding_duration for p in closed if getattr(p, "holding_duration", None) is not None]
        avg_holding = sum(durations, timedelta()) / len(durations) if durations else None

        return {
            "total_trades": len(closed),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "win_rate": len(wins) / len(closed),
            "total_pnl": sum(p.realized_pnl for p in closed),
            "total_commissions": sum(abs(p.commission or 0.0) for p in items),
            "avg_win": sum(wins) / len(wins) if wins else 0.0,
            "avg_loss": gross_losses / len(losses) if losses else 0.0,
            "profit_factor": sum(wins) / gross_losses if gross_losses > 0 else 0.0,
            "avg_holding": avg_holding,
        }

    @staticmethod
    def get_daily_returns(
        processed: Iterable,
        starting_balance: float,
        report_timezone: str = "US/Eastern",
    ) -> pd.DataFrame:
        """
        Realized P&L per local trading day.

        Returns DataFrame with columns: date, trades, daily_pnl, start_balance,
        return_pct, cumulative_pnl. ``return_pct`` is relative to the balance at
        the start of that day and is NaN when that balance is zero.
        """
        columns = ["date", "trades", "daily_pnl", "start_balance", "return_pct", "cumulative_pnl"]
        rows = [
            {"date": local_date(p.ts_utc, report_timezone), "pnl": p.realized_pnl}
            for p in processed
            if _realized(p) is not None
        ]
        if not rows:
            return pd.DataFrame(columns=columns)

        df = (
            pd.DataFrame(rows)
            .groupby("date", as_index=False)
            .agg(trades=("pnl", "count"), daily_pnl=("pnl", "sum"))
            .sort_values("date")
            .reset_index(drop=True)
        )
        df["cumulative_pnl"] = df["daily_pnl"].cumsum()
        df["start_balance"] = starting_balance + df["cumulative_pnl"] - df["daily_pnl"]
        df["return_pct"] = df["daily_pnl"] / df["start_balance"].where(df["start_balance"] != 0) * 100.0
        return df[columns]

    @staticmethod
    def get_equity_curve(executions: Iterable) -> pd.DataFrame:
        """
        Running balance after each execution, with drawdown from the running peak.

        Returns DataFrame with columns: ts_utc, execution_id, balance, peak, drawdown
        """
        rows = [
            {"ts_utc": as_utc(e.ts_utc), "execution_id": e.execution_id, "balance": e.running_balance}
            for e in canonical_order(executions)
            if e.running_balance is not None
        ]
        if not rows:
            return pd.DataFrame(columns=["ts_utc", "execution_id", "balance", "peak", "drawdown"])

        df = pd.DataFrame(rows)
        df["peak"] = df["balance"].cummax()
        df["drawdown"] = df["balance"] - df["peak"]
        return df

    @staticmethod
    def get_instrument_stats(processed: Iterable) -> pd.DataFrame:
        """Get performance by instrument."""
        by_symbol: Dict[str, List] = {}
        for p in processed:
            by_symbol.setdefault(p.symbol, []).append(p)

        rows = []
        for symbol, items in sorted(by_symbol.items()):
            closed = [p.realized_pnl for p in items if _realized(p) is not None]
            wins = len([x for x in closed if x > 0])
            rows.append(
                {
                    "symbol": symbol,
                    "executions": len(items),
                    "closed": len(closed),
                    "wins": wins,
                    "win_rate": wins / len(closed) if closed else 0.0,
                    "commissions": sum(abs(p.commission or 0.0) for p in items),
                    "realized_pnl": sum(closed),
                }
            )

        return pd.DataFrame(
            rows,
            columns=["symbol", "executions", "closed", "wins", "win_rate", "commissions", "realized_pnl"],
        )

    @staticmethod
    def compare_equity_snapshots(
        session: Session,
        account_id: str,
        report_timezone: str = "US/Eastern",
        exclude_before: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """
        Broker daily cash vs. the last computed running balance on or before each
        report date. Executions before ``exclude_before`` are ignored.

        Returns DataFrame with columns: report_date, broker_cash, total_equity,
        running_balance, difference
        """
        columns = ["report_date", "broker_cash", "total_equity", "running_balance", "difference"]

        snapshots = session.exec(
            select(EquitySnapshot)
            .where(EquitySnapshot.account_id == account_id)
            .order_by(EquitySnapshot.report_date)
        ).all()
        if not snapshots:
            return pd.DataFrame(columns=columns)

        stmt = select(Execution).where(
            Execution.account_id == account_id,
            Execution.running_balance.is_not(None),
        )
        if exclude_before is not None:
            stmt = stmt.where(Execution.ts_utc >= naive_utc(exclude_before))
        executions = session.exec(stmt).all()

        end_of_day: Dict[date, float] = {}
        for e in canonical_order(executions):
            end_of_day[local_date(e.ts_utc, report_timezone)] = e.running_balance

        days = sorted(end_of_day)
        rows = []
        for snap in snapshots:
            balance = None
            for day in days:
                if day > snap.report_date:
                    break
                balance = end_of_day[day]
            rows.append(
                {
                    "report_date": snap.report_date,
                    "broker_cash": snap.cash,
                    "total_equity": snap.total_equity,
                    "running_balance": balance,
                    "difference": balance - snap.cash if balance is not None else None,
                }
            )

        return pd.DataFrame(rows, columns=columns)
