"""
Normalization rules applied to a raw execution batch before it is stored.

All functions are pure: they take a list of execution-like records
(``execution_id``, ``ts_utc``, ``side``, ``quantity``, ``price``,
``commission``, ``net_cash``, ``realized_pnl``) and return new lists or values.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

import pytz

logger = logging.getLogger(__name__)

RECONCILE_TOLERANCE = 0.01


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive values (as read back from SQLite) are UTC."""
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def naive_utc(dt: datetime) -> datetime:
    # SQLite drops tzinfo; stored timestamps are naive UTC
    return as_utc(dt).replace(tzinfo=None)


def _id_key(execution_id: str):
    # Numeric ids compare numerically, others lexically; numbers sort first
    text = execution_id or ""
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


def canonical_key(execution):
    return (as_utc(execution.ts_utc), _id_key(execution.execution_id))


def canonical_order(executions: Iterable) -> List:
    """Sort by (timestamp, execution id) ascending."""
    return sorted(executions, key=canonical_key)


def _has_pnl(execution) -> bool:
    return execution.realized_pnl is not None and execution.realized_pnl != 0


def deduplicate(executions: Iterable) -> List:
    """
    Collapse repeated execution ids.

    A record with a non-zero realized P&L replaces one without; otherwise the
    first record seen is kept. First-seen order is preserved.
    """
    unique = {}
    for execution in executions:
        existing = unique.get(execution.execution_id)
        if existing is None:
            unique[execution.execution_id] = execution
        elif _has_pnl(execution) and not _has_pnl(existing):
            unique[execution.execution_id] = execution
    return list(unique.values())


def apply_cutoff(executions: Iterable, exclude_before: Optional[datetime]) -> List:
    """Drop executions strictly before the cutoff."""
    if exclude_before is None:
        return list(executions)
    cutoff = as_utc(exclude_before)
    return [e for e in executions if as_utc(e.ts_utc) >= cutoff]


def balance_delta(execution, basis: str = "cash") -> float:
    """Change in account balance caused by one execution."""
    if basis == "realized_pnl":
        return execution.realized_pnl or 0.0
    if basis != "cash":
        raise ValueError(f"Unknown balance basis: {basis}")
    net_cash = getattr(execution, "net_cash", None)
    if net_cash is not None:
        return net_cash
    gross = execution.quantity * execution.price
    signed = gross if execution.side == "SELL" else -gross
    return signed - abs(execution.commission or 0.0)


@dataclass
class BalanceSeries:
    """Running balance after each execution, in canonical order."""
    starting_balance: float
    balances: List[float] = field(default_factory=list)
    calibrated: bool = True
    anchor_source: str = ""  # "history", "statement", "config" or "" when uncalibrated

    @property
    def ending_balance(self) -> float:
        return self.balances[-1] if self.balances else self.starting_balance


def reconstruct_balances(
    executions: List,
    policy: str = "forward",
    basis: str = "cash",
    statement_starting_cash: Optional[float] = None,
    statement_ending_cash: Optional[float] = None,
    configured_starting_balance: Optional[float] = None,
    configured_current_balance: Optional[float] = None,
    opening_balance: Optional[float] = None,
) -> BalanceSeries:
    """
    Compute the running balance for executions already in canonical order.

    ``forward``: start from ``opening_balance`` (the stored balance just before
    the first execution), else the statement's starting cash, else the
    configured starting balance, and accumulate each execution's delta.

    ``reconcile``: take a known current balance (configured, else the
    statement's ending cash), subtract the batch's total delta to find the
    implied start, then accumulate forward the same way.

    With no anchor the series starts at zero and is marked uncalibrated.
    """
    deltas = [balance_delta(e, basis) for e in executions]

    if policy == "forward":
        if opening_balance is not None:
            start, source = opening_balance, "history"
        elif statement_starting_cash is not None:
            start, source = statement_starting_cash, "statement"
        elif configured_starting_balance is not None:
            start, source = configured_starting_balance, "config"
        else:
            start, source = None, ""
    elif policy == "reconcile":
        if configured_current_balance is not None:
            anchor, source = configured_current_balance, "config"
        elif statement_ending_cash is not None:
            anchor, source = statement_ending_cash, "statement"
        else:
            anchor, source = None, ""
        start = anchor - sum(deltas) if anchor is not None else None
    else:
        raise ValueError(f"Unknown balance policy: {policy}")

    calibrated = start is not None
    if not calibrated:
        logger.warning("No balance anchor available (policy=%s); series starts at 0 and is uncalibrated", policy)
        start = 0.0

    balances = []
    running = start
    for delta in deltas:
        running += delta
        balances.append(running)

    return BalanceSeries(
        starting_balance=start,
        balances=balances,
        calibrated=calibrated,
        anchor_source=source,
    )


@dataclass
class BalanceDiscrepancy:
    computed: float
    reported: float

    @property
    def difference(self) -> float:
        return self.computed - self.reported

    def __str__(self) -> str:
        return (
            f"ending balance differs by ${abs(self.difference):,.2f} "
            f"from broker-reported total (computed {self.computed:,.2f}, reported {self.reported:,.2f})"
        )


def reconcile_ending_balance(
    series: BalanceSeries,
    reported_ending_cash: Optional[float],
    tolerance: float = RECONCILE_TOLERANCE,
) -> Optional[BalanceDiscrepancy]:
    """Compare the computed final balance with the broker's; never corrects."""
    if reported_ending_cash is None:
        return None
    discrepancy = BalanceDiscrepancy(computed=series.ending_balance, reported=reported_ending_cash)
    if abs(discrepancy.difference) <= tolerance:
        return None
    logger.warning("Balance reconciliation: %s", discrepancy)
    return discrepancy
