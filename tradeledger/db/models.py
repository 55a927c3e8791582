"""
SQLModel definitions for the execution ledger.
Designed for SQLite locally, PostgreSQL in production.
"""

from datetime import datetime, date
from typing import Optional, List
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint
import pytz
import uuid


def utcnow() -> datetime:
    """Current time as naive UTC, the form timestamps are stored in."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


class Account(SQLModel, table=True):
    """Broker account (e.g. one IBKR account number)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_number: str = Field(unique=True, index=True)  # e.g., U12345678
    label: str = Field(default="")
    currency: str = Field(default="USD")
    created_at: datetime = Field(default_factory=utcnow)

    executions: List["Execution"] = Relationship(back_populates="account", cascade_delete=True)
    open_positions: List["OpenPosition"] = Relationship(back_populates="account", cascade_delete=True)
    equity_snapshots: List["EquitySnapshot"] = Relationship(back_populates="account", cascade_delete=True)


class Execution(SQLModel, table=True):
    """Single broker-reported fill, normalized and balance-annotated."""
    __tablename__ = "execution"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)

    # Broker trade id (unique per account; upsert key)
    execution_id: str = Field(index=True)
    symbol: str = Field(index=True)
    asset_class: str = Field(default="STK")

    # Timestamp (stored in UTC)
    ts_utc: datetime = Field(index=True)
    ts_raw: str = Field(default="")  # Raw string from the broker (for audit)
    ts_degraded: bool = Field(default=False)  # True when ts_utc is a "now" fallback

    side: str = Field()  # BUY or SELL
    quantity: float = Field()  # Always positive
    price: float = Field()
    commission: float = Field(default=0.0)  # Always positive (a cost)
    net_cash: float = Field(default=0.0)  # Signed cash effect of the fill
    currency: str = Field(default="USD")

    realized_pnl: Optional[float] = Field(default=None)
    running_balance: Optional[float] = Field(default=None)

    __table_args__ = (
        UniqueConstraint("account_id", "execution_id", name="uq_account_execution"),
    )

    account: Account = Relationship(back_populates="executions")

    @property
    def sort_key(self):
        return (self.ts_utc, self.execution_id)


class OpenPosition(SQLModel, table=True):
    """Broker point-in-time open position. Replaced wholesale on every sync."""
    __tablename__ = "open_position"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    symbol: str = Field()
    quantity: float = Field(default=0.0)
    cost_price: float = Field(default=0.0)
    market_price: float = Field(default=0.0)
    market_value: float = Field(default=0.0)
    unrealized_pnl: float = Field(default=0.0)
    currency: str = Field(default="USD")
    position_date: datetime = Field(default_factory=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "symbol", name="uq_account_position"),
    )

    account: Account = Relationship(back_populates="open_positions")


class AccountSnapshot(SQLModel, table=True):
    """Current cash state for an account as of the last sync."""
    __tablename__ = "account_snapshot"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", unique=True, index=True)
    starting_cash: Optional[float] = Field(default=None)
    ending_cash: Optional[float] = Field(default=None)
    synced_at: datetime = Field(default_factory=utcnow)

    # Execution-derived balance quality
    balance_calibrated: bool = Field(default=False)
    balance_discrepancy: Optional[float] = Field(default=None)


class EquitySnapshot(SQLModel, table=True):
    """Broker daily equity summary (ground truth for the running balance)."""
    __tablename__ = "equity_snapshot"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    report_date: date = Field(index=True)
    total_equity: float = Field(default=0.0)
    cash: float = Field(default=0.0)
    stock_value: float = Field(default=0.0)

    __table_args__ = (
        UniqueConstraint("account_id", "report_date", name="uq_account_report_date"),
    )

    account: Account = Relationship(back_populates="equity_snapshots")
