"""Domain value objects."""

from typing import Optional, Deque, List, Dict, Tuple, Any
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta

# Quantities are floats; anything closer to zero than this is zero
QTY_EPSILON = 1e-9


@dataclass
class OpenLot:
    """Represents an open lot (for FIFO matching)."""
    execution: Any
    side: str  # side of the opening execution
    remaining_quantity: float

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id


@dataclass
class PositionState:
    """Tracks net position and open lots for one (account, symbol) partition."""
    net_quantity: float = 0.0  # Positive for LONG, negative for SHORT
    open_lots: Deque[OpenLot] = field(default_factory=deque)

    def open_quantity(self, side: Optional[str] = None) -> float:
        return sum(
            lot.remaining_quantity for lot in self.open_lots
            if side is None or lot.side == side
        )


@dataclass(frozen=True)
class LotMatch:
    """Quantity of an opening execution closed by a later execution."""
    closing_execution_id: str
    opening_execution_id: str
    quantity: float


@dataclass(frozen=True)
class MatchAnomaly:
    execution_id: str
    account_id: str
    symbol: str
    kind: str  # unmatched_close, invalid_quantity, invalid_side, direction_mismatch
    detail: str = ""


@dataclass
class ProcessedExecution:
    """Execution annotated with its position lineage."""
    execution: Any
    holding_duration: Optional[timedelta] = None
    position_direction: Optional[str] = None  # "L" (was long) or "S" (was short)
    role: Optional[str] = None  # open, close, split
    matched_quantity: float = 0.0

    def __getattr__(self, name):
        # Expose the wrapped execution's fields (symbol, side, realized_pnl...)
        if name == "execution":
            raise AttributeError(name)
        return getattr(self.execution, name)

    @property
    def is_closing(self) -> bool:
        return self.holding_duration is not None


@dataclass
class MatchResult:
    processed: List[ProcessedExecution] = field(default_factory=list)
    matches: List[LotMatch] = field(default_factory=list)
    anomalies: List[MatchAnomaly] = field(default_factory=list)
    open_lots: Dict[Tuple[str, str], List[OpenLot]] = field(default_factory=dict)

    @property
    def anomaly_count(self) -> int:
        return len(self.anomalies)

    def by_execution_id(self) -> Dict[str, ProcessedExecution]:
        return {p.execution.execution_id: p for p in self.processed}

    def matches_for(self, closing_execution_id: str) -> List[LotMatch]:
        return [m for m in self.matches if m.closing_execution_id == closing_execution_id]

    def remaining_quantity(self, account_id: str, symbol: str) -> float:
        return sum(lot.remaining_quantity for lot in self.open_lots.get((account_id, symbol), []))
