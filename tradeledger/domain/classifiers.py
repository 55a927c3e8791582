"""
Opening/closing classification strategies for the FIFO matcher.

Two upstream feed contracts exist and neither is assumed correct for every
account, so the choice is made per account:

- ``net_position``: trusts quantity and side on every row. An execution closes
  up to the current net position and opens whatever is left over, so one fill
  can close a long and open a short.
- ``realized_pnl``: trusts the broker's realized P&L flag. Zero or missing
  means opener, anything else means closer. A breakeven close is therefore
  misread as an opener, and a fill is never split.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Type

from tradeledger.domain.models import PositionState


@dataclass(frozen=True)
class Classification:
    close_quantity: float = 0.0
    open_quantity: float = 0.0


class ExecutionClassifier(ABC):
    name: str = ""

    @abstractmethod
    def classify(self, state: PositionState, execution, signed_qty: float) -> Classification:
        """Split an execution's quantity into closing and opening parts."""


class NetPositionClassifier(ExecutionClassifier):
    name = "net_position"

    def classify(self, state, execution, signed_qty):
        current = state.net_quantity
        same_direction = current == 0 or (current > 0) == (signed_qty > 0)
        if same_direction:
            return Classification(open_quantity=abs(signed_qty))

        close_qty = min(abs(signed_qty), abs(current))
        return Classification(
            close_quantity=close_qty,
            open_quantity=abs(signed_qty) - close_qty,
        )


class RealizedPnlClassifier(ExecutionClassifier):
    name = "realized_pnl"

    def classify(self, state, execution, signed_qty):
        pnl = execution.realized_pnl
        if pnl is None or pnl == 0:
            return Classification(open_quantity=abs(signed_qty))
        return Classification(close_quantity=abs(signed_qty))


CLASSIFIERS: Dict[str, Type[ExecutionClassifier]] = {
    NetPositionClassifier.name: NetPositionClassifier,
    RealizedPnlClassifier.name: RealizedPnlClassifier,
}


def get_classifier(name: str) -> ExecutionClassifier:
    try:
        return CLASSIFIERS[name]()
    except KeyError:
        raise ValueError(f"Unknown classifier {name!r}; expected one of {sorted(CLASSIFIERS)}") from None
