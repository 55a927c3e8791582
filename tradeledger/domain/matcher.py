"""
FIFO position matching over the execution log.
Implements lot matching, partial closes, position flips and holding durations.
"""

import logging
import math
from collections import defaultdict
from datetime import timedelta
from typing import Iterable, Optional

from tradeledger.domain.classifiers import ExecutionClassifier, NetPositionClassifier, get_classifier
from tradeledger.domain.ledger import as_utc, canonical_key
from tradeledger.domain.models import (
    QTY_EPSILON,
    LotMatch,
    MatchAnomaly,
    MatchResult,
    OpenLot,
    PositionState,
    ProcessedExecution,
)

logger = logging.getLogger(__name__)


class FifoMatcher:
    """Reconstructs open/close lineage from executions using FIFO matching.

    Pure: reads the executions, never mutates them, performs no I/O. Each
    (account_id, symbol) partition keeps its own net position and lot queue.
    """

    def __init__(self, classifier: Optional[ExecutionClassifier] = None):
        self.classifier = classifier or NetPositionClassifier()

    def run(self, executions: Iterable, symbol: Optional[str] = None) -> MatchResult:
        """
        Annotate executions with holding duration and direction.

        Args:
            executions: Execution-like records (account_id, execution_id, symbol,
                side, quantity, ts_utc, realized_pnl), in any order
            symbol: Optional symbol filter

        Returns:
            MatchResult whose ``processed`` list follows the input order
        """
        items = [e for e in executions if symbol is None or e.symbol == symbol]
        processed = [ProcessedExecution(execution=e) for e in items]
        result = MatchResult(processed=processed)

        states = defaultdict(PositionState)
        order = sorted(range(len(items)), key=lambda i: canonical_key(items[i]))
        for i in order:
            exe = items[i]
            state = states[(exe.account_id, exe.symbol)]
            self._apply(state, exe, processed[i], result)

        result.open_lots = {key: list(state.open_lots) for key, state in states.items() if state.open_lots}

        if result.anomalies:
            logger.warning("FIFO matching finished with %d anomalies", len(result.anomalies))
        return result

    def _apply(self, state: PositionState, exe, annotated: ProcessedExecution, result: MatchResult) -> None:
        side = (exe.side or "").upper()
        if side not in ("BUY", "SELL"):
            self._anomaly(result, exe, "invalid_side", f"side={exe.side!r}")
            return

        quantity = exe.quantity
        if quantity is None or not math.isfinite(quantity) or abs(quantity) <= QTY_EPSILON:
            self._anomaly(result, exe, "invalid_quantity", f"quantity={quantity!r}")
            return

        signed_qty = abs(quantity) if side == "BUY" else -abs(quantity)
        classification = self.classifier.classify(state, exe, signed_qty)

        if classification.close_quantity > QTY_EPSILON:
            matched, earliest_open, complete = self._drain(state, exe, side, classification.close_quantity, result)
            annotated.matched_quantity = matched
            if complete and earliest_open is not None:
                annotated.holding_duration = as_utc(exe.ts_utc) - earliest_open
                # SELL to close = was Long (L), BUY to close = was Short (S)
                annotated.position_direction = "L" if side == "SELL" else "S"
                annotated.role = "split" if classification.open_quantity > QTY_EPSILON else "close"

        if classification.open_quantity > QTY_EPSILON:
            state.open_lots.append(OpenLot(execution=exe, side=side, remaining_quantity=classification.open_quantity))
            if annotated.role is None:
                annotated.role = "open"

        state.net_quantity += signed_qty
        if abs(state.net_quantity) <= QTY_EPSILON:
            state.net_quantity = 0.0

    def _drain(self, state, exe, side, close_qty, result):
        """Consume lots oldest-first. Returns (matched, earliest_open_ts, complete)."""
        remaining = close_qty
        matched = 0.0
        earliest_open = None

        while remaining > QTY_EPSILON and state.open_lots:
            lot = state.open_lots[0]
            if lot.side == side:
                self._anomaly(
                    result, exe, "direction_mismatch",
                    f"oldest open lot {lot.execution_id} is also {side}",
                )
                return matched, earliest_open, False

            take = min(remaining, lot.remaining_quantity)
            lot.remaining_quantity -= take
            remaining -= take
            matched += take

            opened_at = as_utc(lot.execution.ts_utc)
            if earliest_open is None or opened_at < earliest_open:
                earliest_open = opened_at

            result.matches.append(
                LotMatch(
                    closing_execution_id=exe.execution_id,
                    opening_execution_id=lot.execution_id,
                    quantity=take,
                )
            )

            if lot.remaining_quantity <= QTY_EPSILON:
                state.open_lots.popleft()

        if remaining > QTY_EPSILON:
            self._anomaly(
                result, exe, "unmatched_close",
                f"{remaining:g} of {close_qty:g} had no open lot to close",
            )
            return matched, earliest_open, False

        return matched, earliest_open, True

    @staticmethod
    def _anomaly(result: MatchResult, exe, kind: str, detail: str) -> None:
        logger.debug("Anomaly %s on %s/%s %s: %s", kind, exe.account_id, exe.symbol, exe.execution_id, detail)
        result.anomalies.append(
            MatchAnomaly(
                execution_id=exe.execution_id,
                account_id=exe.account_id,
                symbol=exe.symbol,
                kind=kind,
                detail=detail,
            )
        )


def process_executions(executions: Iterable, mode: str = "net_position", symbol: Optional[str] = None) -> MatchResult:
    """Run the FIFO matcher with the named classification mode."""
    return FifoMatcher(get_classifier(mode)).run(executions, symbol=symbol)


def format_duration(duration: Optional[timedelta]) -> str:
    """Render "HH:MM:SS", or "Nd HH:MM:SS" past one day."""
    if duration is None:
        return ""
    seconds = int(duration.total_seconds())
    if seconds < 0:
        return ""
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days > 0:
        return f"{days}d {hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
