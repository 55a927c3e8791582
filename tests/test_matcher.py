# tests/test_matcher.py
from __future__ import annotations

import random
from datetime import timedelta

import pytest

from tradeledger.domain.matcher import FifoMatcher, format_duration, process_executions
from tradeledger.domain.classifiers import NetPositionClassifier, RealizedPnlClassifier, get_classifier


def _annotations(result):
    return [
        (p.execution.execution_id, p.holding_duration, p.position_direction, p.role, p.matched_quantity)
        for p in result.processed
    ]


def test_open_partial_close_full_close(make_execution):
    # BUY 100 @10, SELL 60 @12 (+120), SELL 40 @11 (+40)
    executions = [
        make_execution("1", "BUY", 100, minutes=0, price=10),
        make_execution("2", "SELL", 60, minutes=1, price=12, realized_pnl=120.0),
        make_execution("3", "SELL", 40, minutes=2, price=11, realized_pnl=40.0),
    ]

    result = process_executions(executions)
    opened, first_close, second_close = result.processed

    assert opened.holding_duration is None
    assert opened.position_direction is None
    assert opened.role == "open"

    assert first_close.holding_duration == timedelta(minutes=1)
    assert first_close.position_direction == "L"
    assert first_close.matched_quantity == 60
    assert [(m.opening_execution_id, m.quantity) for m in result.matches_for("2")] == [("1", 60)]

    assert second_close.holding_duration == timedelta(minutes=2)
    assert second_close.position_direction == "L"
    assert [(m.opening_execution_id, m.quantity) for m in result.matches_for("3")] == [("1", 40)]

    assert result.open_lots == {}
    assert result.anomaly_count == 0


def test_direction_flip_is_split(make_execution):
    executions = [
        make_execution("1", "BUY", 50, minutes=0),
        make_execution("2", "SELL", 80, minutes=1),
    ]

    result = process_executions(executions)
    flip = result.processed[1]

    assert flip.role == "split"
    assert flip.holding_duration == timedelta(minutes=1)
    assert flip.position_direction == "L"
    assert flip.matched_quantity == 50

    [lot] = result.open_lots[("U12345678", "AAPL")]
    assert lot.execution_id == "2"
    assert lot.side == "SELL"
    assert lot.remaining_quantity == 30
    assert result.remaining_quantity("U12345678", "AAPL") == 30


def test_short_cover_is_labelled_s(make_execution):
    result = process_executions([
        make_execution("1", "SELL", 10, minutes=0),
        make_execution("2", "BUY", 10, minutes=5),
    ])
    cover = result.processed[1]
    assert cover.position_direction == "S"
    assert cover.holding_duration == timedelta(minutes=5)


def test_fifo_closes_oldest_lot_first(make_execution):
    executions = [
        make_execution("A", "BUY", 10, minutes=1),
        make_execution("B", "BUY", 10, minutes=2),
        make_execution("C", "SELL", 10, minutes=3),
    ]

    result = process_executions(executions)

    assert [m.opening_execution_id for m in result.matches_for("C")] == ["A"]
    assert result.processed[2].holding_duration == timedelta(minutes=2)
    [lot] = result.open_lots[("U12345678", "AAPL")]
    assert lot.execution_id == "B"


def test_duration_uses_earliest_matched_open(make_execution):
    executions = [
        make_execution("A", "BUY", 5, minutes=0),
        make_execution("B", "BUY", 5, minutes=10),
        make_execution("C", "SELL", 8, minutes=30),
    ]

    result = process_executions(executions)

    assert [(m.opening_execution_id, m.quantity) for m in result.matches_for("C")] == [("A", 5), ("B", 3)]
    assert result.processed[2].holding_duration == timedelta(minutes=30)


def test_output_follows_input_order_but_matches_canonically(make_execution):
    close = make_execution("2", "SELL", 10, minutes=5)
    opened = make_execution("1", "BUY", 10, minutes=0)

    result = process_executions([close, opened])

    assert [p.execution.execution_id for p in result.processed] == ["2", "1"]
    assert result.processed[0].holding_duration == timedelta(minutes=5)


def test_partitions_are_independent(make_execution):
    executions = [
        make_execution("1", "BUY", 10, symbol="AAPL"),
        make_execution("2", "SELL", 10, minutes=1, symbol="MSFT"),
        make_execution("3", "SELL", 10, minutes=2, symbol="AAPL", account_id="U999"),
    ]

    result = process_executions(executions)

    # Nothing closes across symbols or accounts
    assert all(p.holding_duration is None for p in result.processed)
    assert set(result.open_lots) == {("U12345678", "AAPL"), ("U12345678", "MSFT"), ("U999", "AAPL")}


def test_symbol_filter(make_execution):
    executions = [make_execution("1", "BUY", 10, symbol="AAPL"), make_execution("2", "BUY", 10, symbol="MSFT")]
    result = process_executions(executions, symbol="MSFT")
    assert [p.symbol for p in result.processed] == ["MSFT"]


def test_matching_is_deterministic(make_execution):
    rng = random.Random(7)
    executions = []
    for i in range(200):
        executions.append(
            make_execution(
                str(i),
                rng.choice(["BUY", "SELL"]),
                rng.randint(1, 50),
                minutes=rng.randint(0, 100),
                symbol=rng.choice(["AAPL", "MSFT", "TSLA"]),
            )
        )

    first = process_executions(executions)
    second = process_executions(list(executions))

    assert _annotations(first) == _annotations(second)
    assert first.matches == second.matches


def test_quantity_conservation(make_execution):
    rng = random.Random(11)
    executions = [
        make_execution(str(i), rng.choice(["BUY", "SELL"]), rng.randint(1, 30), minutes=i, symbol=rng.choice(["A", "B"]))
        for i in range(150)
    ]

    result = process_executions(executions)

    for symbol in ("A", "B"):
        closing_ids = {e.execution_id for e in executions if e.symbol == symbol}
        matched = sum(m.quantity for m in result.matches if m.closing_execution_id in closing_ids)
        by_id = result.by_execution_id()
        opened = sum(
            e.quantity - by_id[e.execution_id].matched_quantity
            for e in executions
            if e.symbol == symbol
        )
        remaining = result.remaining_quantity("U12345678", symbol)
        assert matched == pytest.approx(opened - remaining)
        # Final open lots equal the net position
        net = sum(e.quantity if e.side == "BUY" else -e.quantity for e in executions if e.symbol == symbol)
        assert remaining == pytest.approx(abs(net))

    for p in result.processed:
        assert p.matched_quantity <= p.execution.quantity


def test_realized_pnl_mode_classifies_by_pnl(make_execution):
    executions = [
        make_execution("1", "BUY", 50, minutes=0, realized_pnl=0.0),
        make_execution("2", "SELL", 50, minutes=3, realized_pnl=25.0),
    ]

    result = process_executions(executions, mode="realized_pnl")

    assert result.processed[0].role == "open"
    assert result.processed[1].role == "close"
    assert result.processed[1].holding_duration == timedelta(minutes=3)
    assert result.processed[1].position_direction == "L"


def test_modes_diverge_on_breakeven_close(make_execution):
    # A true close that broke even carries realized P&L of zero
    executions = [
        make_execution("1", "BUY", 10, minutes=0),
        make_execution("2", "SELL", 10, minutes=1, realized_pnl=0.0),
    ]

    by_position = process_executions(executions, mode="net_position")
    by_pnl = process_executions(executions, mode="realized_pnl")

    assert by_position.processed[1].holding_duration == timedelta(minutes=1)
    assert by_pnl.processed[1].holding_duration is None
    assert by_pnl.processed[1].role == "open"


def test_unmatched_close_is_an_anomaly(make_execution):
    result = process_executions([make_execution("1", "SELL", 10, realized_pnl=5.0)], mode="realized_pnl")

    p = result.processed[0]
    assert p.holding_duration is None
    assert p.position_direction is None
    assert [a.kind for a in result.anomalies] == ["unmatched_close"]


def test_direction_mismatch_is_an_anomaly(make_execution):
    # P&L says the second BUY closes, but the only lot is also a BUY
    executions = [
        make_execution("1", "BUY", 10, minutes=0),
        make_execution("2", "BUY", 10, minutes=1, realized_pnl=3.0),
    ]

    result = process_executions(executions, mode="realized_pnl")

    assert result.processed[1].holding_duration is None
    assert [a.kind for a in result.anomalies] == ["direction_mismatch"]
    assert result.remaining_quantity("U12345678", "AAPL") == 10


def test_invalid_rows_are_anomalies_not_errors(make_execution):
    bad_side = make_execution("1", "HOLD", 10)
    zero_qty = make_execution("2", "BUY", 0)

    result = process_executions([bad_side, zero_qty])

    assert sorted(a.kind for a in result.anomalies) == ["invalid_quantity", "invalid_side"]
    assert all(p.role is None for p in result.processed)


def test_matcher_does_not_mutate_input(make_execution):
    executions = [make_execution("1", "BUY", 10), make_execution("2", "SELL", 10, minutes=1)]
    snapshot = [(e.execution_id, e.quantity, e.realized_pnl) for e in executions]

    FifoMatcher().run(executions)

    assert [(e.execution_id, e.quantity, e.realized_pnl) for e in executions] == snapshot


def test_get_classifier():
    assert isinstance(get_classifier("net_position"), NetPositionClassifier)
    assert isinstance(get_classifier("realized_pnl"), RealizedPnlClassifier)
    with pytest.raises(ValueError):
        get_classifier("vibes")


@pytest.mark.parametrize(
    "duration, expected",
    [
        (timedelta(seconds=5), "00:00:05"),
        (timedelta(hours=1, minutes=2, seconds=3), "01:02:03"),
        (timedelta(days=2, hours=3), "2d 03:00:00"),
        (None, ""),
        (timedelta(seconds=-1), ""),
    ],
)
def test_format_duration(duration, expected):
    assert format_duration(duration) == expected
