# tests/test_metrics.py
from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest
import pytz

from tradeledger.domain.matcher import process_executions
from tradeledger.domain.metrics import ExclusionRule, MetricsCalculator, apply_exclusions
from tradeledger.io.importer import ExecutionImporter
from tradeledger.sync import ingest_statements


@pytest.fixture
def processed(make_execution):
    # Day 1 (2025-01-15 ET): +120 and -20; day 2: +40
    executions = [
        make_execution("1", "BUY", 100, minutes=0, price=10, commission=1.0),
        make_execution("2", "SELL", 60, minutes=60, price=12, realized_pnl=120.0, commission=1.0),
        make_execution("3", "BUY", 10, minutes=90, symbol="MSFT", commission=1.0),
        make_execution("4", "SELL", 10, minutes=120, symbol="MSFT", realized_pnl=-20.0, commission=1.0),
        make_execution("5", "SELL", 40, minutes=60 * 24, price=11, realized_pnl=40.0, commission=1.0),
    ]
    return process_executions(executions).processed


def test_overview_stats(processed):
    stats = MetricsCalculator.get_overview_stats(processed)

    assert stats["total_trades"] == 3
    assert stats["winning_trades"] == 2
    assert stats["losing_trades"] == 1
    assert stats["win_rate"] == pytest.approx(2 / 3)
    assert stats["total_pnl"] == pytest.approx(140.0)
    assert stats["avg_win"] == pytest.approx(80.0)
    assert stats["avg_loss"] == pytest.approx(20.0)
    assert stats["profit_factor"] == pytest.approx(8.0)
    assert stats["total_commissions"] == pytest.approx(5.0)
    # Holding: 60 min, 30 min, 1 day
    assert stats["avg_holding"] == (timedelta(minutes=60) + timedelta(minutes=30) + timedelta(days=1)) / 3


def test_overview_stats_empty():
    stats = MetricsCalculator.get_overview_stats([])
    assert stats["total_trades"] == 0
    assert stats["avg_holding"] is None


def test_daily_returns_against_day_start_balance(processed):
    df = MetricsCalculator.get_daily_returns(processed, starting_balance=10_000.0)

    assert list(df["date"]) == [date(2025, 1, 15), date(2025, 1, 16)]
    assert list(df["daily_pnl"]) == pytest.approx([100.0, 40.0])
    assert list(df["start_balance"]) == pytest.approx([10_000.0, 10_100.0])
    assert list(df["return_pct"]) == pytest.approx([1.0, 40.0 / 10_100.0 * 100])
    assert list(df["cumulative_pnl"]) == pytest.approx([100.0, 140.0])


def test_daily_returns_empty():
    df = MetricsCalculator.get_daily_returns([], starting_balance=0.0)
    assert df.empty
    assert "return_pct" in df.columns


def test_exclusions_hide_symbol_on_date(processed):
    rules = [ExclusionRule(symbol="MSFT", dates=frozenset({date(2025, 1, 15)}))]

    visible = apply_exclusions(processed, rules)

    assert [p.execution_id for p in visible] == ["1", "2", "5"]
    assert len(processed) == 5
    assert apply_exclusions(processed, [ExclusionRule(symbol="MSFT", dates=frozenset({date(2025, 1, 16)}))]) == processed


def test_exclusion_without_dates_hides_every_day(processed):
    visible = apply_exclusions(processed, [ExclusionRule(symbol="AAPL")])
    assert {p.symbol for p in visible} == {"MSFT"}


def test_instrument_stats(processed):
    df = MetricsCalculator.get_instrument_stats(processed)

    assert list(df["symbol"]) == ["AAPL", "MSFT"]
    aapl = df.iloc[0]
    assert aapl["executions"] == 3
    assert aapl["closed"] == 2
    assert aapl["wins"] == 2
    assert aapl["realized_pnl"] == pytest.approx(160.0)
    assert df.iloc[1]["win_rate"] == 0.0


def test_equity_curve_and_snapshot_comparison(session, account_config, sample_xml, test_account):
    ingest_statements(session, account_config, [sample_xml])

    executions = ExecutionImporter.load_executions(session, test_account)
    curve = MetricsCalculator.get_equity_curve(executions)

    assert list(curve["balance"]) == pytest.approx([84999.0, 94118.0, 100077.0, 96076.0])
    assert list(curve["drawdown"]) == pytest.approx([0.0, 0.0, 0.0, -4001.0])

    comparison = MetricsCalculator.compare_equity_snapshots(session, test_account.id)
    assert list(comparison["report_date"]) == [date(2025, 1, 15), date(2025, 1, 16)]
    assert list(comparison["running_balance"]) == pytest.approx([94118.0, 96076.0])
    assert list(comparison["difference"]) == pytest.approx([0.0, 0.0])


def test_snapshot_comparison_ignores_executions_before_cutoff(session, account_config, sample_xml, test_account):
    ingest_statements(session, account_config, [sample_xml])

    comparison = MetricsCalculator.compare_equity_snapshots(
        session, test_account.id, exclude_before=pytz.UTC.localize(datetime(2025, 1, 16))
    )

    assert comparison["running_balance"].isna().tolist() == [True, False]
    assert comparison["running_balance"].iloc[1] == pytest.approx(96076.0)


def test_equity_curve_empty():
    curve = MetricsCalculator.get_equity_curve([])
    assert curve.empty
