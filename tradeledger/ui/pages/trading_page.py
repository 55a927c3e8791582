"""Trading page - annotated execution log, KPIs and daily returns."""

import pandas as pd
import plotly.express as px
import pytz
import streamlit as st
from sqlmodel import Session, select

from tradeledger.db.models import AccountSnapshot
from tradeledger.domain.matcher import format_duration, process_executions
from tradeledger.domain.metrics import ExclusionRule, MetricsCalculator, apply_exclusions, local_date
from tradeledger.domain.ledger import as_utc
from tradeledger.io.importer import ExecutionImporter
from tradeledger.ui.helpers.current_context import account_config_for, require_account


def render(session: Session):
    """Render trading page."""
    st.subheader("Trading")

    account = require_account()
    account_config = account_config_for(account.account_number)
    tz_name = st.session_state.get("report_timezone", "US/Eastern")
    tz = pytz.timezone(tz_name)

    executions = ExecutionImporter.load_executions(session, account, exclude_before=account_config.exclude_before)
    if not executions:
        st.info("No executions yet. Sync or import IBKR data first.")
        return

    mode = st.radio(
        "Open/close classification",
        ["net_position", "realized_pnl"],
        index=0 if account_config.classifier == "net_position" else 1,
        horizontal=True,
    )
    result = process_executions(executions, mode=mode)

    rules = render_exclusions(result.processed, tz_name)
    processed = apply_exclusions(result.processed, rules, tz_name)

    render_kpis(session, account, processed, tz_name)

    rows = []
    for p in reversed(processed):
        rows.append({
            "Time": as_utc(p.ts_utc).astimezone(tz).strftime("%Y-%m-%d %H:%M:%S"),
            "ID": p.execution_id,
            "Symbol": p.symbol,
            "Side": p.side,
            "Qty": p.quantity,
            "Price": p.price,
            "Commission": p.commission,
            "Realized P&L": p.realized_pnl,
            "Balance": p.running_balance,
            "Dir": p.position_direction or "",
            "Held": format_duration(p.holding_duration),
        })
    df = pd.DataFrame(rows)

    st.download_button(
        label="📥 Export to CSV",
        data=df.to_csv(index=False),
        file_name=f"executions_{account.account_number}.csv",
        mime="text/csv",
    )
    st.dataframe(df, use_container_width=True, hide_index=True)

    if result.anomalies:
        with st.expander(f"⚠️ {result.anomaly_count} matching anomalies"):
            for a in result.anomalies:
                st.write(f"{a.kind}: {a.symbol} {a.execution_id} ({a.detail})")


def render_exclusions(processed, tz_name: str):
    """Symbol/date hide rules, kept in session state for this browser session."""
    with st.expander("Hide symbols on dates"):
        symbols = sorted({p.symbol for p in processed})
        col1, col2 = st.columns(2)
        with col1:
            symbol = st.selectbox("Symbol", symbols, key="exclude_symbol")
        with col2:
            dates = sorted({local_date(p.ts_utc, tz_name) for p in processed if p.symbol == symbol}, reverse=True)
            chosen = st.multiselect("Dates (empty = all)", dates, key="exclude_dates")
        if st.button("Add rule"):
            st.session_state.exclusions.append(ExclusionRule(symbol=symbol, dates=frozenset(chosen)))

        for i, rule in enumerate(list(st.session_state.exclusions)):
            label = ", ".join(str(d) for d in sorted(rule.dates)) or "all dates"
            if st.button(f"Remove {rule.symbol} ({label})", key=f"rm_rule_{i}"):
                st.session_state.exclusions.pop(i)
                st.rerun()

    return st.session_state.exclusions


def render_kpis(session: Session, account, processed, tz_name: str):
    stats = MetricsCalculator.get_overview_stats(processed)

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Closed Trades", stats["total_trades"])
    col2.metric("Win Rate", f"{stats['win_rate']:.1%}")
    col3.metric("Total P&L", f"${stats['total_pnl']:,.2f}")
    col4.metric("Profit Factor", f"{stats['profit_factor']:.2f}")

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Avg Win", f"${stats['avg_win']:,.2f}")
    col2.metric("Avg Loss", f"${stats['avg_loss']:,.2f}")
    col3.metric("Commissions", f"${stats['total_commissions']:,.2f}")
    col4.metric("Avg Holding", format_duration(stats["avg_holding"]) or "-")

    snapshot = session.exec(select(AccountSnapshot).where(AccountSnapshot.account_id == account.id)).first()
    if snapshot is not None and not snapshot.balance_calibrated:
        st.warning("Running balance is uncalibrated: no starting balance was available.")
    if snapshot is not None and snapshot.balance_discrepancy is not None:
        st.warning(f"Ending balance differs by ${abs(snapshot.balance_discrepancy):,.2f} from broker-reported cash.")

    starting = snapshot.starting_cash if snapshot and snapshot.starting_cash is not None else 0.0
    daily = MetricsCalculator.get_daily_returns(processed, starting, tz_name)
    if daily.empty:
        return

    st.divider()
    fig = px.bar(
        daily,
        x="date",
        y="daily_pnl",
        title="Daily Realized P&L",
        labels={"daily_pnl": "P&L ($)", "date": "Date"},
        hover_data=["trades", "return_pct"],
    )
    st.plotly_chart(fig, use_container_width=True)
