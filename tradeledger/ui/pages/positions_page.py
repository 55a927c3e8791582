"""Positions page - broker open positions and balance reconciliation."""

import plotly.express as px
import streamlit as st
from sqlmodel import Session, select

from tradeledger.db.models import AccountSnapshot, OpenPosition
from tradeledger.domain.metrics import MetricsCalculator
from tradeledger.io.importer import ExecutionImporter
from tradeledger.ui.helpers.current_context import account_config_for, require_account


def render(session: Session):
    """Render positions and reconciliation page."""
    account = require_account()
    account_config = account_config_for(account.account_number)

    st.subheader("Open Positions")
    positions = session.exec(
        select(OpenPosition)
        .where(OpenPosition.account_id == account.id)
        .order_by(OpenPosition.symbol)
    ).all()

    if not positions:
        st.info("No open positions in the last report.")
    else:
        st.caption(f"As of {positions[0].position_date:%Y-%m-%d %H:%M} UTC")
        st.dataframe(
            [
                {
                    "Symbol": p.symbol,
                    "Qty": p.quantity,
                    "Cost": p.cost_price,
                    "Price": p.market_price,
                    "Value": p.market_value,
                    "Unrealized P&L": p.unrealized_pnl,
                }
                for p in positions
            ],
            use_container_width=True,
            hide_index=True,
        )
        col1, col2 = st.columns(2)
        col1.metric("Market Value", f"${sum(p.market_value for p in positions):,.2f}")
        col2.metric("Unrealized P&L", f"${sum(p.unrealized_pnl for p in positions):,.2f}")

    st.divider()
    st.subheader("Balance")

    snapshot = session.exec(select(AccountSnapshot).where(AccountSnapshot.account_id == account.id)).first()
    if snapshot is not None:
        col1, col2, col3 = st.columns(3)
        col1.metric("Starting Cash", f"${snapshot.starting_cash or 0:,.2f}")
        col2.metric("Ending Cash", f"${snapshot.ending_cash or 0:,.2f}")
        col3.metric("Last Sync", f"{snapshot.synced_at:%Y-%m-%d %H:%M}")

    curve = MetricsCalculator.get_equity_curve(
        ExecutionImporter.load_executions(session, account, exclude_before=account_config.exclude_before)
    )
    if curve.empty:
        st.info("No running balance yet.")
    else:
        fig = px.line(curve, x="ts_utc", y="balance", title="Running Balance", labels={"balance": "Balance ($)", "ts_utc": "Time (UTC)"})
        st.plotly_chart(fig, use_container_width=True)

        fig_dd = px.area(curve, x="ts_utc", y="drawdown", title="Drawdown", labels={"drawdown": "Drawdown ($)", "ts_utc": "Time (UTC)"})
        st.plotly_chart(fig_dd, use_container_width=True)

    comparison = MetricsCalculator.compare_equity_snapshots(
        session,
        account.id,
        st.session_state.get("report_timezone", "US/Eastern"),
        exclude_before=account_config.exclude_before,
    )
    if comparison.empty:
        return

    st.subheader("Broker Cash vs Running Balance")
    fig = px.line(
        comparison,
        x="report_date",
        y=["broker_cash", "running_balance"],
        labels={"value": "Balance ($)", "report_date": "Date", "variable": ""},
        markers=True,
    )
    st.plotly_chart(fig, use_container_width=True)
    st.dataframe(comparison, use_container_width=True, hide_index=True)
