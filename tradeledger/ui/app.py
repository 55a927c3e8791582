"""Main Streamlit application."""

import streamlit as st
from sqlmodel import select

from tradeledger.db.models import Account
from tradeledger.db.session import get_session, init_db, make_engine
from tradeledger.errors import TradeLedgerError
from tradeledger.sync import ingest_statements, sync_account
from tradeledger.ui.helpers.current_context import account_config_for, get_app_config
from tradeledger.ui.pages import positions_page, trading_page

# Configure page
st.set_page_config(
    page_title="Trade Ledger",
    page_icon="📊",
    layout="wide",
    initial_sidebar_state="expanded",
)

cfg = get_app_config()
engine = make_engine(cfg.database_url)

# Initialize database
init_db(engine)


def init_session_state():
    """Initialize Streamlit session state."""
    if "account" not in st.session_state:
        st.session_state.account = None
    if "report_timezone" not in st.session_state:
        st.session_state.report_timezone = cfg.broker_timezone
    if "exclusions" not in st.session_state:
        st.session_state.exclusions = []


def show_sync_report(report):
    if report.error:
        st.error(report.summary())
    elif report.ok:
        st.success(report.summary())
    else:
        st.warning(report.summary())
    if report.warnings or report.report_failures:
        with st.expander("Details"):
            for name, reason in report.report_failures.items():
                st.write(f"⚠️ {name}: {reason}")
            for w in report.warnings[:20]:
                st.write(f"⚠️ {w}")


def sidebar(session):
    with st.sidebar:
        st.title("⚙️ Settings")

        accounts = session.exec(select(Account).order_by(Account.account_number)).all()
        stored = {a.account_number: a for a in accounts}
        numbers = sorted(set(stored) | {a.account_id for a in cfg.accounts})

        if not numbers:
            st.warning("No accounts configured or imported yet.")
            account_number = st.text_input("Account number for import", key="new_account")
        else:
            account_number = st.selectbox("Select Account", numbers)
        st.session_state.account = stored.get(account_number)

        st.subheader("Report Settings")
        timezones = ["US/Eastern", "US/Central", "US/Mountain", "US/Pacific", "UTC"]
        st.session_state.report_timezone = st.selectbox(
            "Report Timezone",
            timezones,
            index=timezones.index(cfg.broker_timezone) if cfg.broker_timezone in timezones else 0,
        )

        st.divider()
        if account_number:
            account_config = account_config_for(account_number)
            if account_config.query_ids and st.button("🔄 Sync from IBKR", type="primary"):
                with st.spinner("Fetching Flex reports..."):
                    report = sync_account(
                        session,
                        account_config,
                        settings=cfg.flex,
                        broker_timezone=cfg.broker_timezone,
                    )
                st.session_state.last_sync = report
                st.rerun()

            uploaded = st.file_uploader("Upload IBKR Flex XML", type=["xml"])
            if uploaded and st.button("Import file"):
                report = ingest_statements(
                    session,
                    account_config,
                    [uploaded.read().decode("utf-8")],
                    broker_timezone=cfg.broker_timezone,
                )
                st.session_state.last_sync = report
                st.rerun()

        if st.session_state.get("last_sync") is not None:
            show_sync_report(st.session_state.last_sync)


def main_app():
    """Render main application."""
    with get_session(engine) as session:
        sidebar(session)

        st.title("Trade Ledger")
        page = st.selectbox("Navigate", ["Trading", "Positions & Reconciliation"])

        if page == "Trading":
            trading_page.render(session)
        else:
            positions_page.render(session)


init_session_state()
try:
    main_app()
except TradeLedgerError as e:
    st.error(f"Error: {e}")
