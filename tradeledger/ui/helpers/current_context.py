"""Function(s) to expose current runtime context"""

import os
from pathlib import Path

import streamlit as st

from tradeledger.config import AccountConfig, AppConfig, load_config


def require_account():
    account = st.session_state.get("account")
    if account is None:
        st.info("Sync or import an XML first.")
        st.stop()
    return account


@st.cache_resource
def get_app_config() -> AppConfig:
    path = Path(os.getenv("TRADELEDGER_CONFIG", "tradeledger.yaml"))
    if not path.exists():
        return AppConfig()
    return load_config(path)


def account_config_for(account_number: str) -> AccountConfig:
    cfg = get_app_config()
    for acct in cfg.accounts:
        if acct.account_id == account_number:
            return acct
    return AccountConfig(account_id=account_number)
