# tests/conftest.py
"""Test configuration and fixtures."""

from datetime import datetime, timedelta

import pytest
import pytz
from sqlmodel import Session, create_engine, SQLModel
from sqlmodel.pool import StaticPool

from tradeledger.config import AccountConfig
from tradeledger.db.models import Account
from tradeledger.io.ibkr_flex_parser import ParsedExecution


@pytest.fixture(name="engine")
def engine_fixture():
    """Create in-memory SQLite test database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="test_account")
def test_account_fixture(session: Session):
    """Create test account."""
    account = Account(account_number="U12345678", currency="USD")
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


@pytest.fixture(name="account_config")
def account_config_fixture():
    return AccountConfig(
        account_id="U12345678",
        token_env="TEST_FLEX_TOKEN",
        query_ids={"historical": "111", "today": "222"},
    )


@pytest.fixture(name="sample_xml")
def sample_xml_fixture():
    """Provide sample IBKR XML.

    Cash runs 100000 -> 84999 -> 94118 -> 100077 -> 96076.
    """
    return """<?xml version="1.0" encoding="UTF-8"?>
<FlexQueryResponse queryName="Trade Summary" type="AF">
    <FlexStatements count="1">
        <FlexStatement accountId="U12345678" fromDate="20250115" toDate="20250116">
            <EquitySummaryInBase>
                <EquitySummaryByReportDateInBase accountId="U12345678" reportDate="20250115" cash="94118" stock="0" total="94118" />
                <EquitySummaryByReportDateInBase accountId="U12345678" reportDate="20250116" cash="96076" stock="4050" total="100126" />
            </EquitySummaryInBase>
            <CashReport>
                <CashReportCurrency accountId="U12345678" currency="BASE_SUMMARY" startingCash="100000" endingCash="96076" />
                <CashReportCurrency accountId="U12345678" currency="USD" startingCash="1" endingCash="2" />
            </CashReport>
            <Trades>
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" symbol="AAPL"
                       buySell="BUY" tradeID="1001" dateTime="20250115;093000"
                       quantity="100" tradePrice="150" ibCommission="-1" netCash="-15001" fifoPnlRealized="0" />
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" symbol="AAPL"
                       buySell="SELL" tradeID="1002" dateTime="20250115;103000"
                       quantity="-60" tradePrice="152" ibCommission="-1" netCash="9119" fifoPnlRealized="119" />
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" symbol="AAPL"
                       buySell="SELL" tradeID="1003" dateTime="20250116;100000"
                       quantity="-40" tradePrice="149" ibCommission="-1" netCash="5959" fifoPnlRealized="-41" />
                <Trade accountId="U12345678" assetCategory="STK" currency="USD" symbol="MSFT"
                       buySell="BUY" tradeID="1004" dateTime="20250116;110000"
                       quantity="10" tradePrice="400" ibCommission="-1" netCash="-4001" fifoPnlRealized="0" />
            </Trades>
            <OpenPositions>
                <OpenPosition accountId="U12345678" symbol="MSFT" position="10" costBasisPrice="400.1"
                              markPrice="405" positionValue="4050" fifoPnlUnrealized="49" currency="USD" />
            </OpenPositions>
        </FlexStatement>
    </FlexStatements>
</FlexQueryResponse>
"""


T0 = pytz.UTC.localize(datetime(2025, 1, 15, 14, 30))


def make_execution(
    execution_id,
    side,
    quantity,
    minutes=0,
    symbol="AAPL",
    price=100.0,
    realized_pnl=None,
    commission=0.0,
    net_cash=None,
    account_id="U12345678",
):
    """Build a ParsedExecution at T0 + minutes."""
    if net_cash is None:
        gross = quantity * price
        net_cash = (gross if side == "SELL" else -gross) - commission
    return ParsedExecution(
        account_id=account_id,
        execution_id=str(execution_id),
        symbol=symbol,
        ts_raw="",
        ts_utc=T0 + timedelta(minutes=minutes),
        side=side,
        quantity=quantity,
        price=price,
        commission=commission,
        net_cash=net_cash,
        realized_pnl=realized_pnl,
    )


@pytest.fixture(name="make_execution")
def make_execution_fixture():
    return make_execution
