# tradeledger/io/ibkr_flex_parser.py
"""
IBKR Flex Query XML parser.

Turns a Flex statement into plain records: executions, open positions, daily
equity summaries and the cash summary. Report types name the same concept
differently (``tradePrice`` vs ``price``, ``tradeID`` vs ``tradeId``...), so
every field declares an ordered list of attribute names to try.
"""

import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import List, Optional, Tuple

import pytz

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldSpec:
    """Ordered attribute names for one logical field, plus a default."""
    names: Tuple[str, ...]
    default: object = None
    skip_zero: bool = False  # numeric: keep looking past "0" values

    def text(self, elem: ET.Element) -> Optional[str]:
        for name in self.names:
            value = (elem.get(name) or "").strip()
            if value:
                return value
        return self.default

    def number(self, elem: ET.Element) -> Optional[float]:
        found_zero = False
        for name in self.names:
            value = _to_float(elem.get(name))
            if value is None:
                continue
            if value == 0 and self.skip_zero:
                found_zero = True
                continue
            return value
        if found_zero:
            return 0.0
        return self.default


def _to_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    text = raw.strip().replace(",", "")
    if not text:
        return None
    try:
        value = float(text)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


# Trade / TradeConfirm
TRADE_ID = FieldSpec(("tradeID", "tradeId", "execID"))
TRADE_TIME = FieldSpec(("dateTime", "tradeTime", "tradeDate", "date", "orderTime"))
TRADE_SIDE = FieldSpec(("buySell", "side"))
TRADE_QUANTITY = FieldSpec(("quantity",), default=0.0)
TRADE_PRICE = FieldSpec(("tradePrice", "price"), default=0.0, skip_zero=True)
TRADE_COMMISSION = FieldSpec(("ibCommission", "commission"), default=0.0, skip_zero=True)
TRADE_NET_CASH = FieldSpec(("netCash", "netAmount"), skip_zero=True)
TRADE_PROCEEDS = FieldSpec(("proceeds",))
TRADE_REALIZED_PNL = FieldSpec(("fifoPnlRealized", "realizedPL", "realizedPnl"), skip_zero=True)
TRADE_ACCOUNT = FieldSpec(("accountId", "acctId"))
TRADE_ASSET_CLASS = FieldSpec(("assetCategory", "assetClass"), default="STK")
TRADE_CURRENCY = FieldSpec(("currency",), default="USD")
TRADE_SYMBOL = FieldSpec(("symbol",), default="")

# OpenPosition
POSITION_QUANTITY = FieldSpec(("position", "quantity"), default=0.0)
POSITION_COST_PRICE = FieldSpec(("costBasisPrice", "costPrice"), default=0.0)
POSITION_MARK_PRICE = FieldSpec(("markPrice", "marketPrice"), default=0.0)
POSITION_VALUE = FieldSpec(("positionValue", "marketValue"), default=0.0)
POSITION_UNREALIZED = FieldSpec(("fifoPnlUnrealized", "unrealizedPnl", "unrealizedPL"), default=0.0)

# EquitySummaryByReportDateInBase
EQUITY_DATE = FieldSpec(("reportDate", "date"))
EQUITY_TOTAL = FieldSpec(("total", "totalEquity"), default=0.0)
EQUITY_CASH = FieldSpec(("cash",), default=0.0)
EQUITY_STOCK = FieldSpec(("stock", "stockValue"), default=0.0)

# CashReportCurrency
CASH_STARTING = FieldSpec(("startingCash",))
CASH_ENDING = FieldSpec(("endingCash", "endingSettledCash"))

TRADE_TAGS = ("Trade", "TradeConfirm")
EQUITY_TAGS = ("EquitySummaryByReportDateInBase", "EquitySummaryInBase")


@dataclass
class ParsedExecution:
    """Represents a single execution from an IBKR Flex statement."""
    account_id: str
    execution_id: str
    symbol: str
    ts_raw: str
    ts_utc: datetime
    side: str  # BUY or SELL
    quantity: float  # magnitude
    price: float
    commission: float  # magnitude
    net_cash: float  # signed; reported by the broker or derived
    realized_pnl: Optional[float] = None
    asset_class: str = "STK"
    currency: str = "USD"
    ts_degraded: bool = False


@dataclass
class ParsedOpenPosition:
    account_id: str
    symbol: str
    quantity: float
    cost_price: float
    market_price: float
    market_value: float
    unrealized_pnl: float
    currency: str = "USD"


@dataclass
class ParsedEquityPoint:
    account_id: str
    report_date: date
    total_equity: float
    cash: float
    stock_value: float


@dataclass
class CashSummary:
    starting_cash: Optional[float]
    ending_cash: Optional[float]
    currency: str = "BASE_SUMMARY"


@dataclass
class ParsedStatement:
    """Everything one Flex statement reported."""
    executions: List[ParsedExecution] = field(default_factory=list)
    open_positions: List[ParsedOpenPosition] = field(default_factory=list)
    has_open_positions: bool = False
    equity_points: List[ParsedEquityPoint] = field(default_factory=list)
    cash_summary: Optional[CashSummary] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded_count(self) -> int:
        return sum(1 for e in self.executions if e.ts_degraded)


class IBKRFlexParser:
    """Parse IBKR Flex Query XML exports."""

    # Common IBKR timestamp formats
    TIMESTAMP_FORMATS = [
        "%Y%m%d;%H%M%S",
        "%Y%m%d;%H%M",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d, %H:%M:%S",
        "%Y-%m-%d;%H:%M:%S",
        "%Y%m%d %H:%M:%S",
        "%Y%m%d %H%M%S",
        "%Y-%m-%d",
        "%Y%m%d",
    ]

    DATE_FORMATS = ["%Y%m%d", "%Y-%m-%d", "%m/%d/%Y"]

    # Naive IBKR timestamps are in the account's reporting zone
    IBKR_TZ = pytz.timezone("US/Eastern")

    @staticmethod
    def parse_timestamp(ts_str: str, tz=None) -> Tuple[datetime, datetime]:
        """
        Parse IBKR timestamp string to (aware_local, utc).

        Args:
            ts_str: Timestamp string from IBKR (e.g., "20251104;122328",
                "2025-01-15 09:30:00", "2025-01-15T14:30:00Z")
            tz: Zone for naive timestamps (defaults to US/Eastern)

        Returns:
            (datetime_in_broker_tz, datetime_in_utc)
        """
        text = (ts_str or "").strip()
        if not text:
            raise ValueError("Empty timestamp")

        tz = tz or IBKRFlexParser.IBKR_TZ

        # "2025-01-02;09:31:00 US/Eastern"
        head, _, tail = text.rpartition(" ")
        if head and tail in pytz.all_timezones_set:
            tz = pytz.timezone(tail)
            text = head.strip()

        for fmt in IBKRFlexParser.TIMESTAMP_FORMATS:
            try:
                dt_naive = datetime.strptime(text, fmt)
            except ValueError:
                continue
            dt_local = tz.localize(dt_naive)
            return dt_local, dt_local.astimezone(pytz.UTC)

        iso = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            dt = datetime.fromisoformat(iso)
        except ValueError:
            raise ValueError(f"Could not parse timestamp: {ts_str}") from None

        dt_local = tz.localize(dt) if dt.tzinfo is None else dt
        return dt_local, dt_local.astimezone(pytz.UTC)

    @staticmethod
    def parse_date(date_str: str) -> date:
        text = (date_str or "").strip()
        for fmt in IBKRFlexParser.DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Could not parse date: {date_str}")

    @staticmethod
    def parse_statement(
        xml_content: str | bytes,
        default_account_id: str = "",
        broker_timezone: str = "US/Eastern",
    ) -> ParsedStatement:
        """
        Parse a full Flex statement.

        Raises:
            ValueError: if the document is not well-formed XML.
        """
        try:
            root = ET.fromstring(xml_content)
        except ET.ParseError as e:
            raise ValueError(f"Malformed Flex statement: {e}") from e

        tz = pytz.timezone(broker_timezone)
        statement = ParsedStatement()

        for tag in TRADE_TAGS:
            for elem in root.iter(tag):
                execution = IBKRFlexParser._parse_trade(elem, default_account_id, tz, statement.warnings)
                if execution is not None:
                    statement.executions.append(execution)

        sections = list(root.iter("OpenPositions"))
        statement.has_open_positions = bool(sections)
        for elem in root.iter("OpenPosition"):
            position = IBKRFlexParser._parse_position(elem, default_account_id)
            if position is not None:
                statement.open_positions.append(position)
        # A bare <OpenPosition> list without its section element still counts
        if statement.open_positions:
            statement.has_open_positions = True

        for tag in EQUITY_TAGS:
            for elem in root.iter(tag):
                point = IBKRFlexParser._parse_equity(elem, default_account_id, statement.warnings)
                if point is not None:
                    statement.equity_points.append(point)

        statement.cash_summary = IBKRFlexParser._parse_cash_summary(root)

        logger.info(
            "Parsed statement: %d executions, %d open positions, %d equity points",
            len(statement.executions),
            len(statement.open_positions),
            len(statement.equity_points),
        )
        return statement

    @staticmethod
    def parse_xml(xml_content: str | bytes, broker_timezone: str = "US/Eastern") -> List[ParsedExecution]:
        """Parse only the executions of a Flex statement."""
        return IBKRFlexParser.parse_statement(xml_content, broker_timezone=broker_timezone).executions

    @staticmethod
    def _parse_trade(elem, default_account_id, tz, warnings) -> Optional[ParsedExecution]:
        raw_id = TRADE_ID.text(elem)
        if not raw_id:
            return None
        execution_id = raw_id[:-2] if raw_id.endswith(".0") else raw_id

        symbol = TRADE_SYMBOL.text(elem)
        side = (TRADE_SIDE.text(elem) or "").upper()
        if side not in ("BUY", "SELL"):
            warnings.append(f"Skipped {execution_id} ({symbol}): unknown side {side!r}")
            return None

        ts_raw = TRADE_TIME.text(elem) or ""
        ts_degraded = False
        try:
            _, ts_utc = IBKRFlexParser.parse_timestamp(ts_raw, tz)
        except ValueError:
            ts_utc = datetime.now(pytz.UTC)
            ts_degraded = True
            warnings.append(f"Unparseable timestamp {ts_raw!r} for {execution_id}; using now")
            logger.warning("Unparseable timestamp %r for execution %s; using now", ts_raw, execution_id)

        quantity = abs(TRADE_QUANTITY.number(elem))
        price = TRADE_PRICE.number(elem)
        commission = abs(TRADE_COMMISSION.number(elem))

        net_cash = TRADE_NET_CASH.number(elem)
        if net_cash is None:
            proceeds = TRADE_PROCEEDS.number(elem)
            if proceeds is None:
                proceeds = quantity * price if side == "SELL" else -quantity * price
            net_cash = proceeds - commission

        return ParsedExecution(
            account_id=TRADE_ACCOUNT.text(elem) or default_account_id,
            execution_id=execution_id,
            symbol=symbol,
            ts_raw=ts_raw,
            ts_utc=ts_utc,
            side=side,
            quantity=quantity,
            price=price,
            commission=commission,
            net_cash=net_cash,
            realized_pnl=TRADE_REALIZED_PNL.number(elem),
            asset_class=TRADE_ASSET_CLASS.text(elem),
            currency=TRADE_CURRENCY.text(elem),
            ts_degraded=ts_degraded,
        )

    @staticmethod
    def _parse_position(elem, default_account_id) -> Optional[ParsedOpenPosition]:
        symbol = TRADE_SYMBOL.text(elem)
        if not symbol:
            logger.warning("Skipping open position without symbol")
            return None
        return ParsedOpenPosition(
            account_id=TRADE_ACCOUNT.text(elem) or default_account_id,
            symbol=symbol,
            quantity=POSITION_QUANTITY.number(elem),
            cost_price=POSITION_COST_PRICE.number(elem),
            market_price=POSITION_MARK_PRICE.number(elem),
            market_value=POSITION_VALUE.number(elem),
            unrealized_pnl=POSITION_UNREALIZED.number(elem),
            currency=TRADE_CURRENCY.text(elem),
        )

    @staticmethod
    def _parse_equity(elem, default_account_id, warnings) -> Optional[ParsedEquityPoint]:
        raw_date = EQUITY_DATE.text(elem)
        if raw_date is None:
            return None  # section element, not a row
        try:
            report_date = IBKRFlexParser.parse_date(raw_date)
        except ValueError:
            warnings.append(f"Skipped equity summary with bad date {raw_date!r}")
            return None
        return ParsedEquityPoint(
            account_id=TRADE_ACCOUNT.text(elem) or default_account_id,
            report_date=report_date,
            total_equity=EQUITY_TOTAL.number(elem),
            cash=EQUITY_CASH.number(elem),
            stock_value=EQUITY_STOCK.number(elem),
        )

    @staticmethod
    def _parse_cash_summary(root) -> Optional[CashSummary]:
        rows = list(root.iter("CashReportCurrency"))
        if not rows:
            return None
        # BASE_SUMMARY aggregates all currencies; fall back to the first row
        chosen = next((r for r in rows if r.get("currency") == "BASE_SUMMARY"), rows[0])
        starting = CASH_STARTING.number(chosen)
        ending = CASH_ENDING.number(chosen)
        if starting is None and ending is None:
            return None
        return CashSummary(
            starting_cash=starting,
            ending_cash=ending,
            currency=chosen.get("currency", "BASE_SUMMARY"),
        )
