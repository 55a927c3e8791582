"""
Config loader: YAML file -> frozen dataclass tree.

Flex Web Service tokens are never stored in the file. Each account names the
environment variable holding its token (``token_env``) and the value is read
at sync time.

Example::

    database_url: sqlite:///./tradeledger.db
    broker_timezone: US/Eastern
    flex:
      request_timeout: 30
      retry: {max_attempts: 5, initial_delay: 2, delay: 3}
    accounts:
      - account_id: U1234567
        token_env: IBKR_TOKEN
        query_ids: {historical: "123456", today: "654321"}
        starting_balance: 430702
        exclude_before: "2025-01-15T00:00:00Z"
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

import pytz
import yaml

from tradeledger.errors import ConfigError

logger = logging.getLogger(__name__)

BALANCE_POLICIES = ("forward", "reconcile")
BALANCE_BASES = ("cash", "realized_pnl")
CLASSIFIERS = ("net_position", "realized_pnl")

DEFAULT_FLEX_URL = "https://gdcdyn.interactivebrokers.com/Universal/servlet"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling for a statement that is still being generated."""
    max_attempts: int = 5
    initial_delay: float = 2.0  # wait between SendRequest and first GetStatement
    delay: float = 3.0
    backoff: float = 1.0  # multiplier applied to delay after each attempt

    def delays(self):
        """Yield the wait before each poll after the first."""
        current = self.delay
        for _ in range(max(self.max_attempts - 1, 0)):
            yield current
            current *= self.backoff


@dataclass(frozen=True)
class FlexSettings:
    base_url: str = DEFAULT_FLEX_URL
    version: int = 3
    request_timeout: float = 30.0
    retry: RetryPolicy = RetryPolicy()


@dataclass(frozen=True)
class AccountConfig:
    """Per-account ingestion settings."""
    account_id: str
    label: str = ""
    token_env: str = ""
    query_ids: Dict[str, str] = field(default_factory=dict)
    starting_balance: Optional[float] = None
    current_balance: Optional[float] = None
    exclude_before: Optional[datetime] = None  # UTC, aware
    balance_policy: str = "forward"
    balance_basis: str = "cash"
    classifier: str = "net_position"
    currency: str = "USD"

    def __post_init__(self):
        if not self.account_id:
            raise ConfigError("account_id is required")
        if self.balance_policy not in BALANCE_POLICIES:
            raise ConfigError(
                f"{self.account_id}: balance_policy must be one of {BALANCE_POLICIES}, "
                f"got {self.balance_policy!r}"
            )
        if self.balance_basis not in BALANCE_BASES:
            raise ConfigError(
                f"{self.account_id}: balance_basis must be one of {BALANCE_BASES}, "
                f"got {self.balance_basis!r}"
            )
        if self.classifier not in CLASSIFIERS:
            raise ConfigError(
                f"{self.account_id}: classifier must be one of {CLASSIFIERS}, "
                f"got {self.classifier!r}"
            )

    def resolve_token(self) -> str:
        """Read the Flex token from the environment; missing is fatal for this account."""
        if not self.token_env:
            raise ConfigError(f"{self.account_id}: token_env is not configured")
        token = os.environ.get(self.token_env, "").strip()
        if not token:
            raise ConfigError(
                f"{self.account_id}: environment variable {self.token_env} is not set"
            )
        return token

    def require_query_ids(self) -> Dict[str, str]:
        query_ids = {name: qid for name, qid in self.query_ids.items() if qid}
        if not query_ids:
            raise ConfigError(f"{self.account_id}: no Flex query ids configured")
        return query_ids


@dataclass(frozen=True)
class AppConfig:
    database_url: str = "sqlite:///./tradeledger.db"
    broker_timezone: str = "US/Eastern"
    flex: FlexSettings = FlexSettings()
    accounts: Tuple[AccountConfig, ...] = ()

    def account(self, account_id: str) -> AccountConfig:
        for acct in self.accounts:
            if acct.account_id == account_id:
                return acct
        raise ConfigError(f"Unknown account: {account_id}")


def parse_cutoff(value) -> Optional[datetime]:
    """Parse an exclusion cutoff into an aware UTC datetime. Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ConfigError(f"Invalid exclude_before timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def _optional_float(raw: dict, key: str) -> Optional[float]:
    value = raw.get(key)
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _account_from_dict(raw: dict) -> AccountConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Account entry must be a mapping, got {type(raw).__name__}")
    query_ids = raw.get("query_ids") or {}
    if not isinstance(query_ids, dict):
        raise ConfigError("query_ids must be a mapping of report name -> query id")
    return AccountConfig(
        account_id=str(raw.get("account_id", "")).strip(),
        label=str(raw.get("label", "")),
        token_env=str(raw.get("token_env", "")),
        query_ids={str(k): str(v) for k, v in query_ids.items()},
        starting_balance=_optional_float(raw, "starting_balance"),
        current_balance=_optional_float(raw, "current_balance"),
        exclude_before=parse_cutoff(raw.get("exclude_before")),
        balance_policy=raw.get("balance_policy", "forward"),
        balance_basis=raw.get("balance_basis", "cash"),
        classifier=raw.get("classifier", "net_position"),
        currency=raw.get("currency", "USD"),
    )


def load_config(path: str | Path = "tradeledger.yaml") -> AppConfig:
    """
    Load configuration from a YAML file.

    ``DATABASE_URL`` in the environment overrides ``database_url`` in the file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    flex_raw = raw.get("flex", {}) or {}
    retry_raw = flex_raw.get("retry", {}) or {}
    retry = RetryPolicy(
        max_attempts=int(retry_raw.get("max_attempts", 5)),
        initial_delay=float(retry_raw.get("initial_delay", 2.0)),
        delay=float(retry_raw.get("delay", 3.0)),
        backoff=float(retry_raw.get("backoff", 1.0)),
    )
    if retry.max_attempts < 1:
        raise ConfigError("flex.retry.max_attempts must be at least 1")

    flex = FlexSettings(
        base_url=str(flex_raw.get("base_url", DEFAULT_FLEX_URL)).rstrip("/"),
        version=int(flex_raw.get("version", 3)),
        request_timeout=float(flex_raw.get("request_timeout", 30.0)),
        retry=retry,
    )

    accounts = tuple(_account_from_dict(a) for a in raw.get("accounts", []) or [])
    seen = set()
    for acct in accounts:
        if acct.account_id in seen:
            raise ConfigError(f"Duplicate account_id in config: {acct.account_id}")
        seen.add(acct.account_id)

    broker_tz = raw.get("broker_timezone", "US/Eastern")
    try:
        pytz.timezone(broker_tz)
    except pytz.UnknownTimeZoneError as exc:
        raise ConfigError(f"Unknown broker_timezone: {broker_tz}") from exc

    database_url = os.getenv("DATABASE_URL") or raw.get("database_url", "sqlite:///./tradeledger.db")
    logger.debug("Loaded config with %d account(s) from %s", len(accounts), config_path)

    return AppConfig(
        database_url=database_url,
        broker_timezone=broker_tz,
        flex=flex,
        accounts=accounts,
    )
