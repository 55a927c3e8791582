"""Exception types raised by ingestion and configuration code."""


class TradeLedgerError(Exception):
    """Base class for tradeledger errors."""


class ConfigError(TradeLedgerError):
    """Missing or invalid configuration for an account or the app."""


class FlexServiceError(TradeLedgerError):
    """IBKR Flex Web Service request failed or returned an unusable reply."""

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.error_code = error_code


class StatementNotReady(FlexServiceError):
    """Statement was still being generated after the retry budget ran out."""


class SyncCancelled(TradeLedgerError):
    """Caller cancelled an in-flight sync."""
