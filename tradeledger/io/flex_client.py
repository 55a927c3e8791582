"""
IBKR Flex Web Service client.

Fetching a statement is a two-step exchange:

1. ``SendRequest`` with the account token and query id returns a reference code.
2. ``GetStatement`` with that reference code returns the statement, or a
   "generation in progress" reply that has to be polled again.

Polling is bounded by a ``RetryPolicy``. Independent report types (e.g. the
historical and today's report) are fetched concurrently; each one stays
sequential internally.
"""

import logging
import threading
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Tuple

import requests

from tradeledger.config import FlexSettings, RetryPolicy, DEFAULT_FLEX_URL
from tradeledger.errors import FlexServiceError, StatementNotReady, SyncCancelled

logger = logging.getLogger(__name__)

# GetStatement error codes meaning "not ready yet, ask again"
RETRYABLE_ERROR_CODES = {"1001", "1004", "1005", "1006", "1007", "1008", "1009", "1018", "1019", "1021"}


class FlexWebServiceClient:
    """Thin wrapper over the Flex Web Service endpoints."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_FLEX_URL,
        version: int = 3,
        timeout: float = 30.0,
        retry: RetryPolicy = RetryPolicy(),
        http: Optional[requests.Session] = None,
    ):
        if not token:
            raise ValueError("Flex token is required")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._version = version
        self._timeout = timeout
        self.retry = retry
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, token: str, settings: FlexSettings, http: Optional[requests.Session] = None):
        return cls(
            token=token,
            base_url=settings.base_url,
            version=settings.version,
            timeout=settings.request_timeout,
            retry=settings.retry,
            http=http,
        )

    def _get(self, endpoint: str, q: str, cancel_event: Optional[threading.Event]) -> str:
        _check_cancelled(cancel_event)
        url = f"{self._base_url}/FlexStatementService.{endpoint}"
        try:
            resp = self._http.get(
                url,
                params={"t": self._token, "q": q, "v": self._version},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise FlexServiceError(f"{endpoint} failed: {exc}") from exc
        return resp.text

    def request_statement(self, query_id: str, cancel_event: Optional[threading.Event] = None) -> str:
        """Ask the service to generate a statement. Returns the reference code."""
        body = self._get("SendRequest", query_id, cancel_event)
        status, code, message, reference = _parse_service_reply(body)
        if status != "Success" or not reference:
            raise FlexServiceError(
                f"SendRequest for query {query_id} rejected: {message or body[:200]}",
                error_code=code,
            )
        logger.info("Flex query %s accepted, reference code %s", query_id, reference)
        return reference

    def get_statement(self, reference_code: str, cancel_event: Optional[threading.Event] = None) -> str:
        """Poll for a generated statement until it is ready or the budget is spent."""
        wait = _make_waiter(cancel_event)
        wait(self.retry.initial_delay)

        delays = iter(self.retry.delays())
        last_message = ""
        for attempt in range(1, self.retry.max_attempts + 1):
            body = self._get("GetStatement", reference_code, cancel_event)
            if _is_statement(body):
                return body

            status, code, message, _ = _parse_service_reply(body)
            if code and code not in RETRYABLE_ERROR_CODES:
                raise FlexServiceError(
                    f"GetStatement {reference_code} failed: {message or code}",
                    error_code=code,
                )
            last_message = message or status or "statement not ready"
            logger.info(
                "Attempt %d/%d: statement %s not ready (%s)",
                attempt,
                self.retry.max_attempts,
                reference_code,
                last_message,
            )
            delay = next(delays, None)
            if delay is None:
                break
            wait(delay)

        raise StatementNotReady(
            f"Statement {reference_code} not ready after {self.retry.max_attempts} attempts: {last_message}"
        )

    def fetch_statement(self, query_id: str, cancel_event: Optional[threading.Event] = None) -> str:
        reference = self.request_statement(query_id, cancel_event)
        return self.get_statement(reference, cancel_event)


def fetch_reports(
    client: FlexWebServiceClient,
    query_ids: Dict[str, str],
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Fetch several report types concurrently.

    Returns:
        (statements_by_name, failures_by_name). A failed report never affects
        the others. Cancellation is re-raised once all workers stop.
    """
    statements: Dict[str, str] = {}
    failures: Dict[str, str] = {}
    if not query_ids:
        return statements, failures

    with ThreadPoolExecutor(max_workers=len(query_ids), thread_name_prefix="flex") as pool:
        futures = {
            name: pool.submit(client.fetch_statement, query_id, cancel_event)
            for name, query_id in query_ids.items()
        }

    cancelled = False
    for name, future in futures.items():
        try:
            statements[name] = future.result()
            logger.info("Downloaded %s report", name)
        except SyncCancelled:
            cancelled = True
        except FlexServiceError as exc:
            logger.warning("Report %s failed: %s", name, exc)
            failures[name] = str(exc)

    if cancelled:
        raise SyncCancelled("Report fetch cancelled")
    return statements, failures


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelled("Sync cancelled by caller")


def _make_waiter(cancel_event: Optional[threading.Event]):
    event = cancel_event or threading.Event()

    def wait(seconds: float) -> None:
        if seconds > 0 and event.wait(seconds):
            raise SyncCancelled("Sync cancelled by caller")
        _check_cancelled(cancel_event)

    return wait


def _is_statement(body: str) -> bool:
    # Not-ready replies are <FlexStatementResponse>, so match on structure
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return False
    return root.tag == "FlexQueryResponse" or root.find(".//FlexStatement") is not None


def _parse_service_reply(body: str) -> Tuple[str, str, str, str]:
    """Extract (status, error_code, error_message, reference_code) from a service reply."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return "", "", body.strip()[:200], ""

    def find(tag: str) -> str:
        elem = root.find(f".//{tag}")
        if elem is None and root.tag == tag:
            elem = root
        return (elem.text or "").strip() if elem is not None else ""

    return find("Status"), find("ErrorCode"), find("ErrorMessage"), find("ReferenceCode")
