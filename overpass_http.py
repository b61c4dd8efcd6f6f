"""
Coordinated Overpass API HTTP layer.

All Overpass HTTP requests in the application go through this module.
It provides:
- Process-local rate limiting: 1 request/second minimum spacing; callers
  whose slot is more than one timeout away fail fast with
  OverpassRateLimitError instead of queueing
- Thread-safe request execution (fresh requests.Session per request)
- Error classification: 429 / body rate-limit remarks vs. other failures
- eco_trace + health_monitor integration

There is no response cache and no retry.  Block state must be as fresh
as the upstream data, and one failed land-use lookup only degrades the
block it was made for.

Rate limiting is per-process.  With 2 gunicorn workers, worst case is
2 req/s to the public Overpass endpoint.  When self-hosting Overpass,
set OVERPASS_BASE_URL and lower MIN_SPACING.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

import requests

from eco_trace import get_trace
from health_monitor import record_call

logger = logging.getLogger(__name__)


class OverpassRateLimitError(Exception):
    """Raised when Overpass returns 429 or a rate-limit remark."""

    pass


class OverpassQueryError(Exception):
    """Raised for any other Overpass failure (timeout, HTTP error, bad body)."""

    pass


# Lower-cased remark fragments Overpass uses to report a failed query
# inside an HTTP 200 body.
_RATE_LIMIT_REMARKS = ("too many requests",)
_FAILURE_REMARKS = ("runtime error", "timed out", "out of memory")


def _remark(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    osm3s = data.get("osm3s") or {}
    return str(osm3s.get("remark") or data.get("remark") or "")


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 8  # seconds
    MIN_SPACING = 1.0  # seconds between HTTP requests

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT

    def _reserve_slot(self) -> Optional[float]:
        """
        Claim the next send time and return how long to wait for it, or
        None when that slot is more than one timeout away.  A refused
        caller does not consume a slot.
        """
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            wait = slot - now
            if wait > self.timeout:
                return None
            self._next_slot = slot + self.MIN_SPACING
            return wait

    def _wait_for_slot(self, caller: str) -> None:
        wait = self._reserve_slot()
        if wait is None:
            self._record(caller, time.monotonic(), 0, "rate_limit")
            raise OverpassRateLimitError(
                f"[caller={caller}] Overpass send queue is longer than {self.timeout:g}s"
            )
        # Sleep outside the lock so other callers can reserve later slots.
        if wait > 0:
            time.sleep(wait)

    def query(self, overpass_ql: str, caller: str = "unknown") -> Dict[str, Any]:
        """
        POST one Overpass QL query and return the decoded JSON body.

        Raises:
            OverpassRateLimitError: 429, a rate-limit remark in the body, or
                no send slot free within one timeout.
            OverpassQueryError: timeout, transport failure, HTTP >= 400,
                non-JSON body, or a server-side failure remark.
        """
        self._wait_for_slot(caller)
        tag = f"[caller={caller}]"
        start = time.monotonic()

        def fail(exc_type, status_code, outcome, message):
            self._record(caller, start, status_code, outcome)
            return exc_type(f"{message} {tag}")

        session = requests.Session()
        session.trust_env = False
        try:
            resp = session.post(self.base_url, data={"data": overpass_ql}, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise fail(OverpassQueryError, 0, "timeout", f"Overpass timeout after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise fail(OverpassQueryError, 0, "exception", f"Overpass request failed: {e}") from e

        code = resp.status_code
        if code == 429:
            raise fail(OverpassRateLimitError, code, "rate_limit", "Overpass 429 Too Many Requests")
        if code >= 400:
            raise fail(OverpassQueryError, code, "http_error", f"Overpass HTTP {code}")

        try:
            data = resp.json()
        except ValueError:
            raise fail(OverpassQueryError, code, "parse_error", f"Overpass returned non-JSON (HTTP {code})")

        remark = _remark(data)
        lowered = remark.lower()
        if any(r in lowered for r in _RATE_LIMIT_REMARKS):
            raise fail(OverpassRateLimitError, code, "rate_limit", "Overpass rate limit remark")
        if any(r in lowered for r in _FAILURE_REMARKS):
            raise fail(OverpassQueryError, code, "body_error", f"Overpass server error: {remark[:100]}")

        self._record(caller, start, code, "ok")
        return data

    @staticmethod
    def _record(caller: str, start: float, status_code: int, outcome: str) -> None:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        trace = get_trace()
        if trace:
            trace.record_provider_call(
                provider="land_use",
                operation=f"overpass:{caller}",
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                outcome=outcome,
            )
        record_call("land_use", outcome == "ok", elapsed_ms, None if outcome == "ok" else outcome)


# One client per Overpass endpoint so the spacing lock is shared by every
# caller in this process that talks to the same server.
_clients: Dict[str, OverpassHTTPClient] = {}
_clients_lock = threading.Lock()


def get_overpass_client(base_url: str, timeout: Optional[float] = None) -> OverpassHTTPClient:
    """Return the process-wide client for *base_url*, creating it on first use."""
    with _clients_lock:
        client = _clients.get(base_url)
        if client is None:
            client = OverpassHTTPClient(base_url, timeout=timeout)
            _clients[base_url] = client
        elif timeout is not None:
            client.timeout = timeout
        return client
