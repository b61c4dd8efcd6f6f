"""Unit tests for overpass_http.py: coordinated Overpass API HTTP layer.

Tests cover: rate limiting, error classification, response body remarks,
trace recording, and the per-endpoint client registry.
"""

import threading
from unittest.mock import patch, MagicMock

import pytest
import requests

from eco_trace import TraceContext, clear_trace, set_trace
from overpass_http import (
    OverpassHTTPClient,
    OverpassRateLimitError,
    OverpassQueryError,
    get_overpass_client,
)

URL = "https://overpass.test/api/interpreter"


# =========================================================================
# Helpers
# =========================================================================

def _mock_response(status_code=200, json_data=None, text=""):
    """Create a mock requests.Response object."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("No JSON")
    return resp


@pytest.fixture
def client():
    c = OverpassHTTPClient(URL, timeout=2)
    c.MIN_SPACING = 0
    return c


# =========================================================================
# Success path
# =========================================================================

class TestQuery:
    def test_returns_parsed_json(self, client):
        mock_resp = _mock_response(200, {"elements": [{"id": 1}]})
        with patch.object(requests.Session, "post", return_value=mock_resp) as post:
            result = client.query("[out:json];node(1);out;", caller="test")

        assert result == {"elements": [{"id": 1}]}
        args, kwargs = post.call_args
        assert args[0] == URL
        assert kwargs["data"] == {"data": "[out:json];node(1);out;"}
        assert kwargs["timeout"] == 2

    def test_default_timeout(self):
        assert OverpassHTTPClient(URL).timeout == OverpassHTTPClient.DEFAULT_TIMEOUT


# =========================================================================
# HTTP error handling
# =========================================================================

class TestHTTPErrors:
    def test_429_raises_rate_limit_error(self, client):
        with patch.object(requests.Session, "post", return_value=_mock_response(429)):
            with pytest.raises(OverpassRateLimitError):
                client.query("test query", caller="test")

    @pytest.mark.parametrize("status", [400, 500, 504])
    def test_http_error_raises_query_error(self, client, status):
        with patch.object(requests.Session, "post", return_value=_mock_response(status)):
            with pytest.raises(OverpassQueryError, match=str(status)):
                client.query("test query", caller="test")

    def test_non_json_response_raises(self, client):
        mock_resp = _mock_response(200, json_data=None, text="<html>error</html>")
        with patch.object(requests.Session, "post", return_value=mock_resp):
            with pytest.raises(OverpassQueryError, match="non-JSON"):
                client.query("test query", caller="test")

    def test_timeout_raises_query_error(self, client):
        with patch.object(
            requests.Session, "post", side_effect=requests.exceptions.Timeout("timed out")
        ):
            with pytest.raises(OverpassQueryError, match="timeout"):
                client.query("test query", caller="test")

    def test_connection_error_raises_query_error(self, client):
        with patch.object(
            requests.Session, "post", side_effect=requests.exceptions.ConnectionError("refused")
        ):
            with pytest.raises(OverpassQueryError, match="failed"):
                client.query("test query", caller="test")

    def test_no_retry(self, client):
        with patch.object(requests.Session, "post", return_value=_mock_response(504)) as post:
            with pytest.raises(OverpassQueryError):
                client.query("test query", caller="test")
        assert post.call_count == 1


# =========================================================================
# Response body error detection
# =========================================================================

class TestResponseBodyErrors:
    def test_rate_limit_in_body(self, client):
        body = {"osm3s": {"remark": "Too many requests"}, "elements": []}
        with patch.object(requests.Session, "post", return_value=_mock_response(200, body)):
            with pytest.raises(OverpassRateLimitError):
                client.query("test query", caller="test")

    def test_runtime_error_in_body(self, client):
        body = {"remark": "runtime error: Query timed out", "elements": []}
        with patch.object(requests.Session, "post", return_value=_mock_response(200, body)):
            with pytest.raises(OverpassQueryError, match="server error"):
                client.query("test query", caller="test")

    def test_harmless_remark_passes(self, client):
        body = {"remark": "note: partial data", "elements": []}
        with patch.object(requests.Session, "post", return_value=_mock_response(200, body)):
            assert client.query("test query", caller="test")["elements"] == []


# =========================================================================
# Rate limiting
# =========================================================================

class TestRateLimiting:
    @patch("overpass_http.time.sleep")
    def test_slot_beyond_timeout_fails_fast(self, mock_sleep):
        c = OverpassHTTPClient(URL, timeout=0.25)
        c.MIN_SPACING = 5.0
        with patch.object(requests.Session, "post", return_value=_mock_response(200, {"elements": []})) as mock_post:
            c.query("q1", caller="test")
            with pytest.raises(OverpassRateLimitError, match=r"\[caller=test\]"):
                c.query("q2", caller="test")

        assert mock_post.call_count == 1
        mock_sleep.assert_not_called()

    @patch("overpass_http.time.sleep")
    def test_second_caller_waits_for_spacing(self, mock_sleep):
        c = OverpassHTTPClient(URL, timeout=5)
        with patch.object(requests.Session, "post", return_value=_mock_response(200, {"elements": []})):
            c.query("q1", caller="test")
            c.query("q2", caller="test")

        assert mock_sleep.call_count == 1
        assert 0 < mock_sleep.call_args[0][0] <= c.MIN_SPACING

    def test_concurrent_callers_do_not_queue_past_timeout(self):
        c = OverpassHTTPClient(URL, timeout=2.5)
        waits = []
        outcomes = []
        outcomes_lock = threading.Lock()

        def run():
            try:
                c.query("q", caller="burst")
                result = "ok"
            except OverpassRateLimitError:
                result = "refused"
            with outcomes_lock:
                outcomes.append(result)

        # Sleeps are recorded, not taken, so the clock stands still and
        # the reserved slots fall at 0s, 1s and 2s.
        with patch("overpass_http.time.sleep", side_effect=waits.append), \
                patch.object(requests.Session, "post", return_value=_mock_response(200, {"elements": []})):
            threads = [threading.Thread(target=run) for _ in range(6)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=5)

        assert sorted(outcomes) == ["ok"] * 3 + ["refused"] * 3
        assert len(waits) == 2
        assert all(w <= c.timeout for w in waits)

    def test_refusal_does_not_hold_the_lock(self):
        c = OverpassHTTPClient(URL, timeout=0.1)
        c.MIN_SPACING = 60.0
        with patch.object(requests.Session, "post", return_value=_mock_response(200, {"elements": []})):
            c.query("q1", caller="test")
            with pytest.raises(OverpassRateLimitError):
                c.query("q2", caller="test")
        assert c._lock.acquire(blocking=False)
        c._lock.release()


# =========================================================================
# Trace recording
# =========================================================================

class TestTraceRecording:
    def test_records_success_and_failure(self, client):
        trace = TraceContext(trace_id="op")
        set_trace(trace)
        try:
            with patch.object(requests.Session, "post", return_value=_mock_response(200, {"elements": []})):
                client.query("q", caller="land_use")
            with patch.object(requests.Session, "post", return_value=_mock_response(429)):
                with pytest.raises(OverpassRateLimitError):
                    client.query("q", caller="land_use")
        finally:
            clear_trace()

        outcomes = [(c.provider, c.operation, c.outcome) for c in trace.provider_calls]
        assert outcomes == [
            ("land_use", "overpass:land_use", "ok"),
            ("land_use", "overpass:land_use", "rate_limit"),
        ]
        assert trace.degraded_providers() == ["land_use"]


# =========================================================================
# Client registry
# =========================================================================

class TestGetOverpassClient:
    def test_one_client_per_url(self):
        a = get_overpass_client("https://a.test/api", timeout=3)
        b = get_overpass_client("https://a.test/api")
        c = get_overpass_client("https://c.test/api")
        assert a is b
        assert a is not c
        assert a.timeout == 3

    def test_timeout_is_updated(self):
        a = get_overpass_client("https://t.test/api", timeout=3)
        get_overpass_client("https://t.test/api", timeout=6)
        assert a.timeout == 6
