"""
Tests for provider health monitoring.

Covers:
  - rolling outcome windows and the rate -> status mapping
  - direct probes of the keyless providers with mocked HTTP
  - snapshot() merging probe and window results, overall_status()
  - /healthz
  - probe thread start/stop
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

import health_monitor
from eco_config import ProviderSettings
from health_monitor import (
    DEGRADED,
    DOWN,
    HEALTHY,
    SERVICES,
    UNKNOWN,
    ProviderHealthMonitor,
    overall_status,
    probes_for,
    status_for_rate,
)


@pytest.fixture
def monitor():
    """Fresh monitor, thread not started."""
    return ProviderHealthMonitor()


def _resp(status_code):
    resp = MagicMock()
    resp.status_code = status_code
    return resp


# ---------------------------------------------------------------------------
# Rolling windows
# ---------------------------------------------------------------------------

class TestWindows:

    def test_every_provider_starts_unknown(self, monitor):
        for name in SERVICES:
            health = monitor.passive_health(name)
            assert health.status == UNKNOWN
            assert health.sample_size == 0

    def test_outcomes_recorded_in_order(self, monitor):
        monitor.record_call("traffic", True, 100)
        monitor.record_call("traffic", False, 200, "timeout")

        outcomes = monitor.window("traffic")
        assert [o.ok for o in outcomes] == [True, False]
        assert outcomes[1].error == "timeout"

    @pytest.mark.parametrize("rate,status", [
        (1.0, HEALTHY),
        (0.95, HEALTHY),
        (0.94, DEGRADED),
        (0.70, DEGRADED),
        (0.5, DOWN),
        (0.0, DOWN),
    ])
    def test_status_for_rate(self, rate, status):
        assert status_for_rate(rate) == status

    @pytest.mark.parametrize("ok,bad,status", [
        (20, 0, HEALTHY),
        (19, 1, HEALTHY),
        (16, 4, DEGRADED),
        (10, 10, DOWN),
    ])
    def test_window_status(self, monitor, ok, bad, status):
        for _ in range(ok):
            monitor.record_call("air_quality", True, 100)
        for _ in range(bad):
            monitor.record_call("air_quality", False, 100, "http_error")
        assert monitor.passive_health("air_quality").status == status

    def test_latency_average_and_latest_error(self, monitor):
        monitor.record_call("speech", False, 100, "first")
        monitor.record_call("speech", True, 300)
        monitor.record_call("speech", False, 200, "latest")

        health = monitor.passive_health("speech")
        assert health.latency_ms == 200
        assert health.error == "latest"
        assert health.success_rate == pytest.approx(0.333)

    def test_window_is_bounded(self, monitor):
        for _ in range(120):
            monitor.record_call("land_use", True, 1)
        assert len(monitor.window("land_use")) == 50

    def test_unlisted_provider_gets_a_window(self, monitor):
        monitor.record_call("new_service", True, 50)
        assert monitor.passive_health("new_service").sample_size == 1
        assert "new_service" in monitor.snapshot()


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

class TestProbes:

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_healthy(self, mock_get, monitor):
        health = monitor.probe("air_quality", "https://aq.test", {"latitude": 0})
        assert health.status == HEALTHY
        assert health.error is None
        assert health.mode == "active"
        mock_get.assert_called_once_with("https://aq.test", params={"latitude": 0}, timeout=10)

    @patch("health_monitor.requests.get", return_value=_resp(503))
    def test_degraded_on_http_error(self, mock_get, monitor):
        health = monitor.probe("land_use", "https://op.test/status", {})
        assert health.status == DEGRADED
        assert health.error == "HTTP 503"
        assert mock_get.call_args[1]["params"] is None

    @patch("health_monitor.requests.get", side_effect=requests.Timeout("slow"))
    def test_down_on_timeout(self, mock_get, monitor):
        health = monitor.probe("geocode_primary", "https://geo.test", {})
        assert health.status == DOWN
        assert health.error == "timeout"

    @patch("health_monitor.requests.get", side_effect=requests.ConnectionError("DNS resolution failed"))
    def test_down_on_connection_error(self, mock_get, monitor):
        health = monitor.probe("geocode_primary", "https://geo.test", {})
        assert health.status == DOWN
        assert "DNS" in health.error

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_default_probe_set(self, mock_get, monitor):
        monitor.run_probes()
        assert mock_get.call_count == 3
        for name in ("air_quality", "geocode_primary", "land_use"):
            assert monitor.probe_status(name) == HEALTHY
        assert monitor.probe_status("traffic") is None

    @patch("health_monitor.requests.get")
    def test_status_change_is_logged(self, mock_get, monitor, caplog):
        mock_get.return_value = _resp(200)
        monitor.run_probes()

        mock_get.side_effect = requests.Timeout("timeout")
        monitor.run_probes()
        assert monitor.probe_status("air_quality") == DOWN
        assert "air_quality went healthy -> down" in caplog.text

    def test_no_probes(self):
        m = ProviderHealthMonitor(probes={})
        m.run_probes()
        assert {s["mode"] for s in m.snapshot().values()} == {"passive"}

    def test_probes_follow_provider_settings(self):
        settings = ProviderSettings(
            air_quality_url="https://aq.internal/v1/air-quality",
            geocode_primary_url="https://geo.internal/v1/search",
            overpass_status_url="https://overpass.internal/api/status",
        )
        probes = probes_for(settings)
        assert probes["air_quality"][0] == "https://aq.internal/v1/air-quality"
        assert probes["geocode_primary"][0] == "https://geo.internal/v1/search"
        assert probes["land_use"] == ("https://overpass.internal/api/status", {})

    def test_status_url_read_from_environment(self):
        settings = ProviderSettings.from_env({"OVERPASS_STATUS_URL": "https://op.internal/status"})
        assert probes_for(settings)["land_use"][0] == "https://op.internal/status"
        assert ProviderSettings.from_env({}).overpass_status_url == "https://overpass-api.de/api/status"

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_monitor_probes_configured_endpoints(self, mock_get):
        settings = ProviderSettings(
            air_quality_url="https://aq.internal/v1/air-quality",
            geocode_primary_url="https://geo.internal/v1/search",
            overpass_status_url="https://overpass.internal/api/status",
        )
        ProviderHealthMonitor(settings=settings).run_probes()
        probed = {c[0][0] for c in mock_get.call_args_list}
        assert probed == {
            "https://aq.internal/v1/air-quality",
            "https://geo.internal/v1/search",
            "https://overpass.internal/api/status",
        }

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_start_monitor_uses_given_settings(self, mock_get, monkeypatch):
        monkeypatch.setattr(health_monitor, "_monitor", ProviderHealthMonitor())
        settings = ProviderSettings(overpass_status_url="https://op.internal/status")
        health_monitor.start_monitor(settings)
        try:
            assert health_monitor._monitor.probes["land_use"][0] == "https://op.internal/status"
        finally:
            health_monitor.stop_monitor(timeout=2)


# ---------------------------------------------------------------------------
# snapshot / overall_status
# ---------------------------------------------------------------------------

class TestSnapshot:

    def test_all_unknown_when_no_data(self, monitor):
        snap = monitor.snapshot()
        assert set(SERVICES) <= set(snap)
        assert {s["status"] for s in snap.values()} == {UNKNOWN}

    @patch("health_monitor.requests.get", side_effect=requests.Timeout("timeout"))
    def test_probe_wins_over_window(self, mock_get, monitor):
        for _ in range(10):
            monitor.record_call("air_quality", True, 50)
        monitor.run_probes()

        snap = monitor.snapshot()
        assert snap["air_quality"]["status"] == DOWN
        assert snap["air_quality"]["mode"] == "active"
        assert snap["air_quality"]["error"] == "timeout"

    def test_window_only_provider(self, monitor):
        for _ in range(10):
            monitor.record_call("narrative", True, 800)
        snap = monitor.snapshot()
        assert snap["narrative"]["status"] == HEALTHY
        assert snap["narrative"]["mode"] == "passive"
        assert snap["narrative"]["sample_size"] == 10


class TestOverallStatus:

    def test_unknown_is_ok(self):
        assert overall_status({"a": {"status": UNKNOWN}, "b": {"status": HEALTHY}}) == "ok"

    def test_degraded_provider_is_still_ok(self):
        assert overall_status({"a": {"status": DEGRADED}}) == "ok"

    def test_down_provider_degrades(self):
        assert overall_status({"a": {"status": DOWN}, "b": {"status": HEALTHY}}) == "degraded"


# ---------------------------------------------------------------------------
# /healthz
# ---------------------------------------------------------------------------

class TestHealthzEndpoint:

    def test_lists_every_provider(self, client):
        resp = client.get("/healthz")
        data = resp.get_json()
        assert resp.status_code == 200
        for name in SERVICES:
            assert "status" in data["providers"][name]
        assert data["persistence_queue"] == 0
        assert data["model_version"]

    @patch("health_monitor._monitor")
    def test_degraded_when_provider_down(self, mock_monitor, client):
        mock_monitor.snapshot.return_value = {
            "air_quality": {"status": DOWN, "mode": "active", "error": "timeout"},
            "traffic": {"status": HEALTHY, "mode": "passive"},
        }
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "degraded"


# ---------------------------------------------------------------------------
# Probe thread
# ---------------------------------------------------------------------------

class TestProbeThread:

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_start_stop(self, mock_get, monitor):
        monitor.start()
        assert monitor._thread is not None
        assert monitor._thread.is_alive()

        monitor.stop(timeout=2)
        assert not monitor._thread.is_alive()

    @patch("health_monitor.requests.get", return_value=_resp(200))
    def test_start_idempotent(self, mock_get, monitor):
        monitor.start()
        first = monitor._thread
        monitor.start()
        assert monitor._thread is first
        monitor.stop(timeout=2)
