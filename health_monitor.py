"""
Provider health for /healthz.

Every upstream call made while serving a request reports its outcome
through record_call(); the last _WINDOW outcomes per provider give a
success rate, and the rate maps to a status:

    >= 95%  healthy
    >= 70%  degraded
    below   down
    no data unknown

The keyless providers (Open-Meteo air quality, Open-Meteo geocoding,
Overpass) are also probed directly by a daemon thread every
HEALTH_CHECK_INTERVAL seconds.  A probe result, when there is one, wins
over the rolling window for that provider.  Probe URLs come from the
same ProviderSettings the clients use (probes_for), so a self-hosted
endpoint is probed where it actually lives.

One ProviderHealthMonitor per process, shared through the module-level
functions at the bottom.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional, Tuple

import requests

from eco_config import ProviderSettings

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

_PROBE_TIMEOUT = 10
_WINDOW = 50

HEALTHY = "healthy"
DEGRADED = "degraded"
DOWN = "down"
UNKNOWN = "unknown"

# (min success rate, status), highest first
_RATE_BANDS = ((0.95, HEALTHY), (0.70, DEGRADED))

SERVICES = (
    "air_quality",
    "traffic",
    "land_use",
    "geocode_primary",
    "geocode_fallback",
    "narrative",
    "speech",
)

Probe = Tuple[str, Dict[str, Any]]


def probes_for(settings: ProviderSettings) -> Dict[str, Probe]:
    """Direct probes for the keyless providers, aimed at the configured endpoints."""
    return {
        "air_quality": (
            settings.air_quality_url,
            {"latitude": 0, "longitude": 0, "current": "us_aqi"},
        ),
        "geocode_primary": (
            settings.geocode_primary_url,
            {"name": "London", "count": 1},
        ),
        "land_use": (settings.overpass_status_url, {}),
    }


def _iso(ts: Optional[float] = None) -> str:
    when = datetime.now(timezone.utc) if ts is None else datetime.fromtimestamp(ts, tz=timezone.utc)
    return when.isoformat()


def status_for_rate(rate: float) -> str:
    for floor, status in _RATE_BANDS:
        if rate >= floor:
            return status
    return DOWN


@dataclass(frozen=True)
class CallOutcome:
    at: float
    ok: bool
    latency_ms: int
    error: Optional[str] = None


@dataclass(frozen=True)
class ProviderHealth:
    provider: str
    status: str
    mode: str                # "active" | "passive"
    latency_ms: int = 0
    checked_at: str = field(default_factory=_iso)
    error: Optional[str] = None
    success_rate: Optional[float] = None
    sample_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status,
            "mode": self.mode,
            "latency_ms": self.latency_ms,
            "last_checked": self.checked_at,
        }
        if self.error:
            d["error"] = self.error
        if self.success_rate is not None:
            d["success_rate"] = self.success_rate
        if self.sample_size is not None:
            d["sample_size"] = self.sample_size
        return d


class ProviderHealthMonitor:
    """Rolling outcome windows plus the latest probe result per provider."""

    def __init__(
        self,
        probes: Optional[Dict[str, Probe]] = None,
        settings: Optional[ProviderSettings] = None,
    ) -> None:
        if probes is None:
            probes = probes_for(settings or ProviderSettings())
        self.probes = dict(probes)
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[CallOutcome]] = {
            name: deque(maxlen=_WINDOW) for name in SERVICES
        }
        self._probe_results: Dict[str, ProviderHealth] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- passive ---------------------------------------------------------

    def record_call(self, provider: str, ok: bool, latency_ms: int, error: Optional[str] = None) -> None:
        outcome = CallOutcome(time.time(), ok, latency_ms, error)
        with self._lock:
            self._windows.setdefault(provider, deque(maxlen=_WINDOW)).append(outcome)

    def window(self, provider: str) -> Tuple[CallOutcome, ...]:
        with self._lock:
            return tuple(self._windows.get(provider, ()))

    def passive_health(self, provider: str) -> ProviderHealth:
        outcomes = self.window(provider)
        if not outcomes:
            return ProviderHealth(provider, UNKNOWN, "passive", sample_size=0)

        n = len(outcomes)
        rate = sum(o.ok for o in outcomes) / n
        failures = [o.error for o in outcomes if not o.ok and o.error]
        return ProviderHealth(
            provider,
            status_for_rate(rate),
            "passive",
            latency_ms=int(sum(o.latency_ms for o in outcomes) / n),
            checked_at=_iso(outcomes[-1].at),
            error=failures[-1] if failures else None,
            success_rate=round(rate, 3),
            sample_size=n,
        )

    # -- active ----------------------------------------------------------

    def probe(self, provider: str, url: str, params: Dict[str, Any]) -> ProviderHealth:
        """One GET. 200 is healthy, any other status degraded, no response down."""
        started = time.time()
        try:
            resp = requests.get(url, params=params or None, timeout=_PROBE_TIMEOUT)
        except requests.Timeout:
            status, error = DOWN, "timeout"
        except requests.RequestException as e:
            status, error = DOWN, str(e)
        else:
            ok = resp.status_code == 200
            status = HEALTHY if ok else DEGRADED
            error = None if ok else f"HTTP {resp.status_code}"
        return ProviderHealth(
            provider, status, "active",
            latency_ms=int((time.time() - started) * 1000),
            error=error,
        )

    def probe_status(self, provider: str) -> Optional[str]:
        with self._lock:
            result = self._probe_results.get(provider)
        return result.status if result else None

    def run_probes(self) -> None:
        for provider, (url, params) in self.probes.items():
            result = self.probe(provider, url, params)
            with self._lock:
                previous = self._probe_results.get(provider)
                self._probe_results[provider] = result
            if previous is not None and previous.status != result.status:
                logger.warning(
                    "[health] %s went %s -> %s (%s)",
                    provider, previous.status, result.status, result.error,
                )
            else:
                logger.info("[health] %s %s in %dms", provider, result.status, result.latency_ms)

    # -- combined --------------------------------------------------------

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Health of every provider seen so far, probe result preferred."""
        with self._lock:
            names = list(dict.fromkeys(SERVICES + tuple(self._windows)))
            probed = dict(self._probe_results)
        return {
            name: (probed.get(name) or self.passive_health(name)).to_dict()
            for name in names
        }

    # -- thread ----------------------------------------------------------

    def _run(self) -> None:
        logger.info("[health] Probe thread started (every %ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop.is_set():
            try:
                self.run_probes()
            except Exception:
                logger.exception("[health] Probe round failed")
            self._stop.wait(HEALTH_CHECK_INTERVAL)
        logger.info("[health] Probe thread stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-probes", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout=timeout)


_monitor = ProviderHealthMonitor()


def record_call(provider: str, ok: bool, latency_ms: int, error: Optional[str] = None) -> None:
    """Report one upstream call.  Used by providers.py and overpass_http.py."""
    _monitor.record_call(provider, ok, latency_ms, error)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.snapshot()


def overall_status(statuses: Dict[str, Dict[str, Any]]) -> str:
    """"degraded" if any provider is down, else "ok".  Unknown never counts."""
    if any(s.get("status") == DOWN for s in statuses.values()):
        return "degraded"
    return "ok"


def start_monitor(settings: Optional[ProviderSettings] = None) -> None:
    """Point the probes at the configured endpoints and start the probe thread."""
    _monitor.probes = probes_for(settings or ProviderSettings.from_env())
    _monitor.start()


def stop_monitor(timeout: Optional[float] = None) -> None:
    _monitor.stop(timeout)
