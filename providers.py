"""
Upstream provider clients for EcoBlocks.

Every client takes a ProviderSettings at construction and returns a
ProviderResult from each call: either ok=True with parsed data or
ok=False with a short reason.  Nothing past this module inspects raw
provider JSON, and no client raises for an upstream failure.

Providers:
  - AirQualityClient   Open-Meteo air-quality API (current AQI/PM2.5, 30-day history)
  - TrafficClient      TomTom Flow Segment Data (current vs free-flow speed)
  - OpenMeteoGeocoder  primary geocoder
  - NominatimGeocoder  fallback geocoder (OpenStreetMap)
  - NarrativeClient    Google Gemini (google-genai), JSON response mode
  - SpeechClient       ElevenLabs text-to-speech

Land use lives in land_use.py because it goes through the shared
Overpass HTTP layer.

No client retries.  A failed call degrades the request that made it;
retrying is an operational concern and would stretch worst-case latency.
"""

import base64
import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict

import requests
from google import genai
from google.genai import types as genai_types

from eco_config import ProviderSettings
from eco_trace import get_trace
from health_monitor import record_call

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider call failed (timeout, transport error, HTTP error, bad body).

    Raised only inside this module; converted to a failed ProviderResult
    at the client boundary.
    """

    def __init__(self, message: str, outcome: str = "exception"):
        super().__init__(message)
        self.outcome = outcome


@dataclass(frozen=True)
class ProviderResult:
    """Tagged outcome of one provider call: Ok(data) or Err(error)."""
    provider: str
    ok: bool
    data: Any = None
    error: str = ""

    @classmethod
    def success(cls, provider: str, data: Any) -> "ProviderResult":
        return cls(provider=provider, ok=True, data=data)

    @classmethod
    def failure(cls, provider: str, error: str) -> "ProviderResult":
        return cls(provider=provider, ok=False, error=error)


@dataclass(frozen=True)
class GeoHit:
    """One geocoding hit, normalised across providers."""
    lat: float
    lon: float
    display_name: str
    country: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "display_name": self.display_name,
            "country": self.country,
        }


# =============================================================================
# Shared HTTP plumbing
# =============================================================================

class HTTPProviderClient:
    """Base for requests-backed providers.

    Holds one requests.Session per client instance.  Clients are cheap;
    build one per request (or per fan-out thread) rather than sharing a
    session across threads.
    """

    provider = "unknown"

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self.timeout = settings.timeout
        self.session = requests.Session()
        self.session.trust_env = False
        self.session.headers["User-Agent"] = settings.user_agent

    def _record(self, operation: str, t0: float, status_code: int, outcome: str):
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        trace = get_trace()
        if trace:
            trace.record_provider_call(
                provider=self.provider,
                operation=operation,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                outcome=outcome,
            )
        record_call(
            self.provider,
            outcome in ("ok", "empty"),
            elapsed_ms,
            None if outcome in ("ok", "empty") else outcome,
        )

    def _traced_request(
        self,
        operation: str,
        method: str,
        url: str,
        **kwargs,
    ) -> requests.Response:
        """Single time-bounded HTTP request with trace + health recording.

        Raises ProviderError for timeouts, transport errors and HTTP >= 400.
        """
        t0 = time.monotonic()
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            self._record(operation, t0, 0, "timeout")
            raise ProviderError(
                f"{self.provider} {operation} timed out after {self.timeout}s",
                outcome="timeout",
            )
        except requests.exceptions.RequestException as e:
            self._record(operation, t0, 0, "exception")
            raise ProviderError(f"{self.provider} {operation} failed: {e}") from e

        if resp.status_code >= 400:
            self._record(operation, t0, resp.status_code, "http_error")
            raise ProviderError(
                f"{self.provider} {operation} HTTP {resp.status_code}",
                outcome="http_error",
            )
        self._record(operation, t0, resp.status_code, "ok")
        return resp

    def _get_json(self, operation: str, url: str, params: dict) -> Any:
        resp = self._traced_request(operation, "GET", url, params=params)
        try:
            return resp.json()
        except ValueError:
            raise ProviderError(
                f"{self.provider} {operation} returned non-JSON body",
                outcome="parse_error",
            )


# =============================================================================
# Air quality
# =============================================================================

class AirQualityClient(HTTPProviderClient):
    provider = "air_quality"

    def fetch(self, lat: float, lon: float) -> ProviderResult:
        """Current US AQI and PM2.5: data = {"aqi": int, "pm25": float}."""
        params = {
            "latitude": lat,
            "longitude": lon,
            "current": "us_aqi,pm2_5",
        }
        try:
            data = self._get_json("current", self.settings.air_quality_url, params)
            current = data.get("current") or {}
            aqi = current.get("us_aqi")
            if aqi is None:
                raise ProviderError("air_quality response missing us_aqi", "parse_error")
            pm25 = current.get("pm2_5") or 0.0
            return ProviderResult.success(self.provider, {
                "aqi": max(0, int(round(float(aqi)))),
                "pm25": max(0.0, float(pm25)),
            })
        except (ProviderError, AttributeError, TypeError, ValueError) as e:
            logger.warning("Air quality unavailable for (%.4f, %.4f): %s", lat, lon, e)
            return ProviderResult.failure(self.provider, str(e))

    def fetch_history(self, lat: float, lon: float, days: int = 30) -> ProviderResult:
        """Hourly US AQI for the last *days* full days: data = list of floats/None."""
        end = dt.date.today() - dt.timedelta(days=1)
        start = end - dt.timedelta(days=days - 1)
        params = {
            "latitude": lat,
            "longitude": lon,
            "hourly": "us_aqi",
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        try:
            data = self._get_json("history", self.settings.air_quality_url, params)
            hourly = (data.get("hourly") or {}).get("us_aqi")
            if not hourly:
                raise ProviderError("air_quality history empty", "parse_error")
            return ProviderResult.success(self.provider, list(hourly))
        except (ProviderError, AttributeError, TypeError) as e:
            logger.warning("AQI history unavailable for (%.4f, %.4f): %s", lat, lon, e)
            return ProviderResult.failure(self.provider, str(e))


# =============================================================================
# Traffic
# =============================================================================

class TrafficClient(HTTPProviderClient):
    provider = "traffic"

    def fetch(self, lat: float, lon: float) -> ProviderResult:
        """data = {"current_speed": float, "free_flow_speed": float} (km/h)."""
        if not self.settings.tomtom_api_key:
            return ProviderResult.failure(self.provider, "TOMTOM_API_KEY not configured")
        params = {
            "point": f"{lat},{lon}",
            "unit": "KMPH",
            "key": self.settings.tomtom_api_key,
        }
        try:
            data = self._get_json("flow_segment", self.settings.traffic_url, params)
            segment = data["flowSegmentData"]
            current = float(segment["currentSpeed"])
            free_flow = float(segment["freeFlowSpeed"])
            if free_flow <= 0 or current < 0:
                raise ProviderError("traffic speeds out of range", "parse_error")
            return ProviderResult.success(self.provider, {
                "current_speed": current,
                "free_flow_speed": free_flow,
            })
        except (ProviderError, KeyError, TypeError, ValueError) as e:
            logger.warning("Traffic unavailable for (%.4f, %.4f): %s", lat, lon, e)
            return ProviderResult.failure(self.provider, str(e))


# =============================================================================
# Geocoders
# =============================================================================

class OpenMeteoGeocoder(HTTPProviderClient):
    provider = "geocode_primary"

    def search(self, query: str, limit: int = 5) -> ProviderResult:
        """data = list of GeoHit (possibly empty)."""
        params = {"name": query, "count": limit, "language": "en", "format": "json"}
        try:
            data = self._get_json("search", self.settings.geocode_primary_url, params)
            hits = []
            for place in data.get("results") or []:
                name = place.get("name", "")
                country = place.get("country", "")
                hits.append(GeoHit(
                    lat=float(place["latitude"]),
                    lon=float(place["longitude"]),
                    display_name=", ".join(p for p in (name, country) if p),
                    country=country,
                ))
            return ProviderResult.success(self.provider, hits)
        except (ProviderError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Primary geocoder failed for %r: %s", query, e)
            return ProviderResult.failure(self.provider, str(e))


class NominatimGeocoder(HTTPProviderClient):
    provider = "geocode_fallback"

    def search(self, query: str, limit: int = 5) -> ProviderResult:
        """data = list of GeoHit (possibly empty)."""
        params = {"q": query, "format": "jsonv2", "limit": limit, "addressdetails": 1}
        try:
            data = self._get_json("search", self.settings.geocode_fallback_url, params)
            hits = [
                GeoHit(
                    lat=float(place["lat"]),
                    lon=float(place["lon"]),
                    display_name=place.get("display_name", ""),
                    country=(place.get("address") or {}).get("country", ""),
                )
                for place in data
            ]
            return ProviderResult.success(self.provider, hits)
        except (ProviderError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Fallback geocoder failed for %r: %s", query, e)
            return ProviderResult.failure(self.provider, str(e))


# =============================================================================
# Narrative generator (Gemini)
# =============================================================================

class NarrativeClient:
    """Thin wrapper around google-genai.  data = raw response text."""

    provider = "narrative"

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self._client = None
        if settings.gemini_api_key:
            self._client = genai.Client(
                api_key=settings.gemini_api_key,
                http_options=genai_types.HttpOptions(timeout=int(settings.timeout * 1000)),
            )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def generate(self, prompt: str) -> ProviderResult:
        if self._client is None:
            return ProviderResult.failure(self.provider, "GEMINI_API_KEY not configured")

        trace = get_trace()
        t0 = time.monotonic()
        try:
            response = self._client.models.generate_content(
                model=self.settings.gemini_model,
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    response_mime_type="application/json",
                    temperature=0.4,
                ),
            )
            text = response.text or ""
        except Exception as e:
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if trace:
                trace.record_provider_call(self.provider, "generate", elapsed_ms, 0, "exception")
            record_call(self.provider, False, elapsed_ms, type(e).__name__)
            logger.warning("Narrative generator failed: %s", e)
            return ProviderResult.failure(self.provider, str(e))

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        outcome = "ok" if text.strip() else "empty"
        if trace:
            trace.record_provider_call(self.provider, "generate", elapsed_ms, 200, outcome)
        record_call(self.provider, True, elapsed_ms)
        if outcome == "empty":
            return ProviderResult.failure(self.provider, "empty response")
        return ProviderResult.success(self.provider, text)


# =============================================================================
# Speech generator (ElevenLabs)
# =============================================================================

class SpeechClient(HTTPProviderClient):
    provider = "speech"

    @property
    def enabled(self) -> bool:
        return bool(self.settings.eleven_labs_api_key)

    def synthesize(self, text: str) -> ProviderResult:
        """data = base64-encoded MPEG audio of *text*."""
        if not self.enabled:
            return ProviderResult.failure(self.provider, "ELEVEN_LABS_API_KEY not configured")
        url = f"{self.settings.eleven_labs_url}/{self.settings.eleven_labs_voice_id}"
        try:
            resp = self._traced_request(
                "tts", "POST", url,
                json={"text": text},
                headers={"xi-api-key": self.settings.eleven_labs_api_key},
            )
            if not resp.content:
                raise ProviderError("speech response empty", "empty")
            return ProviderResult.success(
                self.provider, base64.b64encode(resp.content).decode("ascii"),
            )
        except ProviderError as e:
            logger.warning("Speech synthesis failed: %s", e)
            return ProviderResult.failure(self.provider, str(e))


@dataclass
class ProviderBundle:
    """The set of clients one request needs.  Swap any member for a fake in tests."""
    air_quality: AirQualityClient
    traffic: TrafficClient
    land_use: Any
    geocode_primary: OpenMeteoGeocoder
    geocode_fallback: NominatimGeocoder
    narrative: NarrativeClient
    speech: SpeechClient

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "ProviderBundle":
        from land_use import LandUseClient

        return cls(
            air_quality=AirQualityClient(settings),
            traffic=TrafficClient(settings),
            land_use=LandUseClient(settings),
            geocode_primary=OpenMeteoGeocoder(settings),
            geocode_fallback=NominatimGeocoder(settings),
            narrative=NarrativeClient(settings),
            speech=SpeechClient(settings),
        )
