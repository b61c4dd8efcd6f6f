"""Shared fixtures for the EcoBlocks test suite.

Provides a Flask test client wired to a temporary SQLite database, fake
provider clients that never touch the network, and a fresh persistence
queue per test.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["ECOBLOCKS_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Keep provider keys out of the test process so nothing reaches a paid API
for _key in ("GEMINI_API_KEY", "TOMTOM_API_KEY", "ELEVEN_LABS_API_KEY", "SENTRY_DSN"):
    os.environ.pop(_key, None)

# Simulate tests post many times per minute
os.environ["RATE_LIMIT_SIMULATE"] = "1000/minute"
os.environ["RATE_LIMIT_DEFAULT"] = "1000/minute"

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from providers import GeoHit, ProviderResult  # noqa: E402
import worker  # noqa: E402


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------

class FakeFetchClient:
    """Stands in for AirQualityClient / TrafficClient / LandUseClient."""

    def __init__(self, provider, data=None, error=None, history=None, raises=None):
        self.provider = provider
        self.data = data
        self.error = error
        self.history = history
        self.raises = raises
        self.calls = []
        self.history_calls = []

    def fetch(self, lat, lon):
        self.calls.append((lat, lon))
        if self.raises is not None:
            raise self.raises
        if self.error is not None:
            return ProviderResult.failure(self.provider, self.error)
        return ProviderResult.success(self.provider, self.data)

    def fetch_history(self, lat, lon, days=30):
        self.history_calls.append((lat, lon, days))
        if self.history is None:
            return ProviderResult.failure(self.provider, "no history")
        return ProviderResult.success(self.provider, self.history)


class FakeGeocoder:
    def __init__(self, provider, hits=None, error=None):
        self.provider = provider
        self.hits = hits or []
        self.error = error
        self.calls = []

    def search(self, query):
        self.calls.append(query)
        if self.error is not None:
            return ProviderResult.failure(self.provider, self.error)
        return ProviderResult.success(self.provider, list(self.hits))


class FakeNarrativeClient:
    provider = "narrative"

    def __init__(self, text=None, error=None, raises=None):
        self.text = text
        self.error = error
        self.raises = raises
        self.prompts = []

    @property
    def enabled(self):
        return self.text is not None

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.raises is not None:
            raise self.raises
        if self.text is None:
            return ProviderResult.failure(self.provider, self.error or "GEMINI_API_KEY not configured")
        return ProviderResult.success(self.provider, self.text)


class FakeSpeechClient:
    provider = "speech"

    def __init__(self, audio=None):
        self.audio = audio
        self.texts = []

    @property
    def enabled(self):
        return self.audio is not None

    def synthesize(self, text):
        self.texts.append(text)
        return ProviderResult.success(self.provider, self.audio)


class FakeBundle:
    """Same attribute names as providers.ProviderBundle."""

    def __init__(self, **overrides):
        self.air_quality = FakeFetchClient("air_quality", {"aqi": 120, "pm25": 35.5})
        self.traffic = FakeFetchClient(
            "traffic", {"current_speed": 30.0, "free_flow_speed": 50.0},
        )
        self.land_use = FakeFetchClient("land_use", {"features": [
            {"layer": "building", "class": "apartments"} for _ in range(50)
        ] + [{"layer": "landuse", "class": "residential"}]})
        self.geocode_primary = FakeGeocoder(
            "geocode_primary", hits=[GeoHit(51.5072, -0.1276, "London, United Kingdom", "United Kingdom")],
        )
        self.geocode_fallback = FakeGeocoder("geocode_fallback")
        self.narrative = FakeNarrativeClient()
        self.speech = FakeSpeechClient()
        for k, v in overrides.items():
            setattr(self, k, v)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database and the persistence queue before every test."""
    init_db()
    conn = _get_db()
    for table in ("simulations", "user_rewards"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    worker.drain_once()
    yield
    worker.drain_once()


@pytest.fixture()
def fake_bundle():
    return FakeBundle()


@pytest.fixture()
def client(fake_bundle, monkeypatch):
    """Flask test client whose routes see fake_bundle instead of real providers."""
    import app as app_module

    monkeypatch.setattr(app_module, "_providers", lambda: fake_bundle)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
