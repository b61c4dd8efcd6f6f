"""
Model and provider configuration for EcoBlocks.

Owns every numeric constant that affects a block classification or a
simulation outcome, plus the provider settings resolved from the
environment.  Provider clients receive a ProviderSettings instance at
construction; nothing below reads the environment except
ProviderSettings.from_env().

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class InterventionStrategy:
    """One row of the strategy table."""
    name: str
    reduction_rate: float   # fraction of current AQI removed, in (0, 1]
    unit_cost: int          # USD for a standard city block deployment


@dataclass(frozen=True)
class CountThreshold:
    """Maps a count to a label when count is strictly above `above`.

    Thresholds are evaluated highest-first: the first entry whose
    `above` is exceeded wins.
    """
    above: int
    label: str


@dataclass(frozen=True)
class RatioBand:
    """Maps a minimum current/free-flow speed ratio to a traffic label."""
    min_ratio: float
    label: str


@dataclass(frozen=True)
class BlockModel:
    """Classification tables used by the block-state aggregator."""
    density_thresholds: Tuple[CountThreshold, ...]
    density_floor_label: str
    tree_thresholds: Tuple[CountThreshold, ...]
    tree_floor_label: str
    traffic_ratio_bands: Tuple[RatioBand, ...]
    # AQI above this escalates the traffic estimate when the traffic
    # provider is unavailable.
    traffic_fallback_aqi: int
    landuse_area_types: Dict[str, str]
    density_area_guess: Dict[str, str]
    unknown_area_type: str = "Unknown"


@dataclass(frozen=True)
class SimulationModel:
    """Top-level container for simulation parameters.

    A single module-level instance (SIMULATION_MODEL) is the source of truth.
    Bump `version` on every change that alters simulation outputs.
    """
    version: str
    strategies: Tuple[InterventionStrategy, ...]
    density_multipliers: Dict[str, float]
    default_multiplier: float
    forecast_days: int
    fallback_forecast_step: float
    fallback_traffic_speed_kmh: float
    history_days: int
    # Ceiling on any AQI reading the engine will take; far above the
    # 500 top of the US AQI scale.
    max_aqi: float = 10000.0

    @property
    def default_strategy(self) -> InterventionStrategy:
        """The cheapest strategy; used for unrecognised intervention names."""
        return min(self.strategies, key=lambda s: s.unit_cost)

    def strategy_names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.strategies)


# =============================================================================
# Pure lookup helpers
# =============================================================================

def classify_count(
    thresholds: Tuple[CountThreshold, ...],
    count: int,
    floor_label: str,
) -> str:
    """Return the label of the first threshold that *count* exceeds.

    Thresholds are assumed sorted highest `above` first.  Returns
    *floor_label* when no threshold is exceeded.
    """
    for t in thresholds:
        if count > t.above:
            return t.label
    return floor_label


def classify_ratio(bands: Tuple[RatioBand, ...], ratio: float) -> str:
    """Return the label of the first band whose min_ratio <= ratio.

    Bands are assumed sorted highest min_ratio first; the last band
    should have min_ratio 0.0 so every non-negative ratio matches.
    """
    for b in bands:
        if ratio >= b.min_ratio:
            return b.label
    return bands[-1].label


# =============================================================================
# BLOCK_MODEL: current production values
# =============================================================================

# Density thresholds are tuned for a ~250 m Overpass radius.  Earlier
# tile-based counting used a smaller footprint and much lower numbers;
# retune together with LAND_USE_RADIUS_M.
_DENSITY_THRESHOLDS = (
    CountThreshold(above=100, label="High"),
    CountThreshold(above=40, label="Medium"),
    CountThreshold(above=5, label="Low"),
)

_TREE_THRESHOLDS = (
    CountThreshold(above=14, label="High"),
    CountThreshold(above=4, label="Moderate"),
)

_TRAFFIC_RATIO_BANDS = (
    RatioBand(min_ratio=0.85, label="Clear Roads"),
    RatioBand(min_ratio=0.60, label="Moderate Flow"),
    RatioBand(min_ratio=0.40, label="Heavy Traffic"),
    RatioBand(min_ratio=0.0, label="Severe Congestion"),
)

# OSM landuse=* values -> area type shown to the user.
_LANDUSE_AREA_TYPES = {
    "residential": "Residential",
    "commercial": "Commercial",
    "retail": "Commercial",
    "industrial": "Industrial",
    "construction": "Industrial",
    "railway": "Transport Corridor",
    "education": "Institutional",
    "institutional": "Institutional",
    "religious": "Institutional",
    "park": "Green Space",
    "grass": "Green Space",
    "forest": "Green Space",
    "meadow": "Green Space",
    "recreation_ground": "Green Space",
    "cemetery": "Green Space",
    "farmland": "Agricultural",
    "farmyard": "Agricultural",
    "orchard": "Agricultural",
}

_DENSITY_AREA_GUESS = {
    "High": "Urban Core",
    "Medium": "Urban",
    "Low": "Suburban",
    "Sparse": "Rural",
}

BLOCK_MODEL = BlockModel(
    density_thresholds=_DENSITY_THRESHOLDS,
    density_floor_label="Sparse",
    tree_thresholds=_TREE_THRESHOLDS,
    tree_floor_label="Sparse",
    traffic_ratio_bands=_TRAFFIC_RATIO_BANDS,
    traffic_fallback_aqi=100,
    landuse_area_types=_LANDUSE_AREA_TYPES,
    density_area_guess=_DENSITY_AREA_GUESS,
)


# =============================================================================
# SIMULATION_MODEL: current production values
# =============================================================================

# Sorted by unit cost so the table reads the way the intervention menu does.
_STRATEGIES = (
    InterventionStrategy("Biochar", 0.10, 8000),
    InterventionStrategy("Green Wall", 0.15, 12000),
    InterventionStrategy("Algae Panel", 0.25, 25000),
    InterventionStrategy("Cool Roof + Solar", 0.22, 35000),
    InterventionStrategy("Building Retrofit", 0.20, 45000),
    InterventionStrategy("Direct Air Capture", 0.45, 80000),
)

# Denser blocks trap pollutants longer, so the same hardware removes more.
_DENSITY_MULTIPLIERS = {
    "High": 1.2,
    "Medium": 1.1,
    "Sparse": 0.9,
}

SIMULATION_MODEL = SimulationModel(
    version="1.2.0",
    strategies=_STRATEGIES,
    density_multipliers=_DENSITY_MULTIPLIERS,
    default_multiplier=1.0,
    forecast_days=7,
    fallback_forecast_step=0.5,
    fallback_traffic_speed_kmh=35.0,
    history_days=30,
    max_aqi=10000.0,
)


# =============================================================================
# Provider settings
# =============================================================================

@dataclass(frozen=True)
class ProviderSettings:
    """Endpoints, credentials and timeouts for every upstream provider.

    Built once at startup (or per test) and passed to each client's
    constructor.  A provider whose key is None reports itself as
    unavailable instead of making a request.
    """
    timeout: float = 8.0
    air_quality_url: str = "https://air-quality-api.open-meteo.com/v1/air-quality"
    tomtom_api_key: Optional[str] = None
    traffic_url: str = (
        "https://api.tomtom.com/traffic/services/4/flowSegmentData/absolute/10/json"
    )
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    overpass_status_url: str = "https://overpass-api.de/api/status"
    land_use_radius_m: int = 250
    geocode_primary_url: str = "https://geocoding-api.open-meteo.com/v1/search"
    geocode_fallback_url: str = "https://nominatim.openstreetmap.org/search"
    user_agent: str = "EcoBlocks/1.0"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    eleven_labs_api_key: Optional[str] = None
    eleven_labs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    eleven_labs_url: str = "https://api.elevenlabs.io/v1/text-to-speech"

    @property
    def aggregate_deadline(self) -> float:
        """Upper bound on one block-state fan-out (three provider timeouts)."""
        return self.timeout * 3

    @classmethod
    def from_env(cls, environ=None) -> "ProviderSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            timeout=float(env.get("PROVIDER_TIMEOUT", defaults.timeout)),
            air_quality_url=env.get("AIR_QUALITY_BASE_URL", defaults.air_quality_url),
            tomtom_api_key=env.get("TOMTOM_API_KEY") or None,
            traffic_url=env.get("TRAFFIC_BASE_URL", defaults.traffic_url),
            overpass_url=env.get("OVERPASS_BASE_URL", defaults.overpass_url),
            overpass_status_url=env.get("OVERPASS_STATUS_URL", defaults.overpass_status_url),
            land_use_radius_m=int(env.get("LAND_USE_RADIUS_M", defaults.land_use_radius_m)),
            geocode_primary_url=env.get("GEOCODE_PRIMARY_URL", defaults.geocode_primary_url),
            geocode_fallback_url=env.get("GEOCODE_FALLBACK_URL", defaults.geocode_fallback_url),
            user_agent=env.get("HTTP_USER_AGENT", defaults.user_agent),
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_model=env.get("GEMINI_MODEL", defaults.gemini_model),
            eleven_labs_api_key=env.get("ELEVEN_LABS_API_KEY") or None,
            eleven_labs_voice_id=env.get("ELEVEN_LABS_VOICE_ID", defaults.eleven_labs_voice_id),
        )
