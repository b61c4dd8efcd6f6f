"""
Block-state aggregation: one coordinate -> air quality, traffic, density.

The three providers are called concurrently and the aggregator waits for
all of them to settle (no fail-fast).  Each provider failure is replaced
by a documented heuristic so aggregate() always returns a BlockState:

  air quality down -> aqi=0, pm25=0 (no traffic escalation signal)
  traffic down     -> AQI > 100 ? Heavy Traffic (est.) : Clear Roads (est.)
  land use down    -> 0 buildings, Sparse, area type "Unknown"

`sources` records which fields came from a live provider and which from
a fallback.  aqi == 0 means "no data" as often as it means clean air;
check sources["air_quality"] before reading it as good news.
"""

import logging
import math
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from eco_config import BLOCK_MODEL, BlockModel, classify_count, classify_ratio
from eco_trace import clear_trace, get_trace, set_trace
from providers import ProviderResult

logger = logging.getLogger(__name__)

LIVE = "live"
FALLBACK = "fallback"

# (layer, class) pairs that count toward tree density.
VEGETATION_FEATURES = {
    ("natural", "tree"),
    ("natural", "wood"),
    ("natural", "tree_row"),
    ("natural", "scrub"),
    ("leisure", "park"),
    ("leisure", "garden"),
    ("landuse", "forest"),
    ("landuse", "park"),
    ("landuse", "grass"),
    ("landuse", "meadow"),
}


class InvalidInputError(ValueError):
    """The caller sent malformed input.  Raised before any provider call."""

    pass


@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    @classmethod
    def parse(cls, lat: Any, lon: Any) -> "Coordinate":
        """Validate raw request values into a Coordinate.

        Raises InvalidInputError for missing, non-numeric, non-finite or
        out-of-range values.
        """
        if lat is None or lon is None or lat == "" or lon == "":
            raise InvalidInputError("Missing coordinates")
        if isinstance(lat, bool) or isinstance(lon, bool):
            raise InvalidInputError("Coordinates must be numeric")
        try:
            lat_f = float(lat)
            lon_f = float(lon)
        except (TypeError, ValueError):
            raise InvalidInputError("Coordinates must be numeric")
        if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
            raise InvalidInputError("Coordinates must be finite")
        if not -90.0 <= lat_f <= 90.0:
            raise InvalidInputError(f"Latitude {lat_f} out of range [-90, 90]")
        if not -180.0 <= lon_f <= 180.0:
            raise InvalidInputError(f"Longitude {lon_f} out of range [-180, 180]")
        return cls(lat=lat_f, lon=lon_f)


class TrafficLabel(Enum):
    CLEAR_ROADS = "Clear Roads"
    MODERATE_FLOW = "Moderate Flow"
    HEAVY_TRAFFIC = "Heavy Traffic"
    SEVERE_CONGESTION = "Severe Congestion"


@dataclass(frozen=True)
class BlockState:
    """Composite read model for one coordinate.  Recomputed per request."""
    coordinate: Optional[Coordinate]
    aqi: int
    pm25: float
    traffic_label: TrafficLabel
    traffic_estimated: bool
    building_count: int
    density_label: str
    area_type: str
    traffic_speed_kmh: Optional[float] = None
    free_flow_speed_kmh: Optional[float] = None
    tree_density: Optional[str] = None
    sources: Dict[str, str] = field(default_factory=dict)

    @property
    def traffic_display(self) -> str:
        if self.traffic_estimated:
            return f"{self.traffic_label.value} (Est.)"
        return self.traffic_label.value

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "aqi": self.aqi,
            "pm25": self.pm25,
            "traffic": self.traffic_display,
            "trafficLabel": self.traffic_label.value,
            "trafficEstimated": self.traffic_estimated,
            "trafficSpeedKmh": self.traffic_speed_kmh,
            "freeFlowSpeedKmh": self.free_flow_speed_kmh,
            "buildingCount": self.building_count,
            "buildingDensity": self.density_label,
            "areaType": self.area_type,
            "treeDensity": self.tree_density,
            "sources": dict(self.sources),
        }
        if self.coordinate is not None:
            d["lat"] = self.coordinate.lat
            d["lon"] = self.coordinate.lon
        return d


# =============================================================================
# Classification
# =============================================================================

def classify_density(building_count: int, model: BlockModel = BLOCK_MODEL) -> str:
    """Sparse / Low / Medium / High, monotonic in building_count."""
    return classify_count(model.density_thresholds, building_count, model.density_floor_label)


def classify_tree_density(features: List[Dict[str, str]], model: BlockModel = BLOCK_MODEL) -> str:
    count = sum(
        1 for f in features
        if (f.get("layer"), f.get("class")) in VEGETATION_FEATURES
    )
    return classify_count(model.tree_thresholds, count, model.tree_floor_label)


def classify_area(
    features: List[Dict[str, str]],
    density_label: str,
    model: BlockModel = BLOCK_MODEL,
) -> str:
    """Area type from the dominant landuse class, else a density-based guess."""
    landuse = Counter(
        f["class"] for f in features
        if f.get("layer") == "landuse" and f.get("class")
    )
    if landuse:
        dominant, _ = landuse.most_common(1)[0]
        return model.landuse_area_types.get(
            dominant, dominant.replace("_", " ").title()
        )
    return model.density_area_guess.get(density_label, model.unknown_area_type)


def classify_traffic(
    traffic: ProviderResult,
    aqi: int,
    model: BlockModel = BLOCK_MODEL,
) -> Tuple[TrafficLabel, bool, Optional[float], Optional[float]]:
    """Return (label, estimated, current_speed, free_flow_speed)."""
    if traffic.ok:
        current = traffic.data["current_speed"]
        free_flow = traffic.data["free_flow_speed"]
        label = TrafficLabel(classify_ratio(model.traffic_ratio_bands, current / free_flow))
        return label, False, current, free_flow

    # Heuristic substitute: only a high AQI escalates the estimate.
    if aqi > model.traffic_fallback_aqi:
        return TrafficLabel.HEAVY_TRAFFIC, True, None, None
    return TrafficLabel.CLEAR_ROADS, True, None, None


def merge_block_state(
    coordinate: Optional[Coordinate],
    air_quality: ProviderResult,
    traffic: ProviderResult,
    land_use: ProviderResult,
    model: BlockModel = BLOCK_MODEL,
) -> BlockState:
    """Combine three settled provider results into a BlockState.  Pure."""
    sources = {}

    if air_quality.ok:
        aqi = int(air_quality.data["aqi"])
        pm25 = float(air_quality.data["pm25"])
        sources["air_quality"] = LIVE
    else:
        aqi, pm25 = 0, 0.0
        sources["air_quality"] = FALLBACK

    label, estimated, speed, free_flow = classify_traffic(traffic, aqi, model)
    sources["traffic"] = FALLBACK if estimated else LIVE

    if land_use.ok:
        features = land_use.data.get("features") or []
        building_count = sum(1 for f in features if f.get("layer") == "building")
        density = classify_density(building_count, model)
        area_type = classify_area(features, density, model)
        tree_density = classify_tree_density(features, model)
        sources["land_use"] = LIVE
    else:
        building_count = 0
        density = model.density_floor_label
        area_type = model.unknown_area_type
        tree_density = None
        sources["land_use"] = FALLBACK

    return BlockState(
        coordinate=coordinate,
        aqi=aqi,
        pm25=pm25,
        traffic_label=label,
        traffic_estimated=estimated,
        traffic_speed_kmh=speed,
        free_flow_speed_kmh=free_flow,
        building_count=building_count,
        density_label=density,
        area_type=area_type,
        tree_density=tree_density,
        sources=sources,
    )


# =============================================================================
# Fan-out
# =============================================================================

def _settled_call(parent_trace, provider: str, fetch, lat: float, lon: float) -> ProviderResult:
    """Run one provider fetch in a worker thread; never raises."""
    set_trace(parent_trace)
    try:
        return fetch(lat, lon)
    except Exception as e:
        logger.warning("Provider %s raised instead of returning a result", provider, exc_info=True)
        return ProviderResult.failure(provider, f"{type(e).__name__}: {e}")
    finally:
        clear_trace()


def aggregate(
    coordinate: Coordinate,
    air_quality_client,
    traffic_client,
    land_use_client,
    deadline: Optional[float] = None,
    model: BlockModel = BLOCK_MODEL,
) -> BlockState:
    """Fetch all three providers concurrently and merge.  Never raises.

    deadline: overall wait in seconds.  A provider still running when it
    passes is treated as failed; its future is cancelled and its late
    result discarded.
    """
    parent_trace = get_trace()
    if parent_trace:
        parent_trace.start_stage("block_state")
    t0 = time.time()

    calls = {
        "air_quality": air_quality_client.fetch,
        "traffic": traffic_client.fetch,
        "land_use": land_use_client.fetch,
    }
    pool = ThreadPoolExecutor(max_workers=len(calls), thread_name_prefix="block-state")
    try:
        futures = {
            name: pool.submit(
                _settled_call, parent_trace, name, fetch, coordinate.lat, coordinate.lon,
            )
            for name, fetch in calls.items()
        }
        wait(futures.values(), timeout=deadline)

        results: Dict[str, ProviderResult] = {}
        for name, future in futures.items():
            if future.done():
                results[name] = future.result()
            else:
                future.cancel()
                logger.warning(
                    "Provider %s missed the %.1fs block-state deadline", name, deadline,
                )
                results[name] = ProviderResult.failure(name, "deadline exceeded")
    finally:
        # Do not block on stragglers; their results are already discarded.
        pool.shutdown(wait=False, cancel_futures=True)

    block = merge_block_state(
        coordinate,
        results["air_quality"],
        results["traffic"],
        results["land_use"],
        model,
    )

    degraded = [k for k, v in block.sources.items() if v == FALLBACK]
    if parent_trace:
        parent_trace.record_stage(
            "block_state", t0, time.time(),
            degraded=bool(degraded),
            note=",".join(degraded),
        )
        parent_trace.end_stage()
    elif degraded:
        logger.info("Block state for (%.4f, %.4f) degraded: %s",
                    coordinate.lat, coordinate.lon, ", ".join(degraded))
    return block
