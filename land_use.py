"""
Land-use provider: building and land-use features around a point.

Queries OpenStreetMap through the shared Overpass layer and flattens the
elements into the provider-neutral shape the aggregator reads:

    {"features": [{"layer": "building", "class": "apartments"},
                  {"layer": "landuse",  "class": "residential"},
                  {"layer": "natural",  "class": "tree"}, ...]}

Each element contributes at most one feature, taken from the first tag
key present in LAYER_TAGS order.  Elements carrying none of those keys
are dropped.

Limitations:
  - OSM building coverage is uneven; sparsely mapped cities read as
    lower density than they are.
  - Individual street trees are rarely mapped, so tree density leans on
    wood/park polygons.
"""

import logging
from typing import Any, Dict, List

from eco_config import ProviderSettings
from overpass_http import (
    OverpassQueryError,
    OverpassRateLimitError,
    get_overpass_client,
)
from providers import ProviderResult

logger = logging.getLogger(__name__)

# Tag key -> feature layer, in precedence order.
LAYER_TAGS = (
    ("building", "building"),
    ("landuse", "landuse"),
    ("natural", "natural"),
    ("leisure", "leisure"),
)


def build_land_use_query(lat: float, lon: float, radius_m: int, timeout_s: int) -> str:
    """Overpass QL for buildings, land use and vegetation within *radius_m*."""
    around = f"(around:{radius_m},{lat},{lon})"
    return (
        f"[out:json][timeout:{timeout_s}];\n"
        "(\n"
        f'  way["building"]{around};\n'
        f'  way["landuse"]{around};\n'
        f'  node["natural"="tree"]{around};\n'
        f'  way["natural"~"^(wood|tree_row|scrub)$"]{around};\n'
        f'  way["leisure"~"^(park|garden)$"]{around};\n'
        ");\n"
        "out tags;"
    )


def elements_to_features(elements: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten Overpass elements into [{"layer", "class"}] features."""
    features = []
    for el in elements:
        tags = el.get("tags") or {}
        for key, layer in LAYER_TAGS:
            value = tags.get(key)
            if value:
                features.append({"layer": layer, "class": str(value)})
                break
    return features


class LandUseClient:
    provider = "land_use"

    def __init__(self, settings: ProviderSettings):
        self.settings = settings
        self.http = get_overpass_client(settings.overpass_url, timeout=settings.timeout)

    def fetch(self, lat: float, lon: float) -> ProviderResult:
        """data = {"features": [...]} (possibly an empty list)."""
        query = build_land_use_query(
            lat, lon,
            radius_m=self.settings.land_use_radius_m,
            timeout_s=max(1, int(self.settings.timeout)),
        )
        try:
            data = self.http.query(query, caller="land_use")
            elements = data.get("elements")
            if not isinstance(elements, list):
                raise OverpassQueryError("Overpass response missing elements list")
            return ProviderResult.success(
                self.provider, {"features": elements_to_features(elements)},
            )
        except (OverpassQueryError, OverpassRateLimitError, AttributeError) as e:
            logger.warning("Land use unavailable for (%.4f, %.4f): %s", lat, lon, e)
            return ProviderResult.failure(self.provider, str(e))
