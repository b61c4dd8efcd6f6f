"""
Narrative augmentation for simulation results.

Two paths produce the same shape:

  1. The generator path: one prompt to the narrative provider, whose reply
     must parse as

        {"headline": str, "content": str, "techSpecs": str,
         "recommendation": str, "aqiForecast": [7 numbers],
         "trafficForecast": [7 numbers]}

     Anything short of that (missing key, blank string, wrong-length or
     non-numeric forecast, non-JSON text) is a contract violation and the
     whole reply is discarded.  There is no partial acceptance.

  2. The fallback path: fallback_narrative() + fallback_forecast(), pure
     template composition with no network access.  Always complete.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eco_config import SIMULATION_MODEL, SimulationModel
from history import WeeklySummary

NARRATIVE_FIELDS = (
    ("headline", "headline"),
    ("content", "content"),
    ("techSpecs", "tech_specs"),
    ("recommendation", "recommendation"),
)
FORECAST_FIELDS = ("aqiForecast", "trafficForecast")

TECH_SPECS = {
    "Green Wall": (
        "Modular living wall with native climbing species and drip irrigation; "
        "foliage captures fine particulates on leaf surfaces"
    ),
    "Algae Panel": (
        "Closed-loop photobioreactor facade panels cultivating microalgae "
        "that absorb CO2 and NOx"
    ),
    "Direct Air Capture": (
        "Solid-sorbent direct air capture unit with fan-driven contactors "
        "and low-temperature regeneration"
    ),
    "Building Retrofit": (
        "Envelope insulation, airtight glazing and heat-recovery ventilation "
        "cutting on-site combustion emissions"
    ),
    "Biochar": (
        "Pyrolysed biomass soil amendment in planters and verges, binding "
        "dust and sequestering carbon"
    ),
    "Cool Roof + Solar": (
        "High-albedo roof membrane paired with rooftop photovoltaics, "
        "lowering heat-driven ozone formation"
    ),
}
GENERIC_TECH_SPEC = (
    "Standard urban air-quality mitigation package sized for a single city block"
)


class NarrativeContractError(ValueError):
    """Generator output did not satisfy the JSON contract."""

    pass


@dataclass(frozen=True)
class NarrativeBlock:
    headline: str
    content: str
    tech_specs: str
    recommendation: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "headline": self.headline,
            "content": self.content,
            "techSpecs": self.tech_specs,
            "recommendation": self.recommendation,
        }


# =============================================================================
# Prompt
# =============================================================================

def _format_weeks(summaries: Sequence[WeeklySummary]) -> str:
    if not summaries:
        return "no data"
    return ", ".join(
        f"week {s.week_index} ({s.trend_tag.lower()}): {s.average_value}"
        for s in summaries
    )


def build_prompt(
    location: str,
    intervention: str,
    current_aqi: float,
    target_aqi: float,
    density_label: str,
    traffic: str,
    aqi_weekly: Sequence[WeeklySummary],
    traffic_weekly: Sequence[WeeklySummary],
    days: int = SIMULATION_MODEL.forecast_days,
) -> str:
    return (
        "You are an urban air-quality analyst writing a short impact report.\n"
        f"Location: {location}\n"
        f"Intervention: {intervention}\n"
        f"Block density: {density_label}; traffic: {traffic}\n"
        f"Current US AQI: {current_aqi:.1f}; projected AQI after intervention: {target_aqi:.1f}\n"
        f"Weekly average AQI, last 30 days: {_format_weeks(aqi_weekly)}\n"
        f"Weekly average traffic speed (km/h): {_format_weeks(traffic_weekly)}\n"
        "\n"
        "Respond with JSON only, no markdown, exactly these keys:\n"
        '{"headline": string (one line), "content": string (2-3 sentences), '
        '"techSpecs": string, "recommendation": string, '
        f'"aqiForecast": array of {days} numbers (daily US AQI from today), '
        f'"trafficForecast": array of {days} numbers (daily average speed km/h)}}'
    )


# =============================================================================
# Contract parsing
# =============================================================================

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _forecast(payload: Dict[str, Any], key: str, days: int) -> List[float]:
    values = payload.get(key)
    if not isinstance(values, list) or len(values) != days:
        raise NarrativeContractError(f"{key} must be a list of {days} numbers")
    out = []
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            raise NarrativeContractError(f"{key} contains a non-numeric value")
        out.append(round(max(0.0, float(v)), 1))
    return out


def parse_generator_output(
    text: str,
    days: int = SIMULATION_MODEL.forecast_days,
) -> Tuple[NarrativeBlock, List[float], List[float]]:
    """Parse generator text into (narrative, aqi_forecast, traffic_forecast).

    Raises NarrativeContractError on any deviation from the contract.
    """
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    try:
        payload = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError) as e:
        raise NarrativeContractError(f"not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise NarrativeContractError("top-level JSON is not an object")

    fields = {}
    for key, attr in NARRATIVE_FIELDS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise NarrativeContractError(f"{key} missing or blank")
        fields[attr] = value.strip()

    aqi_forecast = _forecast(payload, "aqiForecast", days)
    traffic_forecast = _forecast(payload, "trafficForecast", days)
    return NarrativeBlock(**fields), aqi_forecast, traffic_forecast


# =============================================================================
# Fallback generator
# =============================================================================

def _recommendation(new_aqi: float) -> str:
    if new_aqi <= 50:
        return "Maintain the installation and monitor seasonal peaks; air quality is in the Good band."
    if new_aqi <= 100:
        return "Pair this intervention with traffic calming to hold the block in the Moderate band."
    if new_aqi <= 150:
        return "Combine with a second intervention; sensitive groups remain at risk at this level."
    return "Prioritise high-capacity capture and emission controls; air stays unhealthy for everyone."


def fallback_narrative(intervention: str, density_label: str, new_aqi: float) -> NarrativeBlock:
    """Deterministic narrative for when the generator path fails.  Pure, total."""
    name = intervention or "Intervention"
    density = (density_label or "unknown").lower()
    return NarrativeBlock(
        headline=f"{name} projected to bring local AQI to {new_aqi:.1f}",
        content=(
            f"Deploying {name} in this {density}-density block is estimated to lower "
            f"the US AQI to {new_aqi:.1f}. Denser blocks trap pollutants longer, so "
            f"the effect scales with local building density."
        ),
        tech_specs=TECH_SPECS.get(intervention, GENERIC_TECH_SPEC),
        recommendation=_recommendation(new_aqi),
    )


def fallback_forecast(
    new_aqi: float,
    model: SimulationModel = SIMULATION_MODEL,
) -> Tuple[List[float], List[float]]:
    """Linearly decaying AQI forecast and a constant traffic-speed forecast."""
    aqi = [
        round(max(0.0, new_aqi - i * model.fallback_forecast_step), 1)
        for i in range(model.forecast_days)
    ]
    traffic = [model.fallback_traffic_speed_kmh] * model.forecast_days
    return aqi, traffic


def location_label(lat: Optional[float], lon: Optional[float], block_id: Any) -> str:
    if lat is not None and lon is not None:
        return f"{lat:.4f}, {lon:.4f}"
    if block_id is not None:
        return f"city block {block_id}"
    return "an urban city block"
