"""
Intervention simulation engine.

simulate() runs a fixed, linear sequence:

  1. strategy lookup      unknown names fall back to the cheapest strategy
  2. deterministic impact reduction / new AQI / credits / cost; no network
  3. context summaries    weekly AQI and traffic aggregates for the prompt
  4. narrative            generator under a strict JSON contract, else the
                          template fallback
  5. result assembly      frozen SimulationResult
  6. persistence          handed to a non-blocking sink; failures are logged

Only malformed requests raise (InvalidInputError, from
SimulationRequest.parse).  Every provider failure degrades in place.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from block_state import BlockState, Coordinate, InvalidInputError
from eco_config import SIMULATION_MODEL, InterventionStrategy, SimulationModel
from eco_trace import get_trace
from history import WeeklySummary, clean_series, summarize_weekly
from narrative import (
    NarrativeBlock,
    NarrativeContractError,
    build_prompt,
    fallback_forecast,
    fallback_narrative,
    location_label,
    parse_generator_output,
)
from providers import ProviderResult

logger = logging.getLogger(__name__)


def round1(x: float) -> float:
    """Round half-up to one decimal place."""
    return math.floor(x * 10 + 0.5) / 10


# =============================================================================
# Request
# =============================================================================

@dataclass(frozen=True)
class SimulationRequest:
    intervention: str
    current_aqi: float
    density_label: str = "Unknown"
    traffic: str = "Unknown"
    block_id: Any = None
    coordinate: Optional[Coordinate] = None
    user_id: str = "guest"
    history: Tuple[float, ...] = ()
    traffic_history: Tuple[float, ...] = ()
    traffic_speed_kmh: Optional[float] = None

    @classmethod
    def from_block_state(
        cls,
        block: BlockState,
        intervention: str,
        history=(),
        block_id: Any = None,
        user_id: str = "guest",
    ) -> "SimulationRequest":
        return cls(
            intervention=intervention,
            current_aqi=float(block.aqi),
            density_label=block.density_label,
            traffic=block.traffic_display,
            block_id=block_id,
            coordinate=block.coordinate,
            user_id=user_id,
            history=tuple(clean_series(list(history))),
            traffic_speed_kmh=block.traffic_speed_kmh,
        )

    @classmethod
    def parse(cls, payload: Any) -> "SimulationRequest":
        """Build a request from a decoded JSON body.

        Raises InvalidInputError when currentAQI is missing, non-numeric,
        non-finite, negative or above the model ceiling, or when lat/lon
        are present but malformed.
        Everything else is optional and tolerant.
        """
        if not isinstance(payload, dict):
            raise InvalidInputError("Request body must be a JSON object")

        raw_aqi = payload.get("currentAQI", payload.get("currentAqi"))
        if raw_aqi is None or isinstance(raw_aqi, bool):
            raise InvalidInputError("currentAQI is required")
        try:
            current_aqi = float(raw_aqi)
        except (TypeError, ValueError):
            raise InvalidInputError("currentAQI must be numeric")
        if not math.isfinite(current_aqi) or current_aqi < 0:
            raise InvalidInputError("currentAQI must be a non-negative number")
        if current_aqi > SIMULATION_MODEL.max_aqi:
            raise InvalidInputError(f"currentAQI must be at most {SIMULATION_MODEL.max_aqi:g}")

        coordinate = None
        if payload.get("lat") is not None or payload.get("lon") is not None:
            coordinate = Coordinate.parse(payload.get("lat"), payload.get("lon"))

        speed = payload.get("trafficSpeedKmh")
        try:
            speed = float(speed) if speed is not None and not isinstance(speed, bool) else None
        except (TypeError, ValueError):
            speed = None
        if speed is not None and (not math.isfinite(speed) or speed < 0):
            speed = None

        return cls(
            intervention=str(payload.get("intervention") or ""),
            current_aqi=current_aqi,
            density_label=str(payload.get("densityLabel") or payload.get("buildingDensity") or "Unknown"),
            traffic=str(payload.get("traffic") or "Unknown"),
            block_id=payload.get("blockId"),
            coordinate=coordinate,
            user_id=str(payload.get("userId") or "guest"),
            history=tuple(clean_series(payload.get("history"))),
            traffic_history=tuple(clean_series(payload.get("trafficHistory"))),
            traffic_speed_kmh=speed,
        )


# =============================================================================
# Deterministic impact
# =============================================================================

@dataclass(frozen=True)
class ImpactEstimate:
    strategy: InterventionStrategy
    strategy_matched: bool
    density_multiplier: float
    reduction: float
    new_aqi: float
    credits: int
    estimated_cost: int


def lookup_strategy(
    name: str,
    model: SimulationModel = SIMULATION_MODEL,
) -> Tuple[InterventionStrategy, bool]:
    """Return (strategy, matched).  Unknown names get the cheapest strategy."""
    for s in model.strategies:
        if s.name == name:
            return s, True
    return model.default_strategy, False


def density_multiplier(density_label: str, model: SimulationModel = SIMULATION_MODEL) -> float:
    return model.density_multipliers.get(density_label, model.default_multiplier)


def compute_impact(
    current_aqi: float,
    intervention: str,
    density_label: str,
    model: SimulationModel = SIMULATION_MODEL,
) -> ImpactEstimate:
    """Pure physics step.  Never fails, never touches the network."""
    strategy, matched = lookup_strategy(intervention, model)
    multiplier = density_multiplier(density_label, model)
    # Readings above the ceiling are treated as the ceiling.
    current = min(max(0.0, float(current_aqi)), model.max_aqi)
    reduction = round1(current * strategy.reduction_rate * multiplier)
    new_aqi = max(0.0, current - reduction)
    # Epsilon absorbs binary representation error in reduction * 10.
    credits = max(0, int(math.floor(reduction * 10 + 1e-9)))
    return ImpactEstimate(
        strategy=strategy,
        strategy_matched=matched,
        density_multiplier=multiplier,
        reduction=reduction,
        new_aqi=new_aqi,
        credits=credits,
        estimated_cost=strategy.unit_cost,
    )


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class SimulationResult:
    intervention: str
    strategy: InterventionStrategy
    block_id: Any
    current_aqi: float
    new_aqi: float
    reduction_amount: float
    credits_earned: int
    estimated_cost: int
    density_multiplier: float
    narrative: NarrativeBlock
    forecast: Tuple[float, ...]
    traffic_forecast: Tuple[float, ...]
    is_fallback_narrative: bool
    aqi_weekly: Tuple[WeeklySummary, ...] = ()
    traffic_weekly: Tuple[WeeklySummary, ...] = ()
    audio_base64: Optional[str] = None
    model_version: str = SIMULATION_MODEL.version
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blockId": self.block_id,
            "intervention": self.intervention,
            "strategy": self.strategy.name,
            "reductionRate": self.strategy.reduction_rate,
            "currentAQI": self.current_aqi,
            "newAQI": self.new_aqi,
            "reductionAmount": self.reduction_amount,
            "credits": self.credits_earned,
            "estimatedCost": self.estimated_cost,
            "densityMultiplier": self.density_multiplier,
            "aiInsight": self.narrative.headline,
            "narrative": self.narrative.to_dict(),
            "forecast": list(self.forecast),
            "trafficForecast": list(self.traffic_forecast),
            "isFallbackNarrative": self.is_fallback_narrative,
            "weeklyAqi": [w.to_dict() for w in self.aqi_weekly],
            "weeklyTraffic": [w.to_dict() for w in self.traffic_weekly],
            "audioBase64": self.audio_base64,
            "modelVersion": self.model_version,
        }


def simulation_record(
    result: SimulationResult,
    request: SimulationRequest,
    raw_history: List[float],
) -> Dict[str, Any]:
    """Row handed to the persistence sink."""
    return {
        "user_id": request.user_id,
        "block_id": None if request.block_id is None else str(request.block_id),
        "intervention_type": result.intervention,
        "co2_reduced": result.reduction_amount,
        "credits_earned": result.credits_earned,
        "new_aqi": result.new_aqi,
        "estimated_cost": result.estimated_cost,
        "ai_insight": result.narrative.headline,
        "is_fallback_narrative": result.is_fallback_narrative,
        "raw_history": list(raw_history),
        "weekly_summary": {
            "aqi": [w.to_dict() for w in result.aqi_weekly],
            "traffic": [w.to_dict() for w in result.traffic_weekly],
        },
        "created_at": result.created_at,
    }


# =============================================================================
# Engine
# =============================================================================

def _generate_narrative(
    narrative_client,
    prompt: str,
    request: SimulationRequest,
    new_aqi: float,
    model: SimulationModel,
) -> Tuple[NarrativeBlock, List[float], List[float], bool]:
    """Generator path with fallback.  Returns (..., is_fallback)."""
    if narrative_client is not None:
        try:
            reply = narrative_client.generate(prompt)
        except Exception as e:
            logger.warning("Narrative client raised: %s", e, exc_info=True)
            reply = ProviderResult.failure("narrative", str(e))
        if reply.ok:
            try:
                block, aqi_fc, traffic_fc = parse_generator_output(
                    reply.data, days=model.forecast_days,
                )
                return block, aqi_fc, traffic_fc, False
            except NarrativeContractError as e:
                logger.warning("Narrative generator broke the output contract: %s", e)
        else:
            logger.info("Narrative generator unavailable (%s); using fallback", reply.error)

    block = fallback_narrative(request.intervention, request.density_label, new_aqi)
    aqi_fc, traffic_fc = fallback_forecast(new_aqi, model)
    return block, aqi_fc, traffic_fc, True


def simulate(
    request: SimulationRequest,
    narrative_client=None,
    speech_client=None,
    persist: Optional[Callable[[Dict[str, Any]], Any]] = None,
    model: SimulationModel = SIMULATION_MODEL,
) -> SimulationResult:
    """Run one simulation.  Never raises for a parsed request."""
    trace = get_trace()
    t0 = time.time()
    if trace:
        trace.start_stage("simulate")

    # 1 + 2
    impact = compute_impact(
        request.current_aqi, request.intervention, request.density_label, model,
    )
    if not impact.strategy_matched:
        logger.info(
            "Unknown intervention %r; using default strategy %s",
            request.intervention, impact.strategy.name,
        )

    # 3
    raw_history = list(request.history) or [request.current_aqi] * model.history_days
    speed = request.traffic_speed_kmh or model.fallback_traffic_speed_kmh
    traffic_series = list(request.traffic_history) or [speed] * model.history_days
    aqi_weekly = summarize_weekly(raw_history)
    traffic_weekly = summarize_weekly(traffic_series)

    # 4
    lat = request.coordinate.lat if request.coordinate else None
    lon = request.coordinate.lon if request.coordinate else None
    prompt = build_prompt(
        location=location_label(lat, lon, request.block_id),
        intervention=impact.strategy.name if impact.strategy_matched else request.intervention,
        current_aqi=request.current_aqi,
        target_aqi=impact.new_aqi,
        density_label=request.density_label,
        traffic=request.traffic,
        aqi_weekly=aqi_weekly,
        traffic_weekly=traffic_weekly,
        days=model.forecast_days,
    )
    narrative, aqi_fc, traffic_fc, is_fallback = _generate_narrative(
        narrative_client, prompt, request, impact.new_aqi, model,
    )

    audio = None
    if speech_client is not None and getattr(speech_client, "enabled", False):
        try:
            spoken = speech_client.synthesize(narrative.headline)
        except Exception as e:
            logger.warning("Speech client raised: %s", e, exc_info=True)
            spoken = ProviderResult.failure("speech", str(e))
        if spoken.ok:
            audio = spoken.data

    # 5
    result = SimulationResult(
        intervention=request.intervention or impact.strategy.name,
        strategy=impact.strategy,
        block_id=request.block_id,
        current_aqi=request.current_aqi,
        new_aqi=impact.new_aqi,
        reduction_amount=impact.reduction,
        credits_earned=impact.credits,
        estimated_cost=impact.estimated_cost,
        density_multiplier=impact.density_multiplier,
        narrative=narrative,
        forecast=tuple(aqi_fc),
        traffic_forecast=tuple(traffic_fc),
        is_fallback_narrative=is_fallback,
        aqi_weekly=tuple(aqi_weekly),
        traffic_weekly=tuple(traffic_weekly),
        audio_base64=audio,
        model_version=model.version,
    )

    if trace:
        trace.record_stage(
            "simulate", t0, time.time(),
            degraded=is_fallback,
            note="fallback_narrative" if is_fallback else "",
        )
        trace.end_stage()

    # 6
    if persist is not None:
        try:
            persist(simulation_record(result, request, raw_history))
        except Exception:
            logger.exception("Failed to hand simulation to persistence sink")

    return result
