"""
Geocode resolution: free-text place name -> ranked GeoHits.

Sequential by design: the fallback geocoder is called at most once, and
only when the primary returned no hits or failed.  Worst-case latency is
two provider timeouts.  Hits keep the provider's order.
"""

import logging
import time
from typing import List

from block_state import InvalidInputError
from eco_trace import get_trace
from providers import GeoHit, ProviderResult

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 200


class LocationNotFound(Exception):
    """Neither geocoder produced a hit."""

    pass


class GeocodeUpstreamError(Exception):
    """Both geocoders failed at the transport level."""

    pass


def _search(client, query: str) -> ProviderResult:
    try:
        return client.search(query)
    except Exception as e:
        logger.warning("Geocoder %s raised: %s", getattr(client, "provider", "?"), e, exc_info=True)
        return ProviderResult.failure(getattr(client, "provider", "geocoder"), str(e))


def resolve(query: str, primary, fallback) -> List[GeoHit]:
    """Resolve *query* to one or more GeoHits.

    Raises:
        InvalidInputError: blank or oversized query (no provider called).
        LocationNotFound: both providers returned nothing (or one failed
            and the other returned nothing).
        GeocodeUpstreamError: both providers failed outright.
    """
    query = (query or "").strip()
    if not query:
        raise InvalidInputError("Missing query")
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidInputError("Query too long")

    trace = get_trace()
    if trace:
        trace.start_stage("geocode")
    t0 = time.time()

    try:
        first = _search(primary, query)
        if first.ok and first.data:
            if trace:
                trace.record_stage("geocode", t0, time.time())
            return list(first.data)

        logger.info(
            "Primary geocoder %s for %r; trying fallback",
            "failed" if not first.ok else "returned no hits", query,
        )
        second = _search(fallback, query)
        if second.ok and second.data:
            if trace:
                trace.record_stage("geocode", t0, time.time(), degraded=True, note="fallback")
            return list(second.data)

        if trace:
            trace.record_stage("geocode", t0, time.time(), degraded=True, note="no_result")
        if not first.ok and not second.ok:
            raise GeocodeUpstreamError(
                f"Geocoding unavailable: {first.error}; {second.error}"
            )
        raise LocationNotFound(f"Location not found: {query}")
    finally:
        if trace:
            trace.end_stage()
