"""
History summarization: raw daily series -> four weekly aggregates.

Used only as context for the narrative generator, so the output is
deliberately coarse: four buckets, a rounded mean each, and a tag saying
whether the bucket is the current week.

Bucketing is positional, not calendar-based:

    week 1 = series[0:7], week 2 = series[7:14], week 3 = series[14:21],
    week 4 = series[21:]   (absorbs every remaining day)

so a 30-day series puts 9 days in week 4 and a 10-day series leaves
weeks 3 and 4 empty (average 0).
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

WEEKS = 4
DAYS_PER_WEEK = 7

PAST = "Past"
CURRENT = "Current"


# Readings above this are garbage from the client or the upstream feed;
# no AQI or km/h value gets near it.
MAX_SERIES_VALUE = 10000.0


@dataclass(frozen=True)
class WeeklySummary:
    week_index: int         # 1..4
    average_value: int
    trend_tag: str          # "Past" | "Current"

    def to_dict(self) -> Dict[str, object]:
        return {
            "week": self.week_index,
            "averageValue": self.average_value,
            "trend": self.trend_tag,
        }


def _mean(values: Sequence[float]) -> float:
    n = len(values)
    total = sum(values)
    if math.isfinite(total):
        return total / n
    # Huge readings overflowed the sum; dividing first keeps the mean finite.
    return sum(v / n for v in values)


def _round_half_up(x: float) -> int:
    # round() is round-half-to-even: round(52.5) == 52.  Means of integer
    # AQI readings land on .5 often enough for that to show.
    if not math.isfinite(x):
        return 0
    return int(math.floor(x + 0.5))


def summarize_weekly(series: Sequence[float]) -> List[WeeklySummary]:
    """Summarize *series* into exactly four weekly buckets.

    Pure and total.  Empty input returns an empty list (no buckets);
    callers decide what an absent history means.
    """
    if not series:
        return []

    summaries = []
    for i in range(WEEKS):
        start = i * DAYS_PER_WEEK
        chunk = series[start:] if i == WEEKS - 1 else series[start:start + DAYS_PER_WEEK]
        avg = _round_half_up(_mean(chunk)) if chunk else 0
        summaries.append(WeeklySummary(
            week_index=i + 1,
            average_value=avg,
            trend_tag=CURRENT if i == WEEKS - 1 else PAST,
        ))
    return summaries


def daily_means(hourly: Sequence[Optional[float]], per_day: int = 24) -> List[float]:
    """Collapse an hourly series into daily means.

    Missing readings (None) are skipped; a day with no readings at all is
    dropped rather than reported as zero.
    """
    days = []
    for start in range(0, len(hourly), per_day):
        readings = [v for v in hourly[start:start + per_day] if v is not None]
        if readings:
            days.append(_mean(readings))
    return days


def clean_series(values) -> List[float]:
    """Coerce a client-supplied history into a list of non-negative floats.

    Non-numeric entries and readings above MAX_SERIES_VALUE are dropped.
    Returns [] for anything that is not a list or tuple.
    """
    if not isinstance(values, (list, tuple)):
        return []
    out = []
    for v in values:
        if isinstance(v, bool):
            continue
        try:
            f = float(v)
        except (TypeError, ValueError):
            continue
        if math.isfinite(f) and 0 <= f <= MAX_SERIES_VALUE:
            out.append(f)
    return out
