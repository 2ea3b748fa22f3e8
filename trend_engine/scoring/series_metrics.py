"""
Statistics over the search-interest series supplied by the trend collaborator.

A series is a list of points, each a mapping of term -> interest value
(plus any extra keys such as "date"). Missing, negative and non-finite
values are dropped before computing statistics.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..models import Stability
from .normalizer import normalize_momentum

logger = logging.getLogger(__name__)


Series = Sequence[Mapping[str, Any]]

# Fewer points than this cannot be classified as stable or hype
MIN_POINTS_FOR_STABILITY = 7
# Trailing window treated as "recent" for spike detection
RECENT_WINDOW = 10
SPIKE_RATIO_THRESHOLD = 2.5
VOLATILE_THRESHOLD = 40.0
MOMENTUM_LIMIT = 100.0


@dataclass(frozen=True)
class SeriesStats:
    """Summary of one term's series."""
    term: str
    avg_interest: float
    momentum: float
    volatility: float
    data_points: int

    @property
    def momentum_score(self) -> float:
        return normalize_momentum(self.momentum)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "avg_interest": round(self.avg_interest, 2),
            "momentum": round(self.momentum, 2),
            "momentum_score": round(self.momentum_score, 2),
            "volatility": round(self.volatility, 2),
            "data_points": self.data_points,
        }


def resolve_series_key(series: Optional[Series], term: str) -> Optional[str]:
    """Match a term against the series' keys, ignoring case and padding."""
    if not series:
        return None
    keys = series[0].keys()
    if term in keys:
        return term
    wanted = term.strip().lower()
    for key in keys:
        if isinstance(key, str) and key.strip().lower() == wanted:
            return key
    return None


def term_values(series: Optional[Series], term: str) -> np.ndarray:
    """Extract the finite, non-negative values for a term."""
    if not series:
        return np.array([], dtype=float)
    values: List[float] = []
    for point in series:
        try:
            v = float(point.get(term, 0) or 0)
        except (TypeError, ValueError):
            continue
        if np.isfinite(v) and v >= 0:
            values.append(v)
    return np.asarray(values, dtype=float)


def calculate_volatility(series: Optional[Series], term: str) -> float:
    """
    Coefficient of variation of a term's series, scaled to 0-100.

    Returns:
        stddev / mean * 100, capped at 100; 0 for empty or all-zero series
    """
    values = term_values(series, term)
    if values.size < 2:
        return 0.0
    mean = float(values.mean())
    if mean <= 0:
        return 0.0
    return min(100.0, float(values.std()) / mean * 100.0)


def calculate_momentum(values: np.ndarray) -> float:
    """Percent change of the second half's mean over the first half's, clamped to +/-100."""
    if values.size < 2:
        return 0.0
    midpoint = values.size // 2
    first = float(values[:midpoint].mean())
    second = float(values[midpoint:].mean())
    if first <= 0:
        return MOMENTUM_LIMIT if second > 0 else 0.0
    change = (second - first) / first * 100.0
    return max(-MOMENTUM_LIMIT, min(MOMENTUM_LIMIT, change))


def calculate_series_stats(series: Optional[Series], term: str) -> SeriesStats:
    values = term_values(series, term)
    return SeriesStats(
        term=term,
        avg_interest=float(values.mean()) if values.size else 0.0,
        momentum=calculate_momentum(values),
        volatility=calculate_volatility(series, term),
        data_points=int(values.size),
    )


def _point_value(point: Mapping[str, Any], term: str) -> float:
    try:
        v = float(point.get(term, 0) or 0)
    except (TypeError, ValueError):
        return 0.0
    return v if np.isfinite(v) else 0.0


def lead_percentage(series: Optional[Series], term_a: str, term_b: str) -> float:
    """Share of points (0-100) where term_a's interest exceeds term_b's."""
    if not series:
        return 0.0
    a = np.asarray([_point_value(p, term_a) for p in series])
    b = np.asarray([_point_value(p, term_b) for p in series])
    return float((a > b).mean() * 100.0)


def has_recent_spike(series: Optional[Series], term: str) -> bool:
    """True if the recent window's max is more than twice its mean."""
    values = term_values(series, term)[-RECENT_WINDOW:]
    if values.size == 0:
        return False
    mean = float(values.mean())
    return mean > 0 and float(values.max()) > mean * 2


def classify_stability(series: Optional[Series], term: str, volatility: float) -> Stability:
    """
    Classify a series as stable, hype or volatile.

    Hype: the recent window spikes well above the baseline, or swings
    widely and has already fallen back from its peak.
    Volatile: sustained high volatility, or too few points to judge.

    Args:
        series: Interest series
        term: Term whose values are classified (usually the winner)
        volatility: Combined volatility (0-100) for the comparison

    Returns:
        Stability classification
    """
    values = term_values(series, term)
    if values.size < MIN_POINTS_FOR_STABILITY:
        return Stability.VOLATILE

    recent = values[-RECENT_WINDOW:]
    baseline = values[:-RECENT_WINDOW]
    baseline_avg = float(baseline.mean()) if baseline.size else 0.0
    recent_max = float(recent.max())
    variance = float(recent.var())

    spike_ratio = recent_max / baseline_avg if baseline_avg > 0 else 0.0
    falling_back = float(recent[-1]) < recent_max * 0.7
    if spike_ratio > SPIKE_RATIO_THRESHOLD or (variance > baseline_avg * 0.5 and falling_back):
        return Stability.HYPE

    if volatility > VOLATILE_THRESHOLD:
        return Stability.VOLATILE

    return Stability.STABLE


def summarize_pair(series: Optional[Series], term_a: str, term_b: str) -> Dict[str, Any]:
    """
    Per-term series statistics and lead shares for a comparison.

    Args:
        series: Interest series
        term_a: Series key of the first term
        term_b: Series key of the second term

    Returns:
        {"terms": {term: stats}, "lead_percentage": {term: share of points led}}
    """
    return {
        "terms": {
            term_a: calculate_series_stats(series, term_a).to_dict(),
            term_b: calculate_series_stats(series, term_b).to_dict(),
        },
        "lead_percentage": {
            term_a: round(lead_percentage(series, term_a, term_b), 2),
            term_b: round(lead_percentage(series, term_b, term_a), 2),
        },
    }
