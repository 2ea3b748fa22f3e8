"""
Confidence and agreement calculation for comparison verdicts.

Confidence is a continuous 0-100 score built from individually normalized
sub-scores combined with fixed weights that sum to 1. The high/medium/low
label is derived for display only and never feeds back into the score.
"""

import math
from typing import Dict, List, Mapping, Optional

from ..models import Stability


# Sub-score weights (sum to 1.0)
CONFIDENCE_WEIGHTS: Dict[str, float] = {
    "agreement": 0.25,
    "stability": 0.20,
    "data_points": 0.15,
    "sources": 0.15,
    "margin": 0.15,
    "leader_risk": 0.10,
}

# Reference points at which a sub-score saturates at 100
REF_DATA_POINTS = 50
REF_SOURCE_COUNT = 4
REF_MARGIN_POINTS = 20.0

HIGH_CONFIDENCE_THRESHOLD = 70.0
MEDIUM_CONFIDENCE_THRESHOLD = 50.0

# Margin below which a lead is considered contestable
CONTESTED_MARGIN_POINTS = 20.0
RISK_VOLATILITY_FACTOR = 0.7
RISK_MARGIN_MAX = 50.0

DISAGREEMENT_THRESHOLD = 60.0
HIGH_VOLATILITY_THRESHOLD = 50.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def confidence_components(
    agreement_index: float,
    volatility: float,
    data_points: int,
    source_count: int,
    margin: Optional[float] = None,
    leader_change_risk: Optional[float] = None,
) -> Dict[str, float]:
    """
    Compute the normalized (0-100) sub-scores feeding the confidence score.

    Optional inputs that are None are left out of the result.
    """
    data_points = max(0, int(data_points))
    source_count = max(0, int(source_count))

    components = {
        "agreement": _clamp(agreement_index),
        "stability": 100.0 - _clamp(volatility),
        # log terms give diminishing returns
        "data_points": _clamp(math.log1p(data_points) / math.log1p(REF_DATA_POINTS) * 100.0),
        "sources": _clamp(math.log2(1 + source_count) / math.log2(1 + REF_SOURCE_COUNT) * 100.0),
    }
    if margin is not None:
        components["margin"] = _clamp(abs(margin) / REF_MARGIN_POINTS * 100.0)
    if leader_change_risk is not None:
        components["leader_risk"] = 100.0 - _clamp(leader_change_risk)
    return components


def calculate_confidence_score(
    agreement_index: float,
    volatility: float,
    data_points: int,
    source_count: int,
    margin: Optional[float] = None,
    leader_change_risk: Optional[float] = None,
) -> float:
    """
    Calculate a continuous confidence score for a comparison.

    Args:
        agreement_index: Share of sources agreeing on the leader (0-100)
        volatility: Series volatility (0-100)
        data_points: Number of observations behind the verdict
        source_count: Number of sources that responded
        margin: Point gap between the two composites (optional)
        leader_change_risk: Estimated risk of the leader flipping (0-100, optional)

    Returns:
        Confidence in [0, 100]. Weights of omitted optional inputs are
        redistributed over the remaining sub-scores.
    """
    components = confidence_components(
        agreement_index, volatility, data_points, source_count, margin, leader_change_risk
    )
    total_weight = sum(CONFIDENCE_WEIGHTS[name] for name in components)
    score = sum(CONFIDENCE_WEIGHTS[name] * value for name, value in components.items()) / total_weight
    return _clamp(score)


def label_for(score: float) -> str:
    """Display label for a confidence score."""
    if score >= HIGH_CONFIDENCE_THRESHOLD:
        return "high"
    if score >= MEDIUM_CONFIDENCE_THRESHOLD:
        return "medium"
    return "low"


def estimate_leader_change_risk(volatility: float, margin: float) -> float:
    """
    Estimate how likely the current leader is to be overtaken (0-100).

    Grows with volatility and shrinks continuously as the margin widens;
    margins of CONTESTED_MARGIN_POINTS or more add no risk.
    """
    margin_risk = RISK_MARGIN_MAX * max(0.0, 1.0 - abs(margin) / CONTESTED_MARGIN_POINTS)
    return _clamp(_clamp(volatility) * RISK_VOLATILITY_FACTOR + margin_risk)


def calculate_agreement_index(
    source_leaders: Mapping[str, Optional[str]],
    winner: str,
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    """
    Weighted share of sources whose own leader matches the overall winner.

    Args:
        source_leaders: source -> leading term for that source (None for a tie)
        winner: Overall winning term
        weights: Optional source weights (equal weights if omitted)

    Returns:
        Agreement index in [0, 100]; 0 when no sources are given.
        A tied source counts as half agreement.
    """
    if not source_leaders:
        return 0.0

    total = 0.0
    agreeing = 0.0
    for source, leader in source_leaders.items():
        w = weights.get(source, 0.0) if weights is not None else 1.0
        if w <= 0:
            continue
        total += w
        if leader is None:
            agreeing += w / 2
        elif leader == winner:
            agreeing += w

    if total <= 0:
        return 0.0
    return agreeing / total * 100.0


def generate_risk_flags(
    volatility: float,
    agreement_index: float,
    stability: Stability,
    has_spike: bool,
    source_count: Optional[int] = None,
) -> List[str]:
    """Human-readable warnings about a verdict."""
    flags = []
    if volatility > HIGH_VOLATILITY_THRESHOLD:
        flags.append("High volatility detected")
    if agreement_index < DISAGREEMENT_THRESHOLD:
        flags.append("Source disagreement")
    if stability == Stability.HYPE:
        flags.append("Potential hype pattern")
    if has_spike:
        flags.append("Recent spike detected")
    if source_count is not None and source_count <= 1:
        flags.append("Limited source coverage")
    return flags
