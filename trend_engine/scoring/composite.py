"""
Composite score construction.

Each comparison category has a fixed weight vector over sources. Only sources
that produced a usable result for BOTH terms take part; their weights are
rescaled to sum to 1 so the composite stays on a 0-100 scale however many
sources responded.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..models import CompositeScore, SourceResult

logger = logging.getLogger(__name__)


DEFAULT_CATEGORY = "general"

CATEGORY_WEIGHTS: Dict[str, Dict[str, float]] = {
    "general": {"search_trends": 0.45, "youtube": 0.25, "wikipedia": 0.30},
    "movies": {"search_trends": 0.30, "youtube": 0.20, "wikipedia": 0.15, "tmdb": 0.35},
    "music": {"search_trends": 0.30, "youtube": 0.25, "wikipedia": 0.10, "spotify": 0.35},
    "games": {"search_trends": 0.30, "youtube": 0.20, "wikipedia": 0.10, "steam": 0.40},
    "products": {"search_trends": 0.35, "youtube": 0.20, "wikipedia": 0.10, "bestbuy": 0.35},
    "tech": {"search_trends": 0.35, "youtube": 0.20, "wikipedia": 0.15, "bestbuy": 0.15, "github": 0.05, "reddit": 0.10},
    "software": {"search_trends": 0.35, "github": 0.30, "wikipedia": 0.15, "reddit": 0.10, "youtube": 0.10},
    "people": {"search_trends": 0.45, "youtube": 0.25, "wikipedia": 0.30},
    "brands": {"search_trends": 0.40, "youtube": 0.25, "wikipedia": 0.20, "bestbuy": 0.15},
    "places": {"search_trends": 0.50, "youtube": 0.15, "wikipedia": 0.35},
}


def weights_for_category(
    category: Optional[str],
    overrides: Optional[Mapping[str, Mapping[str, float]]] = None,
) -> Dict[str, float]:
    """
    Look up the source weight vector for a category.

    Args:
        category: Category label (unknown or None falls back to "general")
        overrides: Configured weight vectors taking precedence over the built-ins

    Returns:
        Dict of source id -> weight
    """
    table: Dict[str, Mapping[str, float]] = dict(CATEGORY_WEIGHTS)
    if overrides:
        table.update(overrides)

    key = (category or DEFAULT_CATEGORY).lower()
    if key not in table:
        logger.debug(f"Unknown category '{category}', using {DEFAULT_CATEGORY} weights")
        key = DEFAULT_CATEGORY
    return {source: float(w) for source, w in table[key].items() if w > 0}


def redistribute_weights(weights: Mapping[str, float], available: Iterable[str]) -> Dict[str, float]:
    """
    Rescale weights over the available sources so they sum to 1.0.

    Returns:
        Dict of available source -> effective weight; empty if nothing is
        available or all available weights are zero.
    """
    present = {s: weights[s] for s in available if weights.get(s, 0) > 0}
    total = sum(present.values())
    if total <= 0:
        return {}
    return {s: w / total for s, w in present.items()}


def build_composite(
    term: str,
    results: Mapping[str, SourceResult],
    effective_weights: Mapping[str, float],
) -> CompositeScore:
    """
    Weighted sum of normalized values for one term.

    Args:
        term: Term being scored
        results: source -> SourceResult for this term
        effective_weights: Weights already redistributed over participating sources

    Returns:
        CompositeScore whose breakdown holds each source's contribution in points
    """
    breakdown: Dict[str, float] = {}
    for source, weight in effective_weights.items():
        result = results.get(source)
        if result is None or not result.is_ok:
            continue
        breakdown[source] = weight * float(result.normalized_value)

    overall = max(0.0, min(100.0, sum(breakdown.values())))
    return CompositeScore(term=term, overall=overall, breakdown=breakdown)


def source_leaders(
    results_a: Mapping[str, SourceResult],
    results_b: Mapping[str, SourceResult],
    term_a: str,
    term_b: str,
    sources: Iterable[str],
) -> Dict[str, Optional[str]]:
    """Per-source leading term (None where the source has them tied)."""
    leaders: Dict[str, Optional[str]] = {}
    for source in sources:
        a = results_a[source].normalized_value
        b = results_b[source].normalized_value
        if a > b:
            leaders[source] = term_a
        elif b > a:
            leaders[source] = term_b
        else:
            leaders[source] = None
    return leaders


def extract_top_drivers(
    breakdown_a: Mapping[str, float],
    breakdown_b: Mapping[str, float],
    limit: int = 2,
) -> List[Dict[str, Any]]:
    """Sources with the largest contribution gap between the two terms."""
    drivers = [
        {"name": source, "impact": abs(value - breakdown_b.get(source, 0.0))}
        for source, value in breakdown_a.items()
    ]
    drivers.sort(key=lambda d: d["impact"], reverse=True)
    return drivers[:limit]
