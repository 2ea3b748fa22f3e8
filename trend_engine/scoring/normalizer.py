"""
Metric normalization to a common 0-100 scale.

Each source reports a raw metric on its own scale: view counts spanning many
orders of magnitude, 0-10 ratings, 0-5 retail ratings, 0-100 popularity. This
module maps all of them to 0-100 so they can be combined.

Modes:
    log        - clamp(0, 100, log10(max(1, raw)) / K * 100)
    linear     - raw / scale * 100, clamped
    percentile - share of a reference distribution <= raw, banded and rescaled

Normalization never raises. Invalid input (None, NaN, negative, non-numeric)
yields 0 with the validity flag cleared so callers can lower confidence.
"""

import logging
import math
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


DEFAULT_MIN_PERCENTILE = 5.0
DEFAULT_MAX_PERCENTILE = 95.0

# Per-source normalization rules
NORMALIZATION_RULES: Dict[str, Dict[str, Any]] = {
    "search_trends": {"mode": "linear", "scale": 100.0},
    "youtube": {"mode": "log", "k": 8.0},
    "wikipedia": {"mode": "log", "k": 7.0},
    "tmdb": {"mode": "linear", "scale": 10.0},
    "spotify": {"mode": "linear", "scale": 100.0},
    "steam": {"mode": "linear", "scale": 100.0},
    "bestbuy": {"mode": "linear", "scale": 5.0},
    "github": {"mode": "log", "k": 6.0},
    "reddit": {"mode": "log", "k": 6.0},
}

_DEFAULT_RULE = {"mode": "linear", "scale": 100.0}


def _build_reference_distributions() -> Dict[str, np.ndarray]:
    """Synthetic reference samples per source, sorted ascending."""
    return {
        "youtube": np.logspace(3, 8, 100),
        "wikipedia": np.logspace(2, 6, 100),
        "search_trends": np.arange(0, 100, dtype=float),
        "spotify": np.arange(0, 100, dtype=float),
        "steam": np.arange(0, 100, dtype=float),
        "tmdb": np.arange(0, 100, dtype=float) / 10.0,
        "bestbuy": np.arange(0, 100, dtype=float) / 20.0,
        "github": np.logspace(1, 6, 100),
        "reddit": np.logspace(1, 6, 100),
    }


REFERENCE_DISTRIBUTIONS = _build_reference_distributions()


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _coerce(raw_value: Any) -> Optional[float]:
    """Return raw_value as a finite non-negative float, or None if invalid."""
    if isinstance(raw_value, bool):
        return None
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def log_scale(raw_value: float, k: float) -> float:
    """Logarithmic transform for count-like metrics."""
    return clamp(math.log10(max(1.0, raw_value)) / k * 100.0)


def linear_scale(raw_value: float, scale: float) -> float:
    """Direct rescale for already-bounded metrics."""
    if scale <= 0:
        return 0.0
    return clamp(raw_value / scale * 100.0)


def normalize_to_percentile(
    value: float,
    reference: Optional[Sequence[float]],
    min_percentile: float = DEFAULT_MIN_PERCENTILE,
    max_percentile: float = DEFAULT_MAX_PERCENTILE,
) -> float:
    """
    Map a value to 0-100 by its rank within a reference distribution.

    The share of reference values <= value is clamped to
    [min_percentile, max_percentile] and then rescaled to 0-100, so a single
    extreme sample cannot saturate the scale.

    Args:
        value: Value to rank
        reference: Reference samples (any order)
        min_percentile: Lower band edge (0-100)
        max_percentile: Upper band edge (0-100)

    Returns:
        Score in [0, 100]. Empty reference falls back to clamping value itself.
    """
    if reference is None or len(reference) == 0:
        return clamp(float(value))

    ref = np.sort(np.asarray(reference, dtype=float))
    rank = np.searchsorted(ref, value, side="right")
    percentile = rank / len(ref) * 100.0

    if max_percentile <= min_percentile:
        return clamp(percentile)

    banded = clamp(percentile, min_percentile, max_percentile)
    return (banded - min_percentile) / (max_percentile - min_percentile) * 100.0


def normalize_momentum(momentum: float) -> float:
    """Map momentum in [-100, 100] to [0, 100]; 0 momentum is 50."""
    return clamp(50.0 + momentum / 2.0)


def normalize_checked(
    source_type: str,
    raw_value: Any,
    mode: Optional[str] = None,
    reference: Optional[Sequence[float]] = None,
) -> Tuple[float, bool]:
    """
    Normalize a raw metric and report whether the input was valid.

    Args:
        source_type: Source id used to pick the normalization rule
        raw_value: Raw provider metric
        mode: Optional override ("log", "linear", "percentile")
        reference: Reference distribution for percentile mode
            (defaults to REFERENCE_DISTRIBUTIONS[source_type])

    Returns:
        Tuple of (score, valid). Invalid input gives (0.0, False).
    """
    value = _coerce(raw_value)
    if value is None:
        logger.warning(f"Invalid raw value for {source_type}: {raw_value!r}; scoring 0")
        return 0.0, False

    rule = NORMALIZATION_RULES.get(source_type, _DEFAULT_RULE)
    effective_mode = mode or rule["mode"]

    if effective_mode == "percentile":
        if reference is None:
            reference = REFERENCE_DISTRIBUTIONS.get(source_type)
        return normalize_to_percentile(value, reference), True
    if effective_mode == "log":
        return log_scale(value, rule.get("k", 8.0)), True
    return linear_scale(value, rule.get("scale", 100.0)), True


def normalize(source_type: str, raw_value: Any, mode: Optional[str] = None) -> float:
    """Normalize a raw metric to [0, 100]. Never raises."""
    score, _ = normalize_checked(source_type, raw_value, mode=mode)
    return score
