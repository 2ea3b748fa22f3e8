"""
Scoring layer - normalization, composites and confidence.

Pure functions with no I/O; safe to call from any thread.

Modules:
    normalizer - Raw provider metrics to a common 0-100 scale
    series_metrics - Volatility, momentum and stability over interest series
    confidence - Continuous confidence score, agreement index and risk flags
    composite - Category weights, weight redistribution and composite scores
"""

from . import normalizer
from . import series_metrics
from . import confidence
from . import composite

__version__ = "1.0.0"
