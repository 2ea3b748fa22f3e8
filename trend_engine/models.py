"""
Core value types shared by the gateway, scoring and orchestration layers.

All result types are frozen dataclasses: a SourceResult is produced once by an
adapter and only ever replaced in the cache, a ComparisonVerdict is built fresh
per comparison.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


VALID_TIMEFRAMES = ("7d", "30d", "12m", "5y", "all")
DEFAULT_TIMEFRAME = "12m"

# Days covered by each bounded timeframe
TIMEFRAME_DAYS = {
    "7d": 7,
    "30d": 30,
    "12m": 365,
    "5y": 1825,
}

# Earliest date page-view style sources can report
ALL_TIME_START = date(2015, 7, 1)


class SourceStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class Stability(str, Enum):
    STABLE = "stable"
    HYPE = "hype"
    VOLATILE = "volatile"


class RefreshType(str, Enum):
    SINGLE = "single"
    ALL = "all"
    TRENDING = "trending"


def timeframe_window(timeframe: str, today: Optional[date] = None) -> Tuple[date, date]:
    """
    Resolve a timeframe label to an inclusive (start, end) date window.

    Args:
        timeframe: One of VALID_TIMEFRAMES
        today: Reference date (defaults to current UTC date)

    Returns:
        Tuple of (start_date, end_date)

    Raises:
        ValueError: If timeframe is not recognized
    """
    if timeframe not in VALID_TIMEFRAMES:
        raise ValueError(f"Unknown timeframe '{timeframe}', expected one of {VALID_TIMEFRAMES}")

    if today is None:
        today = datetime.now(timezone.utc).date()

    # Yesterday is the most recent complete day
    end = today - timedelta(days=1)
    if timeframe == "all":
        return ALL_TIME_START, end
    return end - timedelta(days=TIMEFRAME_DAYS[timeframe] - 1), end


@dataclass(frozen=True)
class SourceResult:
    """Output of one adapter call for one term."""
    source_name: str
    term: str
    status: SourceStatus
    raw_value: Optional[float] = None
    normalized_value: Optional[float] = None
    data_point_count: int = 0
    confidence: float = 0.0
    notes: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return self.status == SourceStatus.OK and self.normalized_value is not None

    @classmethod
    def failed(
        cls,
        source_name: str,
        term: str,
        error: str,
        status: SourceStatus = SourceStatus.FAILED,
    ) -> "SourceResult":
        """Build a failed result carrying only the error message."""
        return cls(source_name=source_name, term=term, status=status, error=error)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass(frozen=True)
class CompositeScore:
    """Weighted combination of normalized scores for one term."""
    term: str
    overall: float
    breakdown: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "overall": round(self.overall, 2),
            "breakdown": {k: round(v, 2) for k, v in self.breakdown.items()},
        }


@dataclass(frozen=True)
class ComparisonVerdict:
    """Result of one comparison build."""
    term_a: CompositeScore
    term_b: CompositeScore
    winner: str
    loser: str
    margin_points: float
    confidence: float
    confidence_label: str
    agreement_index: float
    volatility: float
    stability: Stability
    sources_queried: Tuple[str, ...] = ()
    category: str = "general"
    timeframe: str = DEFAULT_TIMEFRAME
    geo: str = ""

    @property
    def is_meaningful(self) -> bool:
        """False when no source responded for both terms."""
        return len(self.sources_queried) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term_a": self.term_a.to_dict(),
            "term_b": self.term_b.to_dict(),
            "winner": self.winner,
            "loser": self.loser,
            "margin_points": round(self.margin_points, 2),
            "confidence": round(self.confidence, 1),
            "confidence_label": self.confidence_label,
            "agreement_index": round(self.agreement_index, 1),
            "volatility": round(self.volatility, 1),
            "stability": self.stability.value,
            "sources_queried": list(self.sources_queried),
            "category": self.category,
            "timeframe": self.timeframe,
            "geo": self.geo,
            "is_meaningful": self.is_meaningful,
        }
