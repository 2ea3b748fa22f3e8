"""
Source health tracking for upstream reliability monitoring.

Tracks per-source success/failure history and call latency, and computes a
health status. Owned by the gateway; in-memory only.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Health status thresholds
CONSECUTIVE_FAILURES_DEGRADED = 3
CONSECUTIVE_FAILURES_DOWN = 7

# Rolling latency window
LATENCY_WINDOW = 20


@dataclass
class SourceHealth:
    """Health status for a single source."""
    source_id: str
    last_success_at: Optional[str] = None
    last_failure_at: Optional[str] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    total_calls: int = 0
    total_failures: int = 0
    latency_history_ms: List[float] = field(default_factory=list)
    avg_latency_ms: float = 0.0
    status: str = "OK"  # OK, DEGRADED, DOWN

    def update_status(self):
        """Update status based on consecutive failures."""
        if self.consecutive_failures >= CONSECUTIVE_FAILURES_DOWN:
            self.status = "DOWN"
        elif self.consecutive_failures >= CONSECUTIVE_FAILURES_DEGRADED:
            self.status = "DEGRADED"
        else:
            self.status = "OK"

    def _record_latency(self, latency_ms: Optional[float]):
        if latency_ms is None:
            return
        self.latency_history_ms.append(round(latency_ms, 1))
        if len(self.latency_history_ms) > LATENCY_WINDOW:
            self.latency_history_ms = self.latency_history_ms[-LATENCY_WINDOW:]
        self.avg_latency_ms = sum(self.latency_history_ms) / len(self.latency_history_ms)

    def record_success(self, latency_ms: Optional[float] = None, timestamp: Optional[datetime] = None):
        """Record a successful upstream call."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_success_at = timestamp.isoformat()
        self.consecutive_failures = 0
        self.last_error = None
        self.last_error_kind = None
        self.total_calls += 1
        self._record_latency(latency_ms)
        self.update_status()

    def record_failure(
        self,
        error: str,
        kind: Optional[str] = None,
        latency_ms: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ):
        """Record a failed upstream call."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)

        self.last_failure_at = timestamp.isoformat()
        self.consecutive_failures += 1
        self.last_error = error
        self.last_error_kind = kind
        self.total_calls += 1
        self.total_failures += 1
        self._record_latency(latency_ms)
        self.update_status()


@dataclass
class HealthTracker:
    """Tracks health for all sources. Safe to share between threads."""
    sources: Dict[str, SourceHealth] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def get_or_create(self, source_id: str) -> SourceHealth:
        """Get existing source health or create new one."""
        with self._lock:
            if source_id not in self.sources:
                self.sources[source_id] = SourceHealth(source_id=source_id)
            return self.sources[source_id]

    def record_success(self, source_id: str, latency_ms: Optional[float] = None):
        health = self.get_or_create(source_id)
        with self._lock:
            health.record_success(latency_ms)

    def record_failure(
        self,
        source_id: str,
        error: str,
        kind: Optional[str] = None,
        latency_ms: Optional[float] = None,
    ):
        health = self.get_or_create(source_id)
        with self._lock:
            health.record_failure(error, kind=kind, latency_ms=latency_ms)

    def is_down(self, source_id: str) -> bool:
        with self._lock:
            health = self.sources.get(source_id)
            return health is not None and health.status == "DOWN"

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of health across all sources."""
        with self._lock:
            snapshot = list(self.sources.values())

        statuses = {"OK": 0, "DEGRADED": 0, "DOWN": 0}
        for source in snapshot:
            statuses[source.status] = statuses.get(source.status, 0) + 1

        degraded_sources = [s.source_id for s in snapshot if s.status == "DEGRADED"]
        down_sources = [s.source_id for s in snapshot if s.status == "DOWN"]

        return {
            "total_sources": len(snapshot),
            "status_counts": statuses,
            "degraded_sources": degraded_sources,
            "down_sources": down_sources,
            "overall_status": "DOWN" if down_sources else ("DEGRADED" if degraded_sources else "OK"),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict."""
        with self._lock:
            sources = {k: asdict(v) for k, v in self.sources.items()}
        return {
            "sources": sources,
            "summary": self.get_summary(),
        }
