"""
Comparison orchestration.

Fans out one gateway call per (source, term), combines the normalized values
into a composite per term using the category's weight vector, and derives the
verdict: winner, margin, agreement, volatility, stability and confidence.

Source failures never raise here. A source only counts if it produced a
usable value for both terms; the weights of the others are redistributed.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .cache import build_cache_key, series_fingerprint
from .config.settings import EngineConfig
from .errors import ConcurrencyRefused, DuplicateRefresh, ErrorKind
from .gateway import DataSourceGateway
from .models import (
    DEFAULT_TIMEFRAME,
    VALID_TIMEFRAMES,
    ComparisonVerdict,
    CompositeScore,
    RefreshType,
    SourceResult,
    SourceStatus,
    Stability,
)
from .refresh import RefreshCoordinator
from .scoring import composite, confidence, series_metrics
from .sources.base_adapter import BaseAdapter, FetchContext
from .sources.registry import build_adapters

logger = logging.getLogger(__name__)


# Volatility assumed when no interest series is available
UNKNOWN_VOLATILITY = 50.0

_FAILURE_STATUS = {
    ErrorKind.TIMEOUT: SourceStatus.TIMEOUT,
    ErrorKind.RATE_LIMITED: SourceStatus.RATE_LIMITED,
}


@dataclass(frozen=True)
class ComparisonRequest:
    """Inputs for one comparison build."""
    term_a: str
    term_b: str
    timeframe: str = DEFAULT_TIMEFRAME
    geo: str = ""
    enabled_sources: Optional[Tuple[str, ...]] = None
    cached_category: Optional[str] = None
    series: Optional[Sequence[Mapping[str, Any]]] = field(default=None, compare=False, hash=False, repr=False)

    def __post_init__(self):
        if not self.term_a.strip() or not self.term_b.strip():
            raise ValueError("Both terms must be non-empty")
        if self.timeframe not in VALID_TIMEFRAMES:
            raise ValueError(f"Unknown timeframe '{self.timeframe}', expected one of {VALID_TIMEFRAMES}")
        if self.enabled_sources is not None and not isinstance(self.enabled_sources, tuple):
            object.__setattr__(self, "enabled_sources", tuple(self.enabled_sources))

    def refresh_key(self) -> str:
        return ":".join([
            "comparison",
            self.term_a.strip().lower(),
            self.term_b.strip().lower(),
            self.timeframe,
            self.geo or "global",
        ])


@dataclass(frozen=True)
class ComparisonReport:
    """Verdict plus the raw per-source results behind it."""
    verdict: ComparisonVerdict
    source_results: Tuple[SourceResult, ...]
    risk_flags: Tuple[str, ...] = ()
    top_drivers: Tuple[Dict[str, Any], ...] = ()
    elapsed_ms: float = 0.0
    series_stats: Optional[Dict[str, Any]] = None
    skipped_sources: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.to_dict(),
            "source_results": [r.to_dict() for r in self.source_results],
            "risk_flags": list(self.risk_flags),
            "top_drivers": [{"name": d["name"], "impact": round(d["impact"], 2)} for d in self.top_drivers],
            "series_stats": self.series_stats,
            "skipped_sources": list(self.skipped_sources),
            "elapsed_ms": round(self.elapsed_ms, 1),
        }


class RefreshStatus(str, Enum):
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    REFUSED = "refused"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshOutcome:
    """Typed result of a forced refresh request."""
    status: RefreshStatus
    key: str
    report: Optional[ComparisonReport] = None
    reason: Optional[str] = None


class ComparisonOrchestrator:
    """Builds comparison verdicts on top of a shared gateway."""

    def __init__(
        self,
        gateway: DataSourceGateway,
        adapters: Optional[Dict[str, BaseAdapter]] = None,
        config: Optional[EngineConfig] = None,
        fanout_workers: Optional[int] = None,
    ):
        self.gateway = gateway
        self.config = config or gateway.config
        self.adapters = adapters if adapters is not None else build_adapters(self.config)
        # Logical calls only; upstream concurrency is bounded by the gateway
        self._fanout = ThreadPoolExecutor(
            max_workers=fanout_workers or max(2, 2 * len(self.adapters)),
            thread_name_prefix="comparison-fanout",
        )

    def close(self) -> None:
        self._fanout.shutdown(wait=True)

    def __enter__(self) -> "ComparisonOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Source selection and fan-out
    # ------------------------------------------------------------------

    def select_sources(
        self,
        request: ComparisonRequest,
        weights: Mapping[str, float],
        skipped: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Enabled, configured sources with a nonzero weight for the category.

        Sources the health tracker reports as DOWN are left out when
        comparison.skip_down_sources is set; their ids are appended to
        `skipped` if given.
        """
        requested = set(request.enabled_sources) if request.enabled_sources is not None else None
        skip_down = self.config.comparison.skip_down_sources
        selected = []
        for source_id, adapter in self.adapters.items():
            if requested is not None and source_id not in requested:
                continue
            if weights.get(source_id, 0) <= 0:
                continue
            if not adapter.is_configured():
                logger.debug(f"Skipping {source_id}: disabled or missing credentials")
                continue
            if skip_down and self.gateway.health.is_down(source_id):
                logger.info(f"Skipping DOWN source: {source_id}")
                if skipped is not None:
                    skipped.append(source_id)
                continue
            selected.append(source_id)
        return selected

    def _fetch_one(
        self,
        source_id: str,
        term: str,
        context: FetchContext,
        force_refresh: bool,
        fingerprint: Optional[str] = None,
    ) -> SourceResult:
        adapter = self.adapters[source_id]
        variant = fingerprint if adapter.series_dependent else None
        key = build_cache_key(source_id, term, context.timeframe, context.geo, variant=variant)
        result = self.gateway.call(
            source_id,
            key,
            lambda: adapter.fetch(term, context),
            timeframe=context.timeframe,
            force_refresh=force_refresh,
        )
        if result is not None:
            return result

        failure = self.gateway.last_failure(key)
        if failure is None:
            return SourceResult.failed(source_id, term, "unavailable")
        status = _FAILURE_STATUS.get(failure.kind, SourceStatus.FAILED)
        return SourceResult.failed(source_id, term, failure.error, status=status)

    def _fan_out(
        self,
        sources: Iterable[str],
        request: ComparisonRequest,
        force_refresh: bool,
    ) -> Tuple[Dict[str, SourceResult], Dict[str, SourceResult]]:
        context = FetchContext(timeframe=request.timeframe, geo=request.geo, series=request.series)
        fingerprint = series_fingerprint(request.series)
        futures = {}
        for source_id in sources:
            for side, term in (("a", request.term_a), ("b", request.term_b)):
                futures[(source_id, side)] = self._fanout.submit(
                    self._fetch_one, source_id, term, context, force_refresh, fingerprint
                )

        results_a: Dict[str, SourceResult] = {}
        results_b: Dict[str, SourceResult] = {}
        for (source_id, side), future in futures.items():
            target = results_a if side == "a" else results_b
            target[source_id] = future.result()
        return results_a, results_b

    # ------------------------------------------------------------------
    # Verdict
    # ------------------------------------------------------------------

    def build(
        self,
        term_a: str,
        term_b: str,
        timeframe: str = DEFAULT_TIMEFRAME,
        geo: str = "",
        enabled_sources: Optional[Iterable[str]] = None,
        cached_category: Optional[str] = None,
        series: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> ComparisonVerdict:
        """
        Build a comparison verdict for two terms.

        Args:
            term_a: First-listed term (wins ties)
            term_b: Second term
            timeframe: One of 7d, 30d, 12m, 5y, all
            geo: Region code ("" for worldwide)
            enabled_sources: Restrict to these source ids (None = all enabled)
            cached_category: Category label from the classifier
            series: Search-interest series keyed by term

        Returns:
            ComparisonVerdict. Check verdict.is_meaningful before trusting it.
        """
        request = ComparisonRequest(
            term_a=term_a,
            term_b=term_b,
            timeframe=timeframe,
            geo=geo,
            enabled_sources=tuple(enabled_sources) if enabled_sources is not None else None,
            cached_category=cached_category,
            series=series,
        )
        return self.build_report(request).verdict

    def build_report(self, request: ComparisonRequest, force_refresh: bool = False) -> ComparisonReport:
        """Build a verdict and keep the per-source results for inspection."""
        started = time.monotonic()
        category = (request.cached_category or self.config.default_category).lower()
        weights = composite.weights_for_category(category, self.config.category_weights)

        skipped: List[str] = []
        sources = self.select_sources(request, weights, skipped)
        results_a, results_b = self._fan_out(sources, request, force_refresh)

        responding = [s for s in sources if results_a[s].is_ok and results_b[s].is_ok]
        effective_weights = composite.redistribute_weights(weights, responding)

        score_a = composite.build_composite(request.term_a, results_a, effective_weights)
        score_b = composite.build_composite(request.term_b, results_b, effective_weights)

        series = request.series
        key_a = series_metrics.resolve_series_key(series, request.term_a)
        key_b = series_metrics.resolve_series_key(series, request.term_b)
        if key_a is not None and key_b is not None:
            volatility = (
                series_metrics.calculate_volatility(series, key_a)
                + series_metrics.calculate_volatility(series, key_b)
            ) / 2
        else:
            volatility = UNKNOWN_VOLATILITY
        series_stats = series_metrics.summarize_pair(series, key_a, key_b) \
            if key_a is not None and key_b is not None else None

        if effective_weights:
            verdict, agreement, stability, winner_key = self._verdict(
                request, category, score_a, score_b, results_a, results_b,
                effective_weights, volatility, key_a, key_b,
            )
        else:
            logger.warning(
                f"No source responded for both '{request.term_a}' and '{request.term_b}' "
                f"({len(sources)} attempted)"
            )
            verdict = self._empty_verdict(request, category, volatility)
            agreement, stability, winner_key = 0.0, verdict.stability, key_a

        risk_flags = confidence.generate_risk_flags(
            verdict.volatility,
            agreement,
            stability,
            series_metrics.has_recent_spike(series, winner_key) if winner_key else False,
            source_count=len(responding),
        )
        top_drivers = composite.extract_top_drivers(score_a.breakdown, score_b.breakdown)

        ordered_results = tuple(results_a[s] for s in sources) + tuple(results_b[s] for s in sources)
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Compared '{request.term_a}' vs '{request.term_b}' [{category}/{request.timeframe}]: "
            f"winner={verdict.winner} margin={verdict.margin_points:.1f} "
            f"confidence={verdict.confidence:.1f} sources={len(responding)}/{len(sources)} "
            f"in {elapsed_ms:.0f}ms"
        )
        return ComparisonReport(
            verdict=verdict,
            source_results=ordered_results,
            risk_flags=tuple(risk_flags),
            top_drivers=tuple(top_drivers),
            elapsed_ms=elapsed_ms,
            series_stats=series_stats,
            skipped_sources=tuple(skipped),
        )

    def _verdict(
        self,
        request: ComparisonRequest,
        category: str,
        score_a: CompositeScore,
        score_b: CompositeScore,
        results_a: Mapping[str, SourceResult],
        results_b: Mapping[str, SourceResult],
        effective_weights: Mapping[str, float],
        volatility: float,
        key_a: Optional[str],
        key_b: Optional[str],
    ) -> Tuple[ComparisonVerdict, float, Stability, Optional[str]]:
        # Ties go to the first-listed term
        a_wins = score_a.overall >= score_b.overall
        winner, loser = (request.term_a, request.term_b) if a_wins else (request.term_b, request.term_a)
        winner_key = key_a if a_wins else key_b
        margin = abs(score_a.overall - score_b.overall)

        responding = list(effective_weights)
        leaders = composite.source_leaders(results_a, results_b, request.term_a, request.term_b, responding)
        agreement = confidence.calculate_agreement_index(leaders, winner, effective_weights)

        if request.series:
            data_points = len(request.series)
        else:
            data_points = sum(results_a[s].data_point_count + results_b[s].data_point_count for s in responding)

        leader_risk = confidence.estimate_leader_change_risk(volatility, margin)
        score = confidence.calculate_confidence_score(
            agreement_index=agreement,
            volatility=volatility,
            data_points=data_points,
            source_count=len(responding),
            margin=margin,
            leader_change_risk=leader_risk,
        )
        stability = series_metrics.classify_stability(request.series, winner_key, volatility) \
            if winner_key else Stability.VOLATILE

        verdict = ComparisonVerdict(
            term_a=score_a,
            term_b=score_b,
            winner=winner,
            loser=loser,
            margin_points=margin,
            confidence=score,
            confidence_label=confidence.label_for(score),
            agreement_index=agreement,
            volatility=volatility,
            stability=stability,
            sources_queried=tuple(responding),
            category=category,
            timeframe=request.timeframe,
            geo=request.geo,
        )
        return verdict, agreement, stability, winner_key

    def _empty_verdict(self, request: ComparisonRequest, category: str, volatility: float) -> ComparisonVerdict:
        """Verdict for a comparison where no source responded."""
        return ComparisonVerdict(
            term_a=CompositeScore(term=request.term_a, overall=0.0),
            term_b=CompositeScore(term=request.term_b, overall=0.0),
            winner=request.term_a,
            loser=request.term_b,
            margin_points=0.0,
            confidence=0.0,
            confidence_label=confidence.label_for(0.0),
            agreement_index=0.0,
            volatility=volatility,
            stability=Stability.VOLATILE,
            sources_queried=(),
            category=category,
            timeframe=request.timeframe,
            geo=request.geo,
        )

    # ------------------------------------------------------------------
    # Forced refresh
    # ------------------------------------------------------------------

    def refresh(
        self,
        request: ComparisonRequest,
        coordinator: RefreshCoordinator,
        wait_timeout_s: Optional[float] = None,
    ) -> RefreshOutcome:
        """
        Rebuild a comparison bypassing the cache, through the refresh coordinator.

        Returns:
            RefreshOutcome; admission refusals and timeouts are reported as
            statuses, not raised.
        """
        key = request.refresh_key()
        try:
            future = coordinator.start_refresh(
                key,
                RefreshType.SINGLE,
                lambda: self.build_report(request, force_refresh=True),
            )
        except DuplicateRefresh as e:
            return RefreshOutcome(status=RefreshStatus.IN_PROGRESS, key=key, reason=e.message)
        except ConcurrencyRefused as e:
            return RefreshOutcome(status=RefreshStatus.REFUSED, key=key, reason=e.message)

        if wait_timeout_s is None:
            wait_timeout_s = coordinator.settings.wait_timeout_ms / 1000.0
        try:
            report = future.result(timeout=wait_timeout_s)
        except FuturesTimeout:
            return RefreshOutcome(status=RefreshStatus.TIMED_OUT, key=key, reason="refresh still running")
        except Exception as e:
            logger.error(f"Refresh {key} failed: {e}")
            return RefreshOutcome(status=RefreshStatus.FAILED, key=key, reason=str(e))
        return RefreshOutcome(status=RefreshStatus.COMPLETED, key=key, report=report)
