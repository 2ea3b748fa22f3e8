"""Tests for comparison orchestration."""

import threading

import pytest

from trend_engine.config.settings import build_config
from trend_engine.errors import UpstreamRejected, UpstreamTimeout
from trend_engine.gateway import DataSourceGateway
from trend_engine.models import SourceStatus, Stability
from trend_engine.orchestrator import (
    ComparisonOrchestrator,
    ComparisonRequest,
    RefreshStatus,
)
from trend_engine.refresh import RefreshCoordinator
from trend_engine.scoring.composite import redistribute_weights
from trend_engine.sources.base_adapter import BaseAdapter
from trend_engine.sources.fetch_search_trends import SearchTrendsAdapter
from trend_engine.sources.health import CONSECUTIVE_FAILURES_DOWN


class FakeAdapter(BaseAdapter):
    """Adapter serving canned values (0-100) per term."""

    def __init__(self, source_id, values, settings=None):
        self.source_id = source_id
        self.display_name = source_id.title()
        super().__init__(settings)
        self.values = values
        self.calls = []
        self._lock = threading.Lock()

    def _fetch_impl(self, term, context):
        with self._lock:
            self.calls.append(term)
        value = self.values.get(term)
        if isinstance(value, Exception):
            raise value
        if value is None:
            return self.no_match(term, "no data")
        return self.create_source_result(term, value, data_point_count=10, confidence=80)


EQUAL_WEIGHTS = {"alpha": 1.0, "beta": 1.0, "gamma": 1.0}


@pytest.fixture
def config():
    return build_config({
        "gateway": {"max_retries": 0, "initial_backoff_seconds": 0},
        "category_weights": {"test": EQUAL_WEIGHTS, "trends": {"search_trends": 1.0}},
        "default_category": "test",
    })


@pytest.fixture
def make_orchestrator(config, clock):
    created = []

    def factory(adapters):
        gateway = DataSourceGateway(config, clock=clock)
        orchestrator = ComparisonOrchestrator(
            gateway, adapters={a.source_id: a for a in adapters}, config=config
        )
        created.append((orchestrator, gateway))
        return orchestrator

    yield factory
    for orchestrator, gateway in created:
        orchestrator.close()
        gateway.shutdown()


class TestWeightRedistribution:
    """Unavailable sources hand their weight to the responders."""

    def test_effective_weights_sum_to_one(self):
        weights = redistribute_weights(EQUAL_WEIGHTS, ["alpha", "beta"])
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["alpha"] == pytest.approx(0.5)

    def test_failed_source_excluded(self, make_orchestrator):
        orchestrator = make_orchestrator([
            FakeAdapter("alpha", {"A": 80, "B": 40}),
            FakeAdapter("beta", {"A": 60, "B": 70}),
            FakeAdapter("gamma", {"A": UpstreamRejected("gamma", "HTTP 500"), "B": UpstreamRejected("gamma", "HTTP 500")}),
        ])
        verdict = orchestrator.build("A", "B")

        assert set(verdict.sources_queried) == {"alpha", "beta"}
        assert verdict.term_a.overall == pytest.approx(70.0)
        assert verdict.term_b.overall == pytest.approx(55.0)
        assert sum(verdict.term_a.breakdown.values()) == pytest.approx(verdict.term_a.overall)
        assert verdict.winner == "A"
        assert verdict.margin_points == pytest.approx(15.0)

    def test_source_missing_one_term_excluded_for_both(self, make_orchestrator):
        orchestrator = make_orchestrator([
            FakeAdapter("alpha", {"A": 50, "B": 60}),
            FakeAdapter("beta", {"A": 90}),
        ])
        verdict = orchestrator.build("A", "B")

        assert verdict.sources_queried == ("alpha",)
        assert "beta" not in verdict.term_a.breakdown
        assert verdict.term_a.overall == pytest.approx(50.0)
        assert verdict.winner == "B"


class TestVerdict:
    def test_tie_goes_to_first_term(self, make_orchestrator):
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 50, "B": 50})])
        verdict = orchestrator.build("A", "B")

        assert verdict.winner == "A"
        assert verdict.loser == "B"
        assert verdict.margin_points == 0.0

    def test_all_sources_fail(self, make_orchestrator):
        orchestrator = make_orchestrator([
            FakeAdapter("alpha", {}),
            FakeAdapter("beta", {"A": UpstreamRejected("beta", "HTTP 401")}),
        ])
        verdict = orchestrator.build("A", "B")

        assert verdict.term_a.overall == 0.0
        assert verdict.term_b.overall == 0.0
        assert verdict.sources_queried == ()
        assert verdict.confidence_label == "low"
        assert verdict.is_meaningful is False

    def test_confidence_reflects_agreement(self, make_orchestrator):
        agree = make_orchestrator([
            FakeAdapter("alpha", {"A": 80, "B": 40}),
            FakeAdapter("beta", {"A": 70, "B": 50}),
        ]).build("A", "B")
        split = make_orchestrator([
            FakeAdapter("alpha", {"A": 80, "B": 40}),
            FakeAdapter("beta", {"A": 50, "B": 70}),
        ]).build("A", "B")

        assert agree.agreement_index == pytest.approx(100.0)
        assert split.agreement_index == pytest.approx(50.0)
        assert agree.confidence > split.confidence
        assert 0 <= split.confidence <= 100

    def test_series_drives_volatility_and_stability(self, make_orchestrator):
        series = [{"A": 50, "B": 30} for _ in range(30)]
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40})])
        verdict = orchestrator.build("A", "B", series=series)

        assert verdict.volatility == 0.0
        assert verdict.stability == Stability.STABLE

    def test_without_series_stability_is_volatile(self, make_orchestrator):
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40})])
        verdict = orchestrator.build("A", "B")
        assert verdict.stability == Stability.VOLATILE

    def test_verdict_to_dict(self, make_orchestrator):
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40})])
        data = orchestrator.build("A", "B", timeframe="30d", geo="US").to_dict()

        assert data["winner"] == "A"
        assert data["timeframe"] == "30d"
        assert data["geo"] == "US"
        assert data["stability"] in {"stable", "hype", "volatile"}
        assert data["is_meaningful"] is True


class TestFanOut:
    def test_enabled_sources_restrict_calls(self, make_orchestrator):
        alpha = FakeAdapter("alpha", {"A": 60, "B": 40})
        beta = FakeAdapter("beta", {"A": 60, "B": 40})
        orchestrator = make_orchestrator([alpha, beta])

        verdict = orchestrator.build("A", "B", enabled_sources=["alpha"])

        assert verdict.sources_queried == ("alpha",)
        assert beta.calls == []
        assert sorted(alpha.calls) == ["A", "B"]

    def test_zero_weight_source_not_called(self, make_orchestrator):
        delta = FakeAdapter("delta", {"A": 99, "B": 1})
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40}), delta])

        verdict = orchestrator.build("A", "B")

        assert delta.calls == []
        assert "delta" not in verdict.sources_queried

    def test_second_build_served_from_cache(self, make_orchestrator):
        alpha = FakeAdapter("alpha", {"A": 60, "B": 40})
        orchestrator = make_orchestrator([alpha])

        orchestrator.build("A", "B")
        orchestrator.build("A", "B")

        assert len(alpha.calls) == 2

    def test_report_exposes_failed_results(self, make_orchestrator):
        orchestrator = make_orchestrator([
            FakeAdapter("alpha", {"A": 60, "B": 40}),
            FakeAdapter("beta", {"A": UpstreamTimeout("beta", "slow"), "B": 40}),
        ])
        report = orchestrator.build_report(ComparisonRequest("A", "B"))

        by_key = {(r.source_name, r.term): r for r in report.source_results}
        assert by_key[("beta", "A")].status == SourceStatus.TIMEOUT
        assert "slow" in by_key[("beta", "A")].error
        assert by_key[("alpha", "A")].status == SourceStatus.OK
        assert len(report.source_results) == 4
        assert report.to_dict()["verdict"]["sources_queried"] == ["alpha"]


class TestRequest:
    def test_rejects_unknown_timeframe(self):
        with pytest.raises(ValueError):
            ComparisonRequest("A", "B", timeframe="3w")

    def test_rejects_blank_term(self):
        with pytest.raises(ValueError):
            ComparisonRequest("A", "  ")

    def test_refresh_key(self):
        assert ComparisonRequest("iPhone", "Pixel", "7d").refresh_key() == "comparison:iphone:pixel:7d:global"


class TestForcedRefresh:
    def test_refresh_bypasses_cache_then_cools_down(self, make_orchestrator, clock):
        alpha = FakeAdapter("alpha", {"A": 60, "B": 40})
        orchestrator = make_orchestrator([alpha])
        request = ComparisonRequest("A", "B")
        orchestrator.build_report(request)

        coordinator = RefreshCoordinator(clock=clock)
        try:
            outcome = orchestrator.refresh(request, coordinator, wait_timeout_s=5)
            assert outcome.status == RefreshStatus.COMPLETED
            assert outcome.report.verdict.winner == "A"
            assert len(alpha.calls) == 4

            repeat = orchestrator.refresh(request, coordinator, wait_timeout_s=5)
            assert repeat.status == RefreshStatus.IN_PROGRESS
            assert repeat.report is None
        finally:
            coordinator.shutdown()


class TestSeriesDependentCaching:
    """Scores read out of the supplied series are cached per series."""

    def test_same_term_rescored_against_new_series(self, make_orchestrator):
        orchestrator = make_orchestrator([SearchTrendsAdapter()])

        first = orchestrator.build(
            "alpha", "beta", cached_category="trends",
            series=[{"alpha": 80, "beta": 20}] * 10,
        )
        second = orchestrator.build(
            "alpha", "gamma", cached_category="trends",
            series=[{"alpha": 5, "gamma": 100}] * 10,
        )

        assert first.term_a.overall == pytest.approx(80.0)
        assert second.term_a.overall == pytest.approx(5.0)
        assert second.winner == "gamma"

    def test_same_series_still_served_from_cache(self, make_orchestrator):
        adapter = SearchTrendsAdapter()
        calls = []
        original = adapter._fetch_impl

        def counting(term, context):
            calls.append(term)
            return original(term, context)

        adapter._fetch_impl = counting
        orchestrator = make_orchestrator([adapter])
        series = [{"alpha": 60, "beta": 40}] * 10

        orchestrator.build("alpha", "beta", cached_category="trends", series=series)
        orchestrator.build("alpha", "beta", cached_category="trends", series=list(series))

        assert sorted(calls) == ["alpha", "beta"]


class TestSkipDownSources:
    def test_down_source_not_called(self, make_orchestrator):
        alpha = FakeAdapter("alpha", {"A": 90, "B": 10})
        beta = FakeAdapter("beta", {"A": 40, "B": 60})
        orchestrator = make_orchestrator([alpha, beta])
        for _ in range(CONSECUTIVE_FAILURES_DOWN):
            orchestrator.gateway.health.record_failure("alpha", "HTTP 500", kind="rejected")

        report = orchestrator.build_report(ComparisonRequest("A", "B"))

        assert alpha.calls == []
        assert report.verdict.sources_queried == ("beta",)
        assert report.skipped_sources == ("alpha",)
        assert report.to_dict()["skipped_sources"] == ["alpha"]

    def test_degraded_source_still_called(self, make_orchestrator):
        alpha = FakeAdapter("alpha", {"A": 90, "B": 10})
        orchestrator = make_orchestrator([alpha])
        for _ in range(CONSECUTIVE_FAILURES_DOWN - 1):
            orchestrator.gateway.health.record_failure("alpha", "HTTP 500", kind="rejected")

        verdict = orchestrator.build("A", "B")

        assert verdict.sources_queried == ("alpha",)

    def test_flag_off_keeps_down_source(self, clock):
        config = build_config({
            "gateway": {"max_retries": 0, "initial_backoff_seconds": 0},
            "category_weights": {"test": EQUAL_WEIGHTS},
            "default_category": "test",
            "comparison": {"skip_down_sources": False},
        })
        alpha = FakeAdapter("alpha", {"A": 90, "B": 10})
        with DataSourceGateway(config, clock=clock) as gateway:
            for _ in range(CONSECUTIVE_FAILURES_DOWN):
                gateway.health.record_failure("alpha", "HTTP 500", kind="rejected")
            with ComparisonOrchestrator(gateway, adapters={"alpha": alpha}, config=config) as orchestrator:
                verdict = orchestrator.build("A", "B")

        assert sorted(alpha.calls) == ["A", "B"]
        assert verdict.sources_queried == ("alpha",)


class TestSeriesStatsInReport:
    def test_per_term_stats_reported(self, make_orchestrator):
        series = [{"A": 20, "B": 50} for _ in range(5)] + [{"A": 60, "B": 50} for _ in range(5)]
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40})])

        report = orchestrator.build_report(ComparisonRequest("A", "B", series=series))
        stats = report.to_dict()["series_stats"]

        assert stats["terms"]["A"]["avg_interest"] == pytest.approx(40.0)
        assert stats["terms"]["A"]["momentum"] == pytest.approx(100.0)
        assert stats["terms"]["A"]["momentum_score"] == pytest.approx(100.0)
        assert stats["terms"]["B"]["momentum"] == pytest.approx(0.0)
        assert stats["terms"]["B"]["momentum_score"] == pytest.approx(50.0)
        assert stats["lead_percentage"]["A"] == pytest.approx(50.0)
        assert stats["lead_percentage"]["B"] == pytest.approx(50.0)

    def test_no_series_no_stats(self, make_orchestrator):
        orchestrator = make_orchestrator([FakeAdapter("alpha", {"A": 60, "B": 40})])
        report = orchestrator.build_report(ComparisonRequest("A", "B"))
        assert report.series_stats is None
        assert report.to_dict()["series_stats"] is None

    def test_rate_limited_source_reported(self, clock):
        config = build_config({
            "gateway": {"max_retries": 0, "initial_backoff_seconds": 0},
            "category_weights": {"test": {"alpha": 1.0}},
            "default_category": "test",
            "sources": {"alpha": {"rate_limit": {"requests": 1, "period_seconds": 60}}},
        })
        alpha = FakeAdapter("alpha", {"A": 60, "B": 40})
        with DataSourceGateway(config, clock=clock) as gateway:
            with ComparisonOrchestrator(gateway, adapters={"alpha": alpha}, config=config) as orchestrator:
                report = orchestrator.build_report(ComparisonRequest("A", "B"))

        statuses = sorted(r.status for r in report.source_results)
        assert statuses == sorted([SourceStatus.OK, SourceStatus.RATE_LIMITED])
        assert len(alpha.calls) == 1
        assert report.verdict.is_meaningful is False
