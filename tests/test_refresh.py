"""Tests for the refresh coordinator state machine."""

import threading
from concurrent.futures import Future

import pytest

from trend_engine.config.settings import RefreshSettings
from trend_engine.errors import ConcurrencyRefused, DuplicateRefresh, ErrorKind
from trend_engine.models import RefreshType
from trend_engine.refresh import RefreshCoordinator


@pytest.fixture
def release():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def coordinator(clock, release):
    coord = RefreshCoordinator(
        RefreshSettings(cooldown_ms=30_000, max_concurrent=3, stale_after_seconds=300),
        clock=clock,
    )
    yield coord
    release.set()
    coord.shutdown(wait=True)


def blocking_op(release, result="done"):
    def op():
        release.wait(5)
        return result
    return op


class TestMutualExclusion:
    """Only one refresh per key at a time."""

    def test_duplicate_start_refused(self, coordinator, release):
        coordinator.start_refresh("k", RefreshType.SINGLE, blocking_op(release))

        with pytest.raises(DuplicateRefresh):
            coordinator.start_refresh("k", RefreshType.SINGLE, blocking_op(release))
        assert coordinator.is_refresh_in_progress("k") is True

    def test_concurrent_starts_run_operation_once(self, coordinator, release):
        runs = []
        refused = []
        barrier = threading.Barrier(2)

        def op():
            runs.append(1)
            release.wait(5)

        def attempt():
            barrier.wait()
            try:
                coordinator.start_refresh("k", RefreshType.SINGLE, op)
            except DuplicateRefresh:
                refused.append(1)
                assert coordinator.is_refresh_in_progress("k")

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        release.set()
        assert coordinator.wait_for_refresh("k", timeout_s=5)
        assert len(runs) == 1
        assert len(refused) == 1

    def test_register_external_future(self, coordinator):
        future = Future()
        ticket = coordinator.register_refresh("k", RefreshType.SINGLE, future)

        assert ticket.in_flight
        with pytest.raises(DuplicateRefresh):
            coordinator.register_refresh("k", RefreshType.SINGLE, Future())

        future.set_result(None)
        assert coordinator.get_refresh_status()["tickets"][0]["state"] == "cooldown"


class TestLifecycle:
    """in-flight -> cooldown -> idle."""

    def test_cooldown_then_idle(self, coordinator, clock):
        future = coordinator.start_refresh("k", RefreshType.SINGLE, lambda: "ok")
        assert future.result(timeout=5) == "ok"
        assert coordinator.wait_for_refresh("k", timeout_s=5)

        # Settled, but still absorbing duplicates
        assert coordinator.is_refresh_in_progress("k") is True
        with pytest.raises(DuplicateRefresh):
            coordinator.start_refresh("k", RefreshType.SINGLE, lambda: "again")

        clock.advance(31)
        assert coordinator.is_refresh_in_progress("k") is False
        again = coordinator.start_refresh("k", RefreshType.SINGLE, lambda: "again")
        assert again.result(timeout=5) == "again"

    def test_failed_operation_also_cools_down(self, coordinator, clock):
        def op():
            raise RuntimeError("upstream exploded")

        future = coordinator.start_refresh("k", RefreshType.SINGLE, op)
        with pytest.raises(RuntimeError):
            future.result(timeout=5)
        coordinator.wait_for_refresh("k", timeout_s=5)

        assert coordinator.get_refresh_status()["cooldown_count"] == 1
        clock.advance(30)
        assert coordinator.is_refresh_in_progress("k") is False

    def test_stale_ticket_self_heals(self, coordinator, clock, release):
        coordinator.start_refresh("k", RefreshType.SINGLE, blocking_op(release))
        assert coordinator.is_refresh_in_progress("k") is True

        clock.advance(301)
        assert coordinator.is_refresh_in_progress("k") is False
        assert coordinator.get_refresh_status()["active_count"] == 0

    def test_wait_for_refresh_times_out_without_raising(self, coordinator, release):
        coordinator.start_refresh("k", RefreshType.SINGLE, blocking_op(release))
        assert coordinator.wait_for_refresh("k", timeout_s=0.05) is False

    def test_wait_for_unknown_key(self, coordinator):
        assert coordinator.wait_for_refresh("nothing", timeout_s=0.01) is True


class TestAdmission:
    """Global ceiling and bulk-type exclusivity."""

    def test_ceiling_refuses_with_reason(self, coordinator, release):
        for i in range(3):
            coordinator.start_refresh(f"k{i}", RefreshType.SINGLE, blocking_op(release))

        admission = coordinator.can_start_refresh(RefreshType.SINGLE)
        assert admission.allowed is False
        assert admission.active_count == 3
        assert admission.reason_kind == ErrorKind.CONCURRENCY_REFUSED
        assert "limit 3" in admission.reason

        with pytest.raises(ConcurrencyRefused) as exc:
            coordinator.start_refresh("k3", RefreshType.SINGLE, blocking_op(release))
        assert exc.value.details.active_count == 3

    def test_cooldown_tickets_do_not_count(self, coordinator):
        for i in range(3):
            coordinator.start_refresh(f"k{i}", RefreshType.SINGLE, lambda: None).result(timeout=5)
            coordinator.wait_for_refresh(f"k{i}", timeout_s=5)

        assert coordinator.can_start_refresh().allowed is True

    def test_one_bulk_refresh_per_type(self, coordinator, release):
        coordinator.start_refresh("bulk-1", RefreshType.ALL, blocking_op(release))

        admission = coordinator.can_start_refresh(RefreshType.ALL)
        assert admission.allowed is False
        assert admission.reason_kind == ErrorKind.DUPLICATE_REFRESH
        assert coordinator.can_start_refresh(RefreshType.TRENDING).allowed is True
        assert coordinator.can_start_refresh(RefreshType.SINGLE).allowed is True

        with pytest.raises(DuplicateRefresh):
            coordinator.start_refresh("bulk-2", RefreshType.ALL, blocking_op(release))

    def test_status_snapshot(self, coordinator, release):
        coordinator.start_refresh("k", RefreshType.TRENDING, blocking_op(release))
        status = coordinator.get_refresh_status()

        assert status["active_count"] == 1
        assert status["max_concurrent"] == 3
        assert status["tickets"][0]["key"] == "k"
        assert status["tickets"][0]["type"] == "trending"
        assert status["tickets"][0]["state"] == "in_flight"
