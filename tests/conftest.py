"""Shared fixtures for engine tests."""

import threading

import pytest

from trend_engine.config.settings import build_config


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_config():
    """Engine config with no retry backoff."""
    return build_config({
        "gateway": {
            "concurrency_limit": 3,
            "timeout_ms": 2000,
            "max_retries": 2,
            "initial_backoff_seconds": 0,
        },
    })
