"""
Data source gateway: caching, bounded concurrency, timeouts and retries.

Every upstream call in the engine goes through DataSourceGateway.call():

    1. Cache lookup. Fresh hit returns immediately. Stale hit returns
       immediately and schedules one background refresh for the key.
    2. Miss: concurrent callers for the same key share one upstream fetch.
    3. Rate-limited sources spend one unit of their window per attempt; an
       exhausted window refuses the call without touching the upstream.
    4. The fetch runs on a shared worker pool whose size is the global
       concurrency limit; excess work waits in FIFO order, up to the queue
       timeout.
    5. Each attempt races a timeout. Timeouts are retried with exponential
       backoff; any other failure gives up immediately.
    6. Failures resolve to None and are recorded in the health tracker and
       the per-key failure log. Only successful results are cached.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures import wait as wait_futures
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .cache import CacheState, TTLCache
from .config.settings import EngineConfig
from .errors import ErrorKind, RateLimited, SourceError, UpstreamTimeout, UpstreamUnavailable, classify
from .models import SourceResult, SourceStatus
from .ratelimit import RateLimitRegistry
from .sources.health import HealthTracker

logger = logging.getLogger(__name__)


FetchFn = Callable[[], SourceResult]

# Failure kinds that never reached the upstream and do not count against health
_NOT_ATTEMPTED = (ErrorKind.UNAVAILABLE, ErrorKind.RATE_LIMITED)


@dataclass(frozen=True)
class FailureRecord:
    """Last failure seen for a cache key."""
    key: str
    source_id: str
    kind: ErrorKind
    error: str
    attempts: int
    elapsed_ms: float
    failed_at: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


class DataSourceGateway:
    """Shared front door for all upstream source calls."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        cache: Optional[TTLCache] = None,
        health: Optional[HealthTracker] = None,
        rate_limits: Optional[RateLimitRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or EngineConfig()
        self.settings = self.config.gateway
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.health = health if health is not None else HealthTracker()
        self.rate_limits = rate_limits if rate_limits is not None else RateLimitRegistry(self.config, clock=clock)
        self._clock = clock
        self._sleep = sleep

        self._gate = ThreadPoolExecutor(
            max_workers=self.settings.concurrency_limit,
            thread_name_prefix="gateway-upstream",
        )
        self._background = ThreadPoolExecutor(
            max_workers=self.settings.background_workers,
            thread_name_prefix="gateway-refresh",
        )

        self._lock = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._refreshing: Set[str] = set()
        self._background_futures: Set[Future] = set()
        self._failures: Dict[str, FailureRecord] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def call(
        self,
        source_id: str,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        timeframe: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Optional[SourceResult]:
        """
        Get a source result through the cache, gate and retry policy.

        Args:
            source_id: Source the key belongs to (health, TTL lookup)
            cache_key: Cache key for this lookup
            fetch_fn: Zero-argument callable performing the upstream fetch;
                may raise SourceError subclasses
            timeout_s: Per-attempt timeout (defaults to configured value)
            max_retries: Retries on timeout (defaults to configured value)
            timeframe: Timeframe used to pick the TTL
            force_refresh: Skip the cache lookup (result is still cached)

        Returns:
            SourceResult with status ok, or None if the source could not
            produce one. Never raises for upstream failures.
        """
        timeout_s = self._timeout_for(source_id, timeout_s)
        max_retries = self.settings.max_retries if max_retries is None else max(0, max_retries)

        if not force_refresh:
            state, entry = self.cache.lookup(cache_key)
            if state == CacheState.FRESH:
                logger.debug(f"Cache hit (fresh) for {cache_key}")
                return entry.value
            if state == CacheState.STALE:
                logger.debug(f"Cache hit (stale) for {cache_key}, revalidating in background")
                self._schedule_background_refresh(
                    source_id, cache_key, fetch_fn, timeout_s, max_retries, timeframe
                )
                return entry.value

        return self._fetch_coalesced(source_id, cache_key, fetch_fn, timeout_s, max_retries, timeframe)

    def invalidate(self, cache_key: str) -> bool:
        return self.cache.invalidate(cache_key)

    def last_failure(self, cache_key: str) -> Optional[FailureRecord]:
        with self._lock:
            return self._failures.get(cache_key)

    def recent_failures(self) -> List[FailureRecord]:
        with self._lock:
            return sorted(self._failures.values(), key=lambda r: r.failed_at, reverse=True)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for scheduled background refreshes to finish.

        Returns:
            True if all completed within the timeout
        """
        with self._lock:
            pending = list(self._background_futures)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._background.shutdown(wait=wait)
        self._gate.shutdown(wait=wait)

    def __enter__(self) -> "DataSourceGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _timeout_for(self, source_id: str, timeout_s: Optional[float]) -> float:
        if timeout_s is not None:
            return timeout_s
        source_timeout_ms = self.config.source(source_id).timeout_ms
        return (source_timeout_ms or self.settings.timeout_ms) / 1000.0

    def _fetch_coalesced(
        self,
        source_id: str,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout_s: float,
        max_retries: int,
        timeframe: Optional[str],
    ) -> Optional[SourceResult]:
        """Run one upstream fetch per key; concurrent callers share its outcome."""
        with self._lock:
            shared = self._inflight.get(cache_key)
            if shared is None:
                shared = Future()
                self._inflight[cache_key] = shared
                owner = True
            else:
                owner = False

        if not owner:
            logger.debug(f"Joining in-flight fetch for {cache_key}")
            return shared.result()

        result = None
        try:
            result = self._fetch_with_retry(source_id, cache_key, fetch_fn, timeout_s, max_retries, timeframe)
        finally:
            with self._lock:
                self._inflight.pop(cache_key, None)
            shared.set_result(result)
        return result

    def _run_gated(self, source_id: str, fetch_fn: FetchFn, timeout_s: float) -> SourceResult:
        """
        Run fetch_fn on the shared worker pool and wait at most timeout_s
        once it has started. A timed-out call keeps its worker until the
        underlying request returns; its result is discarded.

        Raises:
            UpstreamUnavailable: No worker slot freed up within the queue timeout
            UpstreamTimeout: The started call did not return within timeout_s
        """
        started = threading.Event()

        def task() -> SourceResult:
            started.set()
            return fetch_fn()

        future = self._gate.submit(task)
        queue_timeout_s = self.settings.queue_timeout_ms / 1000.0
        # Queue time does not count against the timeout
        if not started.wait(queue_timeout_s) and future.cancel():
            raise UpstreamUnavailable(source_id, f"no upstream slot free within {queue_timeout_s:.2f}s")

        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeout:
            raise UpstreamTimeout(source_id, f"no response within {timeout_s:.2f}s")

    def _fetch_with_retry(
        self,
        source_id: str,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout_s: float,
        max_retries: int,
        timeframe: Optional[str],
    ) -> Optional[SourceResult]:
        """Bounded retry loop: timeouts retry with backoff, everything else fails fast."""
        attempts = max_retries + 1
        backoff = self.settings.initial_backoff_seconds
        call_started = self._clock()

        for attempt in range(1, attempts + 1):
            attempt_started = self._clock()
            try:
                if not self.rate_limits.try_acquire(source_id):
                    limit = self.rate_limits.limit_for(source_id)
                    raise RateLimited(
                        source_id, f"rate limit reached ({limit.requests} per {limit.period_seconds:g}s)"
                    )
                result = self._run_gated(source_id, fetch_fn, timeout_s)
            except UpstreamTimeout as e:
                latency_ms = (self._clock() - attempt_started) * 1000
                self.health.record_failure(source_id, str(e), kind=ErrorKind.TIMEOUT.value, latency_ms=latency_ms)
                if attempt < attempts:
                    logger.warning(f"Retry {attempt}/{max_retries} for {cache_key} in {backoff}s: {e}")
                    self._sleep(backoff)
                    backoff *= self.settings.backoff_multiplier
                    continue
                logger.error(f"Failed after {attempts} attempts for {cache_key}: {e}")
                self._record_failure(cache_key, source_id, ErrorKind.TIMEOUT, str(e), attempt, call_started)
                return None
            except SourceError as e:
                kind = classify(e)
                latency_ms = (self._clock() - attempt_started) * 1000
                if kind not in _NOT_ATTEMPTED:
                    self.health.record_failure(source_id, str(e), kind=kind.value, latency_ms=latency_ms)
                logger.warning(f"{kind.value} from {source_id} for {cache_key}: {e.message}")
                self._record_failure(cache_key, source_id, kind, str(e), attempt, call_started)
                return None
            except Exception as e:
                latency_ms = (self._clock() - attempt_started) * 1000
                self.health.record_failure(source_id, str(e), kind=ErrorKind.REJECTED.value, latency_ms=latency_ms)
                logger.error(f"Unexpected error from {source_id} for {cache_key}: {e}", exc_info=True)
                self._record_failure(cache_key, source_id, ErrorKind.REJECTED, str(e), attempt, call_started)
                return None

            latency_ms = (self._clock() - attempt_started) * 1000
            self.health.record_success(source_id, latency_ms=latency_ms)

            if result is None or result.status != SourceStatus.OK:
                error = (result.error if result is not None else None) or "no data"
                self._record_failure(cache_key, source_id, ErrorKind.NO_DATA, error, attempt, call_started)
                return None

            ttl_s, stale_ttl_s = self.config.source(source_id).ttl_for(timeframe)
            self.cache.put(cache_key, result, ttl_s, stale_ttl_s)
            with self._lock:
                self._failures.pop(cache_key, None)
            logger.debug(f"Fetched {cache_key} in {latency_ms:.0f}ms (attempt {attempt})")
            return result

        return None

    def _record_failure(
        self,
        cache_key: str,
        source_id: str,
        kind: ErrorKind,
        error: str,
        attempts: int,
        call_started: float,
    ) -> None:
        record = FailureRecord(
            key=cache_key,
            source_id=source_id,
            kind=kind,
            error=error,
            attempts=attempts,
            elapsed_ms=round((self._clock() - call_started) * 1000, 1),
            failed_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._failures[cache_key] = record

    def _schedule_background_refresh(
        self,
        source_id: str,
        cache_key: str,
        fetch_fn: FetchFn,
        timeout_s: float,
        max_retries: int,
        timeframe: Optional[str],
    ) -> bool:
        """Submit one background refresh per key. Returns False if one is already queued."""
        with self._lock:
            if cache_key in self._refreshing:
                return False
            self._refreshing.add(cache_key)

        def refresh() -> None:
            try:
                result = self._fetch_coalesced(source_id, cache_key, fetch_fn, timeout_s, max_retries, timeframe)
                if result is None:
                    logger.warning(f"Background refresh failed for {cache_key}; stale value kept")
            finally:
                with self._lock:
                    self._refreshing.discard(cache_key)

        with self._lock:
            future = self._background.submit(refresh)
            self._background_futures.add(future)
        future.add_done_callback(self._forget_background)
        return True

    def _forget_background(self, future: Future) -> None:
        with self._lock:
            self._background_futures.discard(future)
        if future.exception() is not None:
            logger.error(f"Background refresh raised: {future.exception()}")
