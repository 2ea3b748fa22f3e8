"""
Refresh coordination for forced rebuilds.

Each key moves through idle -> in-flight -> cooldown -> idle:

    in-flight  a ticket exists and its future has not settled
    cooldown   the future settled less than cooldown_ms ago; duplicate
               requests are still refused
    idle       no ticket

Expired tickets are purged lazily whenever the registry is touched. An
in-flight ticket older than stale_after_seconds is assumed hung and purged so
it cannot wedge its key.
"""

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .config.settings import RefreshSettings
from .errors import ConcurrencyRefused, DuplicateRefresh, ErrorKind
from .models import RefreshType

logger = logging.getLogger(__name__)


# Types where only one operation may run at a time regardless of key
BULK_REFRESH_TYPES = (RefreshType.ALL, RefreshType.TRENDING)


@dataclass
class RefreshTicket:
    key: str
    type: RefreshType
    started_at: float
    future: Optional[Future] = None
    finished_at: Optional[float] = None

    @property
    def in_flight(self) -> bool:
        return self.finished_at is None


@dataclass(frozen=True)
class RefreshAdmission:
    """Answer to "may a refresh of this type start now?"."""
    allowed: bool
    active_count: int
    reason: Optional[str] = None
    reason_kind: Optional[ErrorKind] = None


class RefreshCoordinator:
    """In-memory registry of refresh tickets guarded by a single lock."""

    def __init__(
        self,
        settings: Optional[RefreshSettings] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or RefreshSettings()
        self.cooldown_s = self.settings.cooldown_ms / 1000.0
        self.max_concurrent = self.settings.max_concurrent
        self.stale_after_s = self.settings.stale_after_seconds
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.max_concurrent,
            thread_name_prefix="refresh",
        )
        self._tickets: Dict[str, RefreshTicket] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Registry maintenance (call with lock held)
    # ------------------------------------------------------------------

    def _purge_locked(self) -> None:
        now = self._clock()
        for key, ticket in list(self._tickets.items()):
            if ticket.in_flight:
                if now - ticket.started_at >= self.stale_after_s:
                    logger.warning(
                        f"Purging stale refresh ticket {key} "
                        f"(in flight for {now - ticket.started_at:.0f}s)"
                    )
                    del self._tickets[key]
            elif now - ticket.finished_at >= self.cooldown_s:
                del self._tickets[key]

    def _active_locked(self) -> List[RefreshTicket]:
        return [t for t in self._tickets.values() if t.in_flight]

    def _admission_locked(self, refresh_type: RefreshType) -> RefreshAdmission:
        active = self._active_locked()
        if len(active) >= self.max_concurrent:
            return RefreshAdmission(
                allowed=False,
                active_count=len(active),
                reason=f"{len(active)} refreshes in flight (limit {self.max_concurrent})",
                reason_kind=ErrorKind.CONCURRENCY_REFUSED,
            )
        if refresh_type in BULK_REFRESH_TYPES and any(t.type == refresh_type for t in active):
            return RefreshAdmission(
                allowed=False,
                active_count=len(active),
                reason=f"a '{refresh_type.value}' refresh is already running",
                reason_kind=ErrorKind.DUPLICATE_REFRESH,
            )
        return RefreshAdmission(allowed=True, active_count=len(active))

    def _check_duplicate_locked(self, key: str) -> None:
        ticket = self._tickets.get(key)
        if ticket is None:
            return
        state = "in flight" if ticket.in_flight else "cooling down"
        raise DuplicateRefresh(key, f"refresh already {state}")

    def _settle(self, ticket: RefreshTicket) -> None:
        # Ticket may already have been purged; setting it is then harmless
        with self._lock:
            if ticket.finished_at is None:
                ticket.finished_at = self._clock()

    @staticmethod
    def _log_outcome(key: str, future: Future) -> None:
        if future.cancelled():
            logger.info(f"Refresh {key} cancelled")
        elif future.exception() is not None:
            logger.error(f"Refresh {key} failed: {future.exception()}")
        else:
            logger.info(f"Refresh {key} completed")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def can_start_refresh(self, refresh_type: RefreshType = RefreshType.SINGLE) -> RefreshAdmission:
        """Check the global in-flight ceiling (and bulk-type exclusivity)."""
        with self._lock:
            self._purge_locked()
            return self._admission_locked(RefreshType(refresh_type))

    def register_refresh(self, key: str, refresh_type: RefreshType, future: Future) -> RefreshTicket:
        """
        Track an already-running operation for a key.

        Raises:
            DuplicateRefresh: If the key is in flight or cooling down
        """
        with self._lock:
            self._purge_locked()
            self._check_duplicate_locked(key)
            ticket = RefreshTicket(key=key, type=RefreshType(refresh_type), started_at=self._clock(), future=future)
            self._tickets[key] = ticket

        def on_done(f: Future) -> None:
            self._settle(ticket)
            self._log_outcome(key, f)

        future.add_done_callback(on_done)
        logger.info(f"Registered {ticket.type.value} refresh {key}")
        return ticket

    def start_refresh(
        self,
        key: str,
        refresh_type: RefreshType,
        operation: Callable[[], Any],
    ) -> Future:
        """
        Atomically admit and start an operation for a key.

        Only one caller per key gets past the check; the operation runs on
        the coordinator's executor.

        Returns:
            Future of the operation's result

        Raises:
            DuplicateRefresh: If the key is in flight or cooling down, or a
                bulk refresh of the same type is running
            ConcurrencyRefused: If the in-flight ceiling is reached
        """
        refresh_type = RefreshType(refresh_type)
        with self._lock:
            self._purge_locked()
            self._check_duplicate_locked(key)
            admission = self._admission_locked(refresh_type)
            if not admission.allowed:
                if admission.reason_kind == ErrorKind.DUPLICATE_REFRESH:
                    raise DuplicateRefresh(key, admission.reason, admission)
                raise ConcurrencyRefused(key, admission.reason, admission)

            ticket = RefreshTicket(key=key, type=refresh_type, started_at=self._clock())

            def run() -> Any:
                # Settled before the future resolves
                try:
                    return operation()
                finally:
                    self._settle(ticket)

            ticket.future = self._executor.submit(run)
            self._tickets[key] = ticket
        future = ticket.future
        future.add_done_callback(lambda f: self._log_outcome(key, f))
        logger.info(f"Started {refresh_type.value} refresh {key}")
        return future

    def is_refresh_in_progress(self, key: str) -> bool:
        """Advisory: True while the key is in flight or cooling down."""
        with self._lock:
            self._purge_locked()
            return key in self._tickets

    def wait_for_refresh(self, key: str, timeout_s: Optional[float] = None) -> bool:
        """
        Wait for an in-flight refresh to settle.

        Args:
            key: Refresh key
            timeout_s: Maximum wait (defaults to wait_timeout_ms)

        Returns:
            True if nothing is in flight for the key or it settled in time;
            False on timeout (the caller may poll again).
        """
        if timeout_s is None:
            timeout_s = self.settings.wait_timeout_ms / 1000.0
        with self._lock:
            self._purge_locked()
            ticket = self._tickets.get(key)
            future = ticket.future if ticket is not None and ticket.in_flight else None
        if future is None:
            return True
        wait_futures([future], timeout=timeout_s)
        return future.done()

    def get_refresh_status(self) -> Dict[str, Any]:
        """Snapshot of the registry for observability."""
        with self._lock:
            self._purge_locked()
            now = self._clock()
            tickets = [
                {
                    "key": t.key,
                    "type": t.type.value,
                    "state": "in_flight" if t.in_flight else "cooldown",
                    "age_seconds": round(now - t.started_at, 1),
                }
                for t in self._tickets.values()
            ]
        active = sum(1 for t in tickets if t["state"] == "in_flight")
        return {
            "active_count": active,
            "cooldown_count": len(tickets) - active,
            "max_concurrent": self.max_concurrent,
            "tickets": tickets,
        }

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
