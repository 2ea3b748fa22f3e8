"""
In-memory TTL cache with a stale-while-revalidate window.

Entries are immutable and only ever replaced. Each entry has two deadlines:
    fresh_until - served without any upstream call
    stale_until - still served, but the caller should refresh in the background
Past stale_until the entry is treated as absent.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from .models import DEFAULT_TIMEFRAME, SourceResult


CACHE_KEY_VERSION = "v1"


class CacheState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISS = "miss"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: SourceResult
    stored_at: float
    fresh_until: float
    stale_until: float

    def __post_init__(self):
        if not (self.stored_at <= self.fresh_until <= self.stale_until):
            raise ValueError(
                f"Cache entry {self.key} requires stored_at <= fresh_until <= stale_until, "
                f"got {self.stored_at}, {self.fresh_until}, {self.stale_until}"
            )

    def state_at(self, now: float) -> CacheState:
        if now < self.fresh_until:
            return CacheState.FRESH
        if now < self.stale_until:
            return CacheState.STALE
        return CacheState.MISS


def _stable_part(value: Any) -> str:
    """Strings pass through; anything else is replaced by a short stable hash."""
    if isinstance(value, str):
        return value
    encoded = json.dumps(value, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def build_cache_key(
    source: str,
    term: str,
    timeframe: Optional[str] = None,
    geo: Any = "",
    variant: Any = None,
) -> str:
    """
    Build the cache key for one source/term lookup.

    Format: source:{source}:{term}:{timeframe}:{geo}[:{variant}]:v1
    Terms are lower-cased and trimmed so "iPhone " and "iphone" share an entry.
    The variant distinguishes results that depend on more than the term, such
    as a score read out of a caller-supplied series.
    """
    normalized_term = term.strip().lower() if isinstance(term, str) else _stable_part(term)
    parts = [
        "source",
        source,
        normalized_term,
        _stable_part(timeframe or DEFAULT_TIMEFRAME),
        _stable_part(geo or ""),
    ]
    if variant is not None:
        parts.append(_stable_part(variant))
    parts.append(CACHE_KEY_VERSION)
    return ":".join(parts)


def series_fingerprint(series: Optional[Sequence[Mapping[str, Any]]]) -> str:
    """Short stable hash of an interest series ('noseries' when absent)."""
    if not series:
        return "noseries"
    return _stable_part([dict(point) for point in series])


class TTLCache:
    """Thread-safe key -> CacheEntry store. Last writer wins."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def lookup(self, key: str) -> Tuple[CacheState, Optional[CacheEntry]]:
        """
        Look up a key.

        Returns:
            (state, entry). Expired entries are dropped and reported as MISS.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return CacheState.MISS, None
            state = entry.state_at(now)
            if state == CacheState.MISS:
                del self._entries[key]
                return CacheState.MISS, None
            return state, entry

    def get(self, key: str) -> Optional[SourceResult]:
        """Value for a fresh or stale key, else None."""
        _, entry = self.lookup(key)
        return entry.value if entry else None

    def put(self, key: str, value: SourceResult, ttl_s: float, stale_ttl_s: float) -> CacheEntry:
        """
        Store (replace) an entry.

        Args:
            ttl_s: Seconds the entry is fresh
            stale_ttl_s: Seconds the entry stays servable in total; values
                below ttl_s are raised to ttl_s
        """
        now = self._clock()
        fresh_until = now + max(0.0, ttl_s)
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=now,
            fresh_until=fresh_until,
            stale_until=max(fresh_until, now + stale_ttl_s),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every entry past its stale deadline. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.state_at(now) == CacheState.MISS]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
