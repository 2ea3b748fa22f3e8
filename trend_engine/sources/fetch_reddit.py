"""Reddit discussion adapter.

Searches r/all for recent posts mentioning the term and scores the combined
engagement (upvotes plus comments) of posts created inside the timeframe.
Uses the public JSON endpoint, which only needs a descriptive User-Agent.
"""

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List

import numpy as np
import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..models import SourceResult, timeframe_window

logger = logging.getLogger(__name__)


REDDIT_SEARCH_URL = "https://www.reddit.com/r/all/search.json"
USER_AGENT = "trend-engine/1.0 (comparison scoring)"
SEARCH_LIMIT = 100

# Active days needed before day-to-day consistency counts toward confidence
MIN_DAYS_FOR_CONSISTENCY = 6

_session = requests.Session()
_session.headers.update({"User-Agent": USER_AGENT})


class RedditAdapter(BaseAdapter):
    """Upvotes plus comments of matching posts created in the timeframe."""

    source_id = "reddit"
    display_name = "Reddit"

    def _search(self, term: str) -> List[Dict[str, Any]]:
        resp = _session.get(
            REDDIT_SEARCH_URL,
            params={"q": term, "sort": "new", "limit": SEARCH_LIMIT, "t": "all"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        children = (resp.json().get("data") or {}).get("children") or []
        return [child.get("data") or {} for child in children]

    @staticmethod
    def _confidence(posts: List[Dict[str, Any]], per_day: Counter, window_days: int) -> float:
        """Volume (up to 40) + day coverage (up to 30) + engagement consistency (up to 30)."""
        volume = min(40.0, len(posts) / SEARCH_LIMIT * 40)
        coverage = min(30.0, len(per_day) / max(window_days, 1) * 30)
        consistency = 0.0
        if len(per_day) >= MIN_DAYS_FOR_CONSISTENCY:
            values = np.asarray(list(per_day.values()), dtype=float)
            mean = float(values.mean())
            if mean > 0:
                consistency = max(0.0, 30.0 - float(values.std()) / mean * 10)
        return min(100.0, volume + coverage + consistency)

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        start, end = timeframe_window(context.timeframe)
        posts = []
        for post in self._search(term):
            created = datetime.fromtimestamp(float(post.get("created_utc", 0)), tz=timezone.utc).date()
            if start <= created <= end:
                posts.append((created, post))

        if not posts:
            return self.no_match(term, "no posts in timeframe")

        engagement_per_day: Counter = Counter()
        for created, post in posts:
            engagement_per_day[created] += int(post.get("score", 0) or 0) + int(post.get("num_comments", 0) or 0)

        engagement = sum(engagement_per_day.values())
        window_days = (end - start).days + 1
        return self.create_source_result(
            term=term,
            raw_value=max(engagement, 0),
            data_point_count=len(posts),
            confidence=self._confidence([p for _, p in posts], engagement_per_day, window_days),
            notes=f"{len(posts)} posts on {len(engagement_per_day)} days, engagement {engagement:,}",
        )
