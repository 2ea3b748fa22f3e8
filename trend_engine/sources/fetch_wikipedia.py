"""Wikipedia pageviews adapter.

Resolves the term to an article with the opensearch API, then averages its
daily page views over the requested timeframe. No API key required, but
Wikimedia asks clients to send a descriptive User-Agent.
"""

import logging
import math
from urllib.parse import quote

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..models import SourceResult, timeframe_window

logger = logging.getLogger(__name__)


WIKIPEDIA_SEARCH_API = "https://en.wikipedia.org/w/api.php"
WIKIMEDIA_PAGEVIEWS_API = "https://wikimedia.org/api/rest_v1/metrics/pageviews/per-article"
USER_AGENT = "trend-engine/1.0 (comparison scoring)"

_session = requests.Session()
_session.headers.update({"User-Agent": USER_AGENT})


class WikipediaAdapter(BaseAdapter):
    """Average daily page views of the best-matching article."""

    source_id = "wikipedia"
    display_name = "Wikipedia"

    def _find_article(self, term: str):
        resp = _session.get(
            WIKIPEDIA_SEARCH_API,
            params={"action": "opensearch", "search": term, "limit": 1, "format": "json"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        # Format: [search term, [titles], [descriptions], [urls]]
        data = resp.json()
        titles = data[1] if len(data) > 1 else []
        return titles[0] if titles else None

    def _fetch_pageviews(self, title: str, context: FetchContext) -> list:
        start, end = timeframe_window(context.timeframe)
        article = quote(title.replace(" ", "_"), safe="")
        url = (
            f"{WIKIMEDIA_PAGEVIEWS_API}/en.wikipedia/all-access/all-agents/{article}/daily/"
            f"{start.strftime('%Y%m%d')}/{end.strftime('%Y%m%d')}"
        )
        resp = _session.get(url, timeout=REQUEST_TIMEOUT)
        if resp.status_code == 404:
            return []
        resp.raise_for_status()
        return [int(item.get("views", 0) or 0) for item in resp.json().get("items", [])]

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        title = self._find_article(term)
        if title is None:
            return self.no_match(term, "no Wikipedia article found")

        views = self._fetch_pageviews(title, context)
        if not views:
            return self.no_match(term, f"no pageview data for '{title}'")

        avg_views = sum(views) / len(views)
        log_bonus = math.log10(avg_views) * 10 if avg_views > 0 else 0.0
        return self.create_source_result(
            term=term,
            raw_value=avg_views,
            data_point_count=len(views),
            confidence=min(90.0, 50.0 + min(40.0, log_bonus)),
            notes=f"Based on article '{title}' (avg {avg_views:,.0f} views/day)",
        )
