"""GitHub repository search adapter.

Counts developer traction for a term: the combined stars and forks of the top
repositories created inside the timeframe that match it. Works without a
token (60 requests/hour); GITHUB_TOKEN raises the quota.
"""

import logging
from typing import Any, Dict, List

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..config.secrets import get_optional_secret
from ..models import SourceResult, timeframe_window

logger = logging.getLogger(__name__)


GITHUB_SEARCH_API = "https://api.github.com/search/repositories"
USER_AGENT = "trend-engine/1.0 (comparison scoring)"
PER_PAGE = 100

# Repositories above this many stars count toward result quality
QUALITY_STAR_THRESHOLD = 10

_session = requests.Session()
_session.headers.update({
    "User-Agent": USER_AGENT,
    "Accept": "application/vnd.github.v3+json",
})


class GitHubAdapter(BaseAdapter):
    """Stars plus forks of the matching repositories created in the timeframe."""

    source_id = "github"
    display_name = "GitHub"

    def _search(self, term: str, context: FetchContext) -> List[Dict[str, Any]]:
        start, end = timeframe_window(context.timeframe)
        headers = {}
        token = get_optional_secret("GITHUB_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        resp = _session.get(
            GITHUB_SEARCH_API,
            params={
                "q": f"{term} created:{start.isoformat()}..{end.isoformat()}",
                "sort": "stars",
                "order": "desc",
                "per_page": PER_PAGE,
            },
            headers=headers,
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        return resp.json().get("items") or []

    @staticmethod
    def _confidence(repos: List[Dict[str, Any]], window_days: int) -> float:
        """Volume (up to 40) + creation-day coverage (up to 30) + quality share (up to 30)."""
        volume = min(40.0, len(repos) / 50 * 40)
        days = {str(r.get("created_at", ""))[:10] for r in repos if r.get("created_at")}
        coverage = min(30.0, len(days) / max(window_days, 1) * 30)
        quality = sum(1 for r in repos if int(r.get("stargazers_count", 0) or 0) > QUALITY_STAR_THRESHOLD)
        return min(100.0, volume + coverage + quality / len(repos) * 30)

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        repos = self._search(term, context)
        if not repos:
            return self.no_match(term, "no repositories created in timeframe")

        stars = sum(int(r.get("stargazers_count", 0) or 0) for r in repos)
        forks = sum(int(r.get("forks_count", 0) or 0) for r in repos)
        start, end = timeframe_window(context.timeframe)
        window_days = (end - start).days + 1

        return self.create_source_result(
            term=term,
            raw_value=stars + forks,
            data_point_count=len(repos),
            confidence=self._confidence(repos, window_days),
            notes=f"{len(repos)} repositories, {stars:,} stars, {forks:,} forks",
        )
