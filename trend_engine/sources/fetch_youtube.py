"""YouTube Data API v3 adapter.

Searches the top videos for a term and averages their view counts.
Quota exhaustion comes back as HTTP 403 and is treated as a rejection.
"""

import logging

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..config.secrets import get_secret
from ..models import SourceResult

logger = logging.getLogger(__name__)


YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
MAX_RESULTS = 25

_session = requests.Session()


class YouTubeAdapter(BaseAdapter):
    """Average view count of the most relevant videos for a term."""

    source_id = "youtube"
    display_name = "YouTube"

    def _search_video_ids(self, term: str, api_key: str) -> list:
        resp = _session.get(
            f"{YOUTUBE_API_BASE}/search",
            params={
                "part": "snippet",
                "q": term,
                "maxResults": MAX_RESULTS,
                "type": "video",
                "order": "relevance",
                "key": api_key,
            },
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        items = resp.json().get("items", [])
        return [item["id"]["videoId"] for item in items if item.get("id", {}).get("videoId")]

    def _fetch_view_counts(self, video_ids: list, api_key: str) -> list:
        resp = _session.get(
            f"{YOUTUBE_API_BASE}/videos",
            params={"part": "statistics", "id": ",".join(video_ids), "key": api_key},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        return [
            int(item.get("statistics", {}).get("viewCount", 0) or 0)
            for item in resp.json().get("items", [])
        ]

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        api_key = get_secret("YOUTUBE_API_KEY")

        video_ids = self._search_video_ids(term, api_key)
        if not video_ids:
            return self.no_match(term, "no videos found")

        views = self._fetch_view_counts(video_ids, api_key)
        if not views:
            return self.no_match(term, "no video statistics returned")

        avg_views = sum(views) / len(views)
        logger.debug(f"youtube: '{term}' avg {avg_views:,.0f} views over {len(views)} videos")
        return self.create_source_result(
            term=term,
            raw_value=avg_views,
            data_point_count=len(views),
            confidence=min(90.0, 40.0 + len(views)),
            notes=f"Found {len(views)} videos, avg {avg_views:,.0f} views",
        )
