"""Steam store adapter. Scores the top match's positive review percentage."""

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..models import SourceResult


STEAM_STORE_BASE = "https://store.steampowered.com/api"
STEAM_REVIEWS_BASE = "https://store.steampowered.com/appreviews"

_session = requests.Session()


class SteamAdapter(BaseAdapter):
    source_id = "steam"
    display_name = "Steam"

    def _find_app(self, term: str):
        resp = _session.get(
            f"{STEAM_STORE_BASE}/storesearch/",
            params={"term": term, "cc": "us", "l": "english"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        items = resp.json().get("items") or []
        return items[0] if items else None

    def _review_summary(self, app_id: int) -> dict:
        resp = _session.get(
            f"{STEAM_REVIEWS_BASE}/{app_id}",
            params={"json": 1, "purchase_type": "all", "num_per_page": 0},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        return resp.json().get("query_summary") or {}

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        app = self._find_app(term)
        if app is None:
            return self.no_match(term, "no matching game")

        summary = self._review_summary(app["id"])
        total = int(summary.get("total_reviews", 0) or 0)
        if total == 0:
            return self.no_match(term, f"'{app.get('name', term)}' has no reviews")

        positive = int(summary.get("total_positive", 0) or 0)
        review_score = positive / total * 100.0
        return self.create_source_result(
            term=term,
            raw_value=review_score,
            data_point_count=1,
            confidence=85.0 if total > 1000 else 70.0,
            notes=f"{app.get('name', term)}: {review_score:.0f}% positive ({total:,} reviews)",
        )
