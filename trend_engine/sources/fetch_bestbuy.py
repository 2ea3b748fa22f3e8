"""Best Buy Products API adapter. Scores the top match's customer rating (0-5)."""

from urllib.parse import quote

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..config.secrets import get_secret
from ..models import SourceResult


BESTBUY_API_BASE = "https://api.bestbuy.com/v1"
SHOW_FIELDS = "sku,name,customerReviewAverage,customerReviewCount"

_session = requests.Session()


def build_search_filter(term: str) -> str:
    """Best Buy keyword filter: one search= clause per word, ANDed together."""
    words = [w for w in term.split() if w]
    return "&".join(f"search={quote(w, safe='')}" for w in words)


class BestBuyAdapter(BaseAdapter):
    source_id = "bestbuy"
    display_name = "Best Buy"

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        search = build_search_filter(term)
        if not search:
            return self.no_match(term, "empty search term")

        resp = _session.get(
            f"{BESTBUY_API_BASE}/products(({search}))",
            params={
                "apiKey": get_secret("BESTBUY_API_KEY"),
                "format": "json",
                "show": SHOW_FIELDS,
                "pageSize": 1,
            },
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()

        products = resp.json().get("products") or []
        if not products:
            return self.no_match(term, "no matching product")

        product = products[0]
        rating = product.get("customerReviewAverage")
        if rating is None:
            return self.no_match(term, f"'{product.get('name', term)}' has no rating")

        review_count = int(product.get("customerReviewCount", 0) or 0)
        return self.create_source_result(
            term=term,
            raw_value=rating,
            data_point_count=1,
            confidence=85.0 if review_count > 100 else 70.0,
            notes=f"{product.get('name', term)}: {rating}/5 ({review_count:,} reviews)",
        )
