"""TMDB movie search adapter. Scores the top match's vote average (0-10)."""

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..config.secrets import get_secret
from ..models import SourceResult


TMDB_API_BASE = "https://api.themoviedb.org/3"

_session = requests.Session()


class TMDBAdapter(BaseAdapter):
    source_id = "tmdb"
    display_name = "TMDB"

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        resp = _session.get(
            f"{TMDB_API_BASE}/search/movie",
            params={"api_key": get_secret("TMDB_API_KEY"), "query": term, "include_adult": "false"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()

        results = resp.json().get("results") or []
        if not results:
            return self.no_match(term, "no matching movie")

        movie = results[0]
        vote_count = int(movie.get("vote_count", 0) or 0)
        if vote_count == 0:
            return self.no_match(term, f"'{movie.get('title', term)}' has no votes")

        vote_average = movie.get("vote_average")
        return self.create_source_result(
            term=term,
            raw_value=vote_average,
            data_point_count=1,
            confidence=85.0 if vote_count >= 100 else 65.0,
            notes=f"{movie.get('title', term)}: {vote_average}/10 ({vote_count:,} votes)",
        )
