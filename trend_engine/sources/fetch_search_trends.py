"""Search-interest adapter.

The interest series itself is produced by an upstream trend component and
handed in through FetchContext.series; this adapter only summarizes it, so it
never touches the network and never times out.
"""

from .base_adapter import BaseAdapter, FetchContext
from ..models import SourceResult
from ..scoring.series_metrics import resolve_series_key, term_values


class SearchTrendsAdapter(BaseAdapter):
    """Average search interest (0-100) for a term over the supplied series."""

    source_id = "search_trends"
    display_name = "Search Interest"
    series_dependent = True

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        series = context.series
        if not series:
            return self.no_match(term, "no search-interest series supplied")

        key = resolve_series_key(series, term)
        if key is None:
            return self.no_match(term, "term not present in series")

        values = term_values(series, key)
        if values.size == 0:
            return self.no_match(term, "series has no usable points")

        avg_interest = float(values.mean())
        return self.create_source_result(
            term=term,
            raw_value=avg_interest,
            data_point_count=int(values.size),
            confidence=min(90.0, 50.0 + values.size * 0.5),
            notes=f"Average interest {avg_interest:.1f} over {values.size} points",
        )
