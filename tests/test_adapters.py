"""Tests for source adapters with mocked HTTP."""

import math
import time
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from trend_engine.errors import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable
from trend_engine.models import SourceStatus
from trend_engine.sources.base_adapter import FetchContext
from trend_engine.sources.fetch_bestbuy import BestBuyAdapter, build_search_filter
from trend_engine.sources.fetch_github import GitHubAdapter
from trend_engine.sources.fetch_reddit import RedditAdapter
from trend_engine.sources.fetch_search_trends import SearchTrendsAdapter
from trend_engine.sources.fetch_spotify import SpotifyAdapter
from trend_engine.sources.fetch_steam import SteamAdapter
from trend_engine.sources.fetch_tmdb import TMDBAdapter
from trend_engine.sources.fetch_wikipedia import WikipediaAdapter
from trend_engine.sources.fetch_youtube import YouTubeAdapter
from trend_engine.sources.registry import ADAPTER_CLASSES, build_adapters, describe_sources


def mock_response(payload=None, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        error = requests.HTTPError(f"{status_code} error")
        error.response = resp
        resp.raise_for_status.side_effect = error
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def api_keys(monkeypatch):
    for name in ("YOUTUBE_API_KEY", "TMDB_API_KEY", "SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET", "BESTBUY_API_KEY"):
        monkeypatch.setenv(name, "test-key")


class TestYouTubeAdapter:
    """YouTube search + statistics."""

    @patch('trend_engine.sources.fetch_youtube._session.get')
    def test_average_views(self, mock_get, api_keys):
        mock_get.side_effect = [
            mock_response({"items": [{"id": {"videoId": "v1"}}, {"id": {"videoId": "v2"}}]}),
            mock_response({"items": [
                {"statistics": {"viewCount": "40000"}},
                {"statistics": {"viewCount": "60000"}},
            ]}),
        ]

        result = YouTubeAdapter().fetch("python")

        assert result.status == SourceStatus.OK
        assert result.raw_value == pytest.approx(50_000)
        assert result.normalized_value == pytest.approx(math.log10(50_000) / 8 * 100)
        assert result.data_point_count == 2
        assert mock_get.call_args_list[1].kwargs["params"]["id"] == "v1,v2"

    @patch('trend_engine.sources.fetch_youtube._session.get')
    def test_no_videos_is_no_match(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"items": []})

        result = YouTubeAdapter().fetch("zzzz")

        assert result.status == SourceStatus.FAILED
        assert result.error == "no videos found"
        assert mock_get.call_count == 1

    @patch('trend_engine.sources.fetch_youtube._session.get')
    def test_quota_exceeded_is_rejected(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"error": {"message": "quota"}}, status_code=403)

        with pytest.raises(UpstreamRejected) as exc:
            YouTubeAdapter().fetch("python")
        assert "HTTP 403" in str(exc.value)

    @patch('trend_engine.sources.fetch_youtube._session.get')
    def test_timeout_is_classified(self, mock_get, api_keys):
        mock_get.side_effect = requests.Timeout("read timed out")

        with pytest.raises(UpstreamTimeout):
            YouTubeAdapter().fetch("python")

    @patch('trend_engine.sources.fetch_youtube._session.get')
    def test_connection_error_is_rejected(self, mock_get, api_keys):
        mock_get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(UpstreamRejected):
            YouTubeAdapter().fetch("python")

    def test_missing_key_is_unavailable(self, monkeypatch):
        monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)
        adapter = YouTubeAdapter()

        assert adapter.is_configured() is False
        with pytest.raises(UpstreamUnavailable):
            adapter.fetch("python")


class TestWikipediaAdapter:
    @patch('trend_engine.sources.fetch_wikipedia._session.get')
    def test_average_pageviews(self, mock_get):
        mock_get.side_effect = [
            mock_response(["python", ["Python (programming language)"], [""], ["https://..."]]),
            mock_response({"items": [{"views": 9000}, {"views": 11000}]}),
        ]

        result = WikipediaAdapter().fetch("python", FetchContext(timeframe="30d"))

        assert result.status == SourceStatus.OK
        assert result.raw_value == pytest.approx(10_000)
        assert result.normalized_value == pytest.approx(4 / 7 * 100)
        url = mock_get.call_args_list[1].args[0]
        assert "Python_(programming_language)" in url or "Python_%28programming_language%29" in url
        assert "/daily/" in url

    @patch('trend_engine.sources.fetch_wikipedia._session.get')
    def test_no_article(self, mock_get):
        mock_get.return_value = mock_response(["xq", [], [], []])

        result = WikipediaAdapter().fetch("xq")

        assert result.status == SourceStatus.FAILED
        assert "no Wikipedia article" in result.error

    @patch('trend_engine.sources.fetch_wikipedia._session.get')
    def test_pageviews_404_is_no_match(self, mock_get):
        mock_get.side_effect = [
            mock_response(["new", ["Brand New Page"], [""], [""]]),
            mock_response({}, status_code=404),
        ]

        result = WikipediaAdapter().fetch("new")

        assert result.status == SourceStatus.FAILED


class TestTMDBAdapter:
    @patch('trend_engine.sources.fetch_tmdb._session.get')
    def test_vote_average(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"results": [
            {"title": "Dune", "vote_average": 7.8, "vote_count": 12000},
        ]})

        result = TMDBAdapter().fetch("dune")

        assert result.normalized_value == pytest.approx(78.0)
        assert result.confidence == 85.0

    @patch('trend_engine.sources.fetch_tmdb._session.get')
    def test_invalid_rating_scores_zero_with_low_confidence(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"results": [
            {"title": "Odd", "vote_average": None, "vote_count": 500},
        ]})

        result = TMDBAdapter().fetch("odd")

        assert result.status == SourceStatus.OK
        assert result.normalized_value == 0.0
        assert result.confidence <= 10.0
        assert "invalid raw value" in result.notes

    @patch('trend_engine.sources.fetch_tmdb._session.get')
    def test_no_results(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"results": []})
        assert TMDBAdapter().fetch("nothing").status == SourceStatus.FAILED


class TestSpotifyAdapter:
    @patch('trend_engine.sources.fetch_spotify._session.get')
    @patch('trend_engine.sources.fetch_spotify._session.post')
    def test_popularity_and_token_reuse(self, mock_post, mock_get, api_keys):
        mock_post.return_value = mock_response({"access_token": "tok", "expires_in": 3600})
        mock_get.return_value = mock_response({"artists": {"items": [
            {"name": "Artist", "popularity": 72, "followers": {"total": 2_000_000}},
        ]}})

        adapter = SpotifyAdapter()
        first = adapter.fetch("artist")
        adapter.fetch("artist")

        assert first.normalized_value == pytest.approx(72.0)
        assert first.confidence == 90.0
        assert mock_post.call_count == 1
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"

    @patch('trend_engine.sources.fetch_spotify._session.get')
    @patch('trend_engine.sources.fetch_spotify._session.post')
    def test_token_refreshed_after_expiry(self, mock_post, mock_get, api_keys, clock):
        mock_post.return_value = mock_response({"access_token": "tok", "expires_in": 120})
        mock_get.return_value = mock_response({"artists": {"items": []}})

        adapter = SpotifyAdapter(clock=clock)
        adapter.fetch("a")
        clock.advance(61)
        adapter.fetch("a")

        assert mock_post.call_count == 2

    @patch('trend_engine.sources.fetch_spotify._session.post')
    def test_bad_credentials_rejected(self, mock_post, api_keys):
        mock_post.return_value = mock_response({"error": "invalid_client"}, status_code=401)

        with pytest.raises(UpstreamRejected):
            SpotifyAdapter().fetch("artist")


class TestSteamAdapter:
    @patch('trend_engine.sources.fetch_steam._session.get')
    def test_review_score(self, mock_get):
        mock_get.side_effect = [
            mock_response({"items": [{"id": 570, "name": "Dota 2"}]}),
            mock_response({"query_summary": {"total_reviews": 2000, "total_positive": 1600}}),
        ]

        result = SteamAdapter().fetch("dota")

        assert result.raw_value == pytest.approx(80.0)
        assert result.normalized_value == pytest.approx(80.0)
        assert result.confidence == 85.0
        assert mock_get.call_args_list[1].args[0].endswith("/570")

    @patch('trend_engine.sources.fetch_steam._session.get')
    def test_no_reviews(self, mock_get):
        mock_get.side_effect = [
            mock_response({"items": [{"id": 1, "name": "New Game"}]}),
            mock_response({"query_summary": {"total_reviews": 0}}),
        ]
        assert SteamAdapter().fetch("new").status == SourceStatus.FAILED


class TestBestBuyAdapter:
    def test_search_filter(self):
        assert build_search_filter("galaxy s24 ultra") == "search=galaxy&search=s24&search=ultra"
        assert build_search_filter("   ") == ""

    @patch('trend_engine.sources.fetch_bestbuy._session.get')
    def test_rating(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"products": [
            {"name": "Galaxy S24", "customerReviewAverage": 4.5, "customerReviewCount": 50},
        ]})

        result = BestBuyAdapter().fetch("galaxy s24")

        assert result.normalized_value == pytest.approx(90.0)
        assert result.confidence == 70.0
        assert "products((search=galaxy&search=s24))" in mock_get.call_args.args[0]

    @patch('trend_engine.sources.fetch_bestbuy._session.get')
    def test_unrated_product(self, mock_get, api_keys):
        mock_get.return_value = mock_response({"products": [{"name": "Cable", "customerReviewAverage": None}]})
        assert BestBuyAdapter().fetch("cable").status == SourceStatus.FAILED


class TestGitHubAdapter:
    """Repository search scored on stars plus forks."""

    REPOS = [
        {"stargazers_count": 900, "forks_count": 100, "created_at": "2024-03-01T10:00:00Z"},
        {"stargazers_count": 5, "forks_count": 0, "created_at": "2024-03-02T10:00:00Z"},
    ]

    @patch('trend_engine.sources.fetch_github._session.get')
    def test_stars_and_forks(self, mock_get, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        mock_get.return_value = mock_response({"total_count": 2, "items": self.REPOS})

        result = GitHubAdapter().fetch("fastapi", FetchContext(timeframe="30d"))

        assert result.status == SourceStatus.OK
        assert result.raw_value == pytest.approx(1005)
        assert result.normalized_value == pytest.approx(math.log10(1005) / 6 * 100)
        assert result.data_point_count == 2
        # volume 1.6 + day coverage about 2 + quality 15
        assert 15.0 < result.confidence < 20.0
        params = mock_get.call_args.kwargs["params"]
        assert params["q"].startswith("fastapi created:")
        assert params["sort"] == "stars"
        assert "Authorization" not in mock_get.call_args.kwargs["headers"]

    @patch('trend_engine.sources.fetch_github._session.get')
    def test_token_sent_when_configured(self, mock_get, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "gh-test")
        mock_get.return_value = mock_response({"items": self.REPOS})

        GitHubAdapter().fetch("fastapi")

        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer gh-test"

    @patch('trend_engine.sources.fetch_github._session.get')
    def test_no_repositories_is_no_match(self, mock_get):
        mock_get.return_value = mock_response({"total_count": 0, "items": []})
        result = GitHubAdapter().fetch("zzzz")
        assert result.status == SourceStatus.FAILED

    @patch('trend_engine.sources.fetch_github._session.get')
    def test_secondary_rate_limit_is_rejected(self, mock_get):
        mock_get.return_value = mock_response({"message": "API rate limit exceeded"}, status_code=403)
        with pytest.raises(UpstreamRejected):
            GitHubAdapter().fetch("fastapi")


class TestRedditAdapter:
    @staticmethod
    def post(days_ago, score, comments):
        return {"data": {"score": score, "num_comments": comments, "created_utc": time.time() - days_ago * 86400}}

    @patch('trend_engine.sources.fetch_reddit._session.get')
    def test_engagement_inside_timeframe(self, mock_get):
        mock_get.return_value = mock_response({"data": {"children": [
            self.post(3, 100, 20),
            self.post(4, 50, 30),
            self.post(3000, 9999, 9999),
        ]}})

        result = RedditAdapter().fetch("rust", FetchContext(timeframe="30d"))

        assert result.status == SourceStatus.OK
        assert result.raw_value == pytest.approx(200)
        assert result.data_point_count == 2
        assert result.normalized_value == pytest.approx(math.log10(200) / 6 * 100)
        assert mock_get.call_args.kwargs["params"]["q"] == "rust"

    @patch('trend_engine.sources.fetch_reddit._session.get')
    def test_only_old_posts_is_no_match(self, mock_get):
        mock_get.return_value = mock_response({"data": {"children": [self.post(400, 10, 1)]}})

        result = RedditAdapter().fetch("rust", FetchContext(timeframe="7d"))

        assert result.status == SourceStatus.FAILED
        assert result.error == "no posts in timeframe"

    def test_consistency_needs_enough_active_days(self):
        steady = {date(2024, 1, d): 100 for d in range(1, 8)}
        sparse = {date(2024, 1, d): 100 for d in range(1, 3)}

        with_consistency = RedditAdapter._confidence([{}] * 7, steady, window_days=7)
        without = RedditAdapter._confidence([{}] * 2, sparse, window_days=7)

        assert with_consistency == pytest.approx(7 / 100 * 40 + 30 + 30)
        assert without == pytest.approx(2 / 100 * 40 + 2 / 7 * 30)


class TestSearchTrendsAdapter:
    SERIES = [{"date": "2024-01-01", "Python": 40, "Rust": 10}, {"date": "2024-01-08", "Python": 60, "Rust": 20}]

    def test_average_interest(self):
        result = SearchTrendsAdapter().fetch("python", FetchContext(series=self.SERIES))

        assert result.raw_value == pytest.approx(50.0)
        assert result.normalized_value == pytest.approx(50.0)
        assert result.data_point_count == 2

    def test_without_series(self):
        assert SearchTrendsAdapter().fetch("python").status == SourceStatus.FAILED

    def test_unknown_term(self):
        result = SearchTrendsAdapter().fetch("go", FetchContext(series=self.SERIES))
        assert result.error == "term not present in series"


class TestRegistry:
    def test_all_sources_registered(self):
        assert set(ADAPTER_CLASSES) == {
            "search_trends", "youtube", "wikipedia", "tmdb", "spotify", "steam", "bestbuy", "github", "reddit",
        }

    def test_describe_reports_configuration(self, monkeypatch):
        monkeypatch.delenv("TMDB_API_KEY", raising=False)
        rows = {r["source_id"]: r for r in describe_sources(build_adapters())}

        assert rows["wikipedia"]["configured"] is True
        assert rows["tmdb"]["configured"] is False
        assert rows["tmdb"]["requires"] == ["TMDB_API_KEY"]
