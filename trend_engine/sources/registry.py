"""Adapter registry: maps source ids to adapter classes."""

from typing import Any, Dict, List, Optional, Type

from .base_adapter import BaseAdapter
from .fetch_bestbuy import BestBuyAdapter
from .fetch_github import GitHubAdapter
from .fetch_reddit import RedditAdapter
from .fetch_search_trends import SearchTrendsAdapter
from .fetch_spotify import SpotifyAdapter
from .fetch_steam import SteamAdapter
from .fetch_tmdb import TMDBAdapter
from .fetch_wikipedia import WikipediaAdapter
from .fetch_youtube import YouTubeAdapter
from ..config.settings import EngineConfig


ADAPTER_CLASSES: Dict[str, Type[BaseAdapter]] = {
    cls.source_id: cls
    for cls in (
        SearchTrendsAdapter,
        YouTubeAdapter,
        WikipediaAdapter,
        TMDBAdapter,
        SpotifyAdapter,
        SteamAdapter,
        BestBuyAdapter,
        GitHubAdapter,
        RedditAdapter,
    )
}


def build_adapters(config: Optional[EngineConfig] = None) -> Dict[str, BaseAdapter]:
    """Instantiate one adapter per known source using its configured settings."""
    config = config or EngineConfig()
    return {source_id: cls(config.source(source_id)) for source_id, cls in ADAPTER_CLASSES.items()}


def describe_sources(adapters: Dict[str, BaseAdapter]) -> List[Dict[str, Any]]:
    """Rows describing each adapter for CLI listings."""
    return [
        {
            "source_id": source_id,
            "name": adapter.display_name,
            "enabled": adapter.enabled,
            "configured": adapter.is_configured(),
            "requires": adapter.required_secrets,
        }
        for source_id, adapter in adapters.items()
    ]
