"""Spotify Web API adapter.

Uses the client-credentials flow; the access token is cached on the adapter
until shortly before it expires. Scores the top artist's popularity (0-100).
"""

import logging
import threading
import time
from typing import Callable, Optional

import requests

from .base_adapter import BaseAdapter, FetchContext, REQUEST_TIMEOUT
from ..config.secrets import get_secret
from ..config.settings import SourceSettings
from ..errors import UpstreamRejected
from ..models import SourceResult

logger = logging.getLogger(__name__)


SPOTIFY_API_BASE = "https://api.spotify.com/v1"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
# Refresh the token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 60

_session = requests.Session()


class SpotifyAdapter(BaseAdapter):
    source_id = "spotify"
    display_name = "Spotify"

    def __init__(self, settings: Optional[SourceSettings] = None, clock: Callable[[], float] = time.monotonic):
        super().__init__(settings)
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _get_token(self) -> str:
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            resp = _session.post(
                SPOTIFY_TOKEN_URL,
                data={"grant_type": "client_credentials"},
                auth=(get_secret("SPOTIFY_CLIENT_ID"), get_secret("SPOTIFY_CLIENT_SECRET")),
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            payload = resp.json()
            token = payload.get("access_token")
            if not token:
                raise UpstreamRejected(self.source_id, "token response missing access_token")

            expires_in = float(payload.get("expires_in", 3600))
            self._token = token
            self._token_expires_at = self._clock() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN)
            logger.debug(f"spotify: new access token valid for {expires_in:.0f}s")
            return token

    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        resp = _session.get(
            f"{SPOTIFY_API_BASE}/search",
            params={"q": term, "type": "artist", "limit": 1},
            headers={"Authorization": f"Bearer {self._get_token()}"},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()

        artists = resp.json().get("artists", {}).get("items") or []
        if not artists:
            return self.no_match(term, "no matching artist")

        artist = artists[0]
        followers = int((artist.get("followers") or {}).get("total", 0) or 0)
        popularity = artist.get("popularity")
        return self.create_source_result(
            term=term,
            raw_value=popularity,
            data_point_count=1,
            confidence=90.0 if followers > 1_000_000 else 75.0,
            notes=f"{artist.get('name', term)}: {popularity}/100 popularity ({followers:,} followers)",
        )
