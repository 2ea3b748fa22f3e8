"""Abstract base class for all source adapters with error classification."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

import requests

from ..config.secrets import SOURCE_SECRETS, has_credentials
from ..config.settings import SourceSettings, default_source_settings
from ..errors import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable
from ..models import DEFAULT_TIMEFRAME, SourceResult, SourceStatus
from ..scoring.normalizer import normalize_checked

logger = logging.getLogger(__name__)


# (connect, read) seconds for a single HTTP request
REQUEST_TIMEOUT = (3.05, 10)

# Confidence ceiling for results whose raw value could not be normalized
INVALID_VALUE_CONFIDENCE = 10.0


@dataclass(frozen=True)
class FetchContext:
    """Per-comparison inputs shared by every adapter call."""
    timeframe: str = DEFAULT_TIMEFRAME
    geo: str = ""
    series: Optional[Sequence[Mapping[str, Any]]] = None


class BaseAdapter(ABC):
    """
    Abstract base for all source adapters.

    Subclasses implement _fetch_impl and may raise any requests exception;
    fetch() converts those into the engine's upstream error taxonomy so the
    gateway can decide whether to retry.
    """

    source_id: str = ""
    display_name: str = ""
    # Result depends on FetchContext.series, so cached values are keyed by it
    series_dependent: bool = False

    def __init__(self, settings: Optional[SourceSettings] = None):
        self.settings = settings or default_source_settings(self.source_id)
        self.required_secrets: List[str] = SOURCE_SECRETS.get(self.source_id, [])

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def is_configured(self) -> bool:
        """True if the source is enabled and has all its credentials."""
        return self.enabled and has_credentials(self.source_id)

    @abstractmethod
    def _fetch_impl(self, term: str, context: FetchContext) -> SourceResult:
        """
        Internal fetch implementation - to be overridden by subclasses.

        Args:
            term: Search term
            context: Timeframe, geo and collaborator-supplied series

        Returns:
            SourceResult (status failed for "no match")

        Raises:
            requests.RequestException or UpstreamError subclasses on failure
        """
        pass

    def fetch(self, term: str, context: Optional[FetchContext] = None) -> SourceResult:
        """
        Fetch one term, classifying failures.

        Raises:
            UpstreamUnavailable: Source disabled or missing credentials
            UpstreamTimeout: Request timed out (retryable)
            UpstreamRejected: Any other upstream failure (not retryable)
        """
        if not self.enabled:
            raise UpstreamUnavailable(self.source_id, "source disabled")
        if not has_credentials(self.source_id):
            missing = ", ".join(self.required_secrets)
            raise UpstreamUnavailable(self.source_id, f"missing credentials ({missing})")

        context = context or FetchContext()
        try:
            return self._fetch_impl(term, context)
        except requests.Timeout as e:
            raise UpstreamTimeout(self.source_id, f"request timed out for '{term}'", e)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise UpstreamRejected(self.source_id, f"HTTP {status} for '{term}'", e)
        except requests.RequestException as e:
            raise UpstreamRejected(self.source_id, f"request failed for '{term}': {e}", e)
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamRejected(self.source_id, f"malformed response for '{term}': {e}", e)

    def create_source_result(
        self,
        term: str,
        raw_value: Any,
        data_point_count: int,
        confidence: float,
        notes: Optional[str] = None,
    ) -> SourceResult:
        """
        Create a successful SourceResult with its normalized value.

        An invalid raw value still yields an ok result scored 0, with
        confidence capped and a note attached.
        """
        normalized, valid = normalize_checked(self.source_id, raw_value, mode=self.settings.normalization)
        if not valid:
            confidence = min(confidence, INVALID_VALUE_CONFIDENCE)
            notes = f"{notes}; invalid raw value {raw_value!r}" if notes else f"invalid raw value {raw_value!r}"
            raw_value = None

        return SourceResult(
            source_name=self.source_id,
            term=term,
            status=SourceStatus.OK,
            raw_value=float(raw_value) if raw_value is not None else None,
            normalized_value=normalized,
            data_point_count=data_point_count,
            confidence=max(0.0, min(100.0, confidence)),
            notes=notes,
        )

    def no_match(self, term: str, reason: str) -> SourceResult:
        """Failed result for a term the provider has no data about."""
        logger.info(f"{self.source_id}: no data for '{term}' ({reason})")
        return SourceResult.failed(self.source_id, term, reason)
