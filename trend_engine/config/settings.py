"""
Engine configuration loading and validation.

Configuration lives in config/engine.yaml. Every key is optional; anything
missing falls back to the defaults below. The file is validated against
ENGINE_CONFIG_SCHEMA before being turned into typed settings.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

import jsonschema
import yaml

from ..errors import ConfigError
from ..models import VALID_TIMEFRAMES
from ..scoring.composite import CATEGORY_WEIGHTS, DEFAULT_CATEGORY

logger = logging.getLogger(__name__)


CONFIG_ENV_VAR = "TREND_ENGINE_CONFIG"
DEFAULT_CONFIG_PATH = "config/engine.yaml"

HOUR = 3600
DAY = 24 * HOUR

# Gateway defaults
DEFAULT_CONCURRENCY_LIMIT = 3
DEFAULT_TIMEOUT_MS = 8000
DEFAULT_MAX_RETRIES = 2
DEFAULT_INITIAL_BACKOFF_SECONDS = 0.25
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_BACKGROUND_WORKERS = 2
DEFAULT_QUEUE_TIMEOUT_MS = 30_000

# Refresh coordinator defaults
DEFAULT_REFRESH_COOLDOWN_MS = 30_000
DEFAULT_REFRESH_MAX_CONCURRENT = 3
DEFAULT_REFRESH_STALE_AFTER_SECONDS = 5 * 60
DEFAULT_REFRESH_WAIT_TIMEOUT_MS = 30_000

# Per-source cache lifetimes: (fresh seconds, servable seconds, per-timeframe fresh seconds)
DEFAULT_SOURCE_TTLS: Dict[str, Tuple[int, int, Dict[str, int]]] = {
    "search_trends": (24 * HOUR, 48 * HOUR, {
        "7d": 6 * HOUR,
        "30d": 12 * HOUR,
        "12m": 24 * HOUR,
        "5y": 7 * DAY,
        "all": 7 * DAY,
    }),
    "youtube": (1 * HOUR, 6 * HOUR, {}),
    "spotify": (2 * HOUR, 12 * HOUR, {}),
    "tmdb": (6 * HOUR, 24 * HOUR, {}),
    "bestbuy": (6 * HOUR, 24 * HOUR, {}),
    "steam": (6 * HOUR, 24 * HOUR, {}),
    "wikipedia": (7 * DAY, 14 * DAY, {}),
    "github": (6 * HOUR, 24 * HOUR, {}),
    "reddit": (1 * HOUR, 6 * HOUR, {}),
}
FALLBACK_TTL = (1 * HOUR, 6 * HOUR, {})

# Per-source request budgets: (requests, period seconds)
DEFAULT_RATE_LIMITS: Dict[str, Tuple[int, float]] = {
    "github": (60, HOUR),
    "reddit": (60, 60),
    "bestbuy": (50, 10),
}

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_DIR = "logs"
DEFAULT_LOG_FILE = "engine.log"


_POSITIVE_NUMBER = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE_NUMBER = {"type": "number", "minimum": 0}
_NON_NEGATIVE_INT = {"type": "integer", "minimum": 0}

ENGINE_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "gateway": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "concurrency_limit": {"type": "integer", "minimum": 1},
                "timeout_ms": _POSITIVE_NUMBER,
                "max_retries": _NON_NEGATIVE_INT,
                "initial_backoff_seconds": _NON_NEGATIVE_NUMBER,
                "backoff_multiplier": {"type": "number", "minimum": 1},
                "background_workers": {"type": "integer", "minimum": 1},
                "queue_timeout_ms": _POSITIVE_NUMBER,
            },
        },
        "refresh": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "cooldown_ms": _NON_NEGATIVE_NUMBER,
                "max_concurrent": {"type": "integer", "minimum": 1},
                "stale_after_seconds": _POSITIVE_NUMBER,
                "wait_timeout_ms": _POSITIVE_NUMBER,
            },
        },
        "sources": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "enabled": {"type": "boolean"},
                    "ttl_seconds": _NON_NEGATIVE_NUMBER,
                    "stale_ttl_seconds": _NON_NEGATIVE_NUMBER,
                    "ttl_by_timeframe": {
                        "type": "object",
                        "propertyNames": {"enum": list(VALID_TIMEFRAMES)},
                        "additionalProperties": _NON_NEGATIVE_NUMBER,
                    },
                    "timeout_ms": _POSITIVE_NUMBER,
                    "normalization": {"enum": ["log", "linear", "percentile"]},
                    "rate_limit": {
                        "type": ["object", "null"],
                        "additionalProperties": False,
                        "required": ["requests", "period_seconds"],
                        "properties": {
                            "requests": {"type": "integer", "minimum": 1},
                            "period_seconds": _POSITIVE_NUMBER,
                        },
                    },
                },
            },
        },
        "category_weights": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "minProperties": 1,
                "additionalProperties": _NON_NEGATIVE_NUMBER,
            },
        },
        "default_category": {"type": "string"},
        "comparison": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "skip_down_sources": {"type": "boolean"},
            },
        },
        "logging": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR"]},
                "log_dir": {"type": ["string", "null"]},
                "log_file": {"type": "string", "minLength": 1},
            },
        },
    },
}


@dataclass(frozen=True)
class GatewaySettings:
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_backoff_seconds: float = DEFAULT_INITIAL_BACKOFF_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    background_workers: int = DEFAULT_BACKGROUND_WORKERS
    queue_timeout_ms: float = DEFAULT_QUEUE_TIMEOUT_MS


@dataclass(frozen=True)
class RefreshSettings:
    cooldown_ms: float = DEFAULT_REFRESH_COOLDOWN_MS
    max_concurrent: int = DEFAULT_REFRESH_MAX_CONCURRENT
    stale_after_seconds: float = DEFAULT_REFRESH_STALE_AFTER_SECONDS
    wait_timeout_ms: float = DEFAULT_REFRESH_WAIT_TIMEOUT_MS


@dataclass(frozen=True)
class RateLimit:
    """Sliding-window request budget for one source."""
    requests: int
    period_seconds: float


@dataclass(frozen=True)
class LoggingSettings:
    level: str = DEFAULT_LOG_LEVEL
    log_dir: Optional[str] = DEFAULT_LOG_DIR
    log_file: str = DEFAULT_LOG_FILE


@dataclass(frozen=True)
class ComparisonSettings:
    skip_down_sources: bool = True


@dataclass(frozen=True)
class SourceSettings:
    """Cache and fetch settings for one source."""
    source_id: str
    enabled: bool = True
    ttl_seconds: float = FALLBACK_TTL[0]
    stale_ttl_seconds: float = FALLBACK_TTL[1]
    ttl_by_timeframe: Dict[str, float] = field(default_factory=dict)
    timeout_ms: Optional[float] = None
    normalization: Optional[str] = None
    rate_limit: Optional[RateLimit] = None

    def ttl_for(self, timeframe: Optional[str] = None) -> Tuple[float, float]:
        """
        Fresh and servable lifetimes for a timeframe.

        When a timeframe's fresh TTL outlasts the configured stale TTL, the
        servable window becomes twice the fresh TTL.

        Returns:
            (ttl_seconds, stale_ttl_seconds)
        """
        ttl = self.ttl_by_timeframe.get(timeframe, self.ttl_seconds) if timeframe else self.ttl_seconds
        stale = self.stale_ttl_seconds if self.stale_ttl_seconds >= ttl else ttl * 2
        return float(ttl), float(stale)


def default_source_settings(source_id: str) -> SourceSettings:
    ttl, stale, by_timeframe = DEFAULT_SOURCE_TTLS.get(source_id, FALLBACK_TTL)
    limit = DEFAULT_RATE_LIMITS.get(source_id)
    return SourceSettings(
        source_id=source_id,
        ttl_seconds=ttl,
        stale_ttl_seconds=stale,
        ttl_by_timeframe=dict(by_timeframe),
        rate_limit=RateLimit(*limit) if limit else None,
    )


@dataclass(frozen=True)
class EngineConfig:
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    refresh: RefreshSettings = field(default_factory=RefreshSettings)
    comparison: ComparisonSettings = field(default_factory=ComparisonSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    sources: Dict[str, SourceSettings] = field(
        default_factory=lambda: {s: default_source_settings(s) for s in DEFAULT_SOURCE_TTLS}
    )
    category_weights: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {k: dict(v) for k, v in CATEGORY_WEIGHTS.items()}
    )
    default_category: str = DEFAULT_CATEGORY
    source_path: Optional[str] = None

    def source(self, source_id: str) -> SourceSettings:
        return self.sources.get(source_id) or default_source_settings(source_id)


def find_config_path(path: Optional[str] = None) -> Optional[str]:
    """
    Locate the engine config file.

    Search order: explicit path, $TREND_ENGINE_CONFIG, config/engine.yaml in
    the working directory, then config/engine.yaml at the repo root.

    Raises:
        ConfigError: If an explicit path is given but does not exist
    """
    if path:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        return path

    config_paths = [
        os.environ.get(CONFIG_ENV_VAR, ""),
        DEFAULT_CONFIG_PATH,
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), DEFAULT_CONFIG_PATH),
    ]
    for candidate in config_paths:
        if candidate and os.path.exists(candidate):
            return candidate
    return None


def validate_config(raw: Dict[str, Any]) -> None:
    """
    Validate a raw config mapping.

    Raises:
        ConfigError: If validation fails
    """
    try:
        jsonschema.validate(raw, ENGINE_CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"Invalid engine config at {location}: {e.message}")

    default_category = raw.get("default_category")
    if default_category is not None:
        known = set(CATEGORY_WEIGHTS) | set(raw.get("category_weights", {}))
        if default_category not in known:
            raise ConfigError(f"default_category '{default_category}' has no weight vector")


def _merge_sources(raw_sources: Dict[str, Dict[str, Any]]) -> Dict[str, SourceSettings]:
    sources = {s: default_source_settings(s) for s in DEFAULT_SOURCE_TTLS}
    for source_id, overrides in raw_sources.items():
        base = sources.get(source_id) or default_source_settings(source_id)
        by_timeframe = dict(base.ttl_by_timeframe)
        by_timeframe.update(overrides.get("ttl_by_timeframe", {}))
        values = {k: v for k, v in overrides.items() if k not in ("ttl_by_timeframe", "rate_limit")}
        if "rate_limit" in overrides:
            limit = overrides["rate_limit"]
            values["rate_limit"] = RateLimit(**limit) if limit else None
        sources[source_id] = replace(base, ttl_by_timeframe=by_timeframe, **values)
    return sources


def build_config(raw: Optional[Dict[str, Any]] = None, source_path: Optional[str] = None) -> EngineConfig:
    """Validate a raw mapping and merge it over the defaults."""
    raw = raw or {}
    validate_config(raw)

    category_weights = {k: dict(v) for k, v in CATEGORY_WEIGHTS.items()}
    for category, weights in raw.get("category_weights", {}).items():
        category_weights[category] = dict(weights)

    return EngineConfig(
        gateway=GatewaySettings(**raw.get("gateway", {})),
        refresh=RefreshSettings(**raw.get("refresh", {})),
        comparison=ComparisonSettings(**raw.get("comparison", {})),
        logging=LoggingSettings(**raw.get("logging", {})),
        sources=_merge_sources(raw.get("sources", {})),
        category_weights=category_weights,
        default_category=raw.get("default_category", DEFAULT_CATEGORY),
        source_path=source_path,
    )


def load_engine_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration from YAML.

    Args:
        path: Explicit config path (otherwise searched, see find_config_path)

    Returns:
        EngineConfig; built-in defaults if no file is found

    Raises:
        ConfigError: If the file cannot be parsed or fails validation
    """
    config_path = find_config_path(path)
    if config_path is None:
        logger.info("No engine config found, using defaults")
        return build_config({})

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load engine config from {config_path}: {e}")

    if not isinstance(raw, dict):
        raise ConfigError(f"Engine config {config_path} must be a mapping")

    logger.debug(f"Loaded engine config from {config_path}")
    return build_config(raw, source_path=config_path)

