"""
Command-line interface for the comparison engine.

Subcommands:
    compare  Compare two terms and print the report as JSON
    sources  List source adapters and whether they are configured
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from .config.settings import EngineConfig, load_engine_config
from .errors import ConfigError
from .gateway import DataSourceGateway
from .logging_config import configure_from_settings
from .models import DEFAULT_TIMEFRAME, VALID_TIMEFRAMES
from .orchestrator import ComparisonOrchestrator, ComparisonRequest, RefreshStatus
from .refresh import RefreshCoordinator
from .sources.registry import build_adapters, describe_sources


def _load_series(path: Optional[str]) -> Optional[List[Any]]:
    """Load a search-interest series (JSON list of {term: value} points)."""
    if not path:
        return None
    with open(Path(path), "r") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"Series file {path} must contain a JSON list")
    return data


def _parse_sources(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [s.strip() for s in value.split(",") if s.strip()]


def _load_config(args: argparse.Namespace) -> EngineConfig:
    """Load engine.yaml and set up logging from its logging section."""
    config = load_engine_config(args.config)
    configure_from_settings(config.logging, verbose=args.verbose)
    return config


def cmd_compare(args: argparse.Namespace) -> int:
    """Compare two terms."""
    try:
        config = _load_config(args)
        request = ComparisonRequest(
            term_a=args.term_a,
            term_b=args.term_b,
            timeframe=args.timeframe,
            geo=args.geo,
            enabled_sources=_parse_sources(args.sources),
            cached_category=args.category,
            series=_load_series(args.series),
        )
    except (ConfigError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    with DataSourceGateway(config) as gateway, ComparisonOrchestrator(gateway, config=config) as orchestrator:
        if args.force:
            coordinator = RefreshCoordinator(config.refresh)
            try:
                outcome = orchestrator.refresh(request, coordinator)
            finally:
                coordinator.shutdown()
            if outcome.status != RefreshStatus.COMPLETED:
                print(f"Error: refresh {outcome.status.value}: {outcome.reason}", file=sys.stderr)
                return 1
            report = outcome.report
        else:
            report = orchestrator.build_report(request)

        output = report.to_dict()
        if args.verbose:
            output["health"] = gateway.health.to_dict()
            output["failures"] = [r.to_dict() for r in gateway.recent_failures()]
            output["rate_limits"] = gateway.rate_limits.status()

    print(json.dumps(output, indent=2))

    if not report.verdict.is_meaningful:
        print("Warning: no source responded for both terms", file=sys.stderr)
        return 2
    return 0


def cmd_sources(args: argparse.Namespace) -> int:
    """List source adapters."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rows = describe_sources(build_adapters(config))
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0

    for row in rows:
        status = "ready" if row["configured"] else ("disabled" if not row["enabled"] else "missing key")
        needs = ", ".join(row["requires"]) or "-"
        print(f"  {row['source_id']:15} {status:12} {needs}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trend-engine",
        description="Compare two search terms across external popularity sources",
    )
    parser.add_argument("--config", help="Path to engine.yaml (default: search standard locations)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging and health details")
    subparsers = parser.add_subparsers(dest="command", required=True)

    compare = subparsers.add_parser("compare", help="Compare two terms")
    compare.add_argument("term_a", help="First term (wins ties)")
    compare.add_argument("term_b", help="Second term")
    compare.add_argument("--timeframe", default=DEFAULT_TIMEFRAME, choices=VALID_TIMEFRAMES)
    compare.add_argument("--geo", default="", help="Region code (default: worldwide)")
    compare.add_argument("--sources", help="Comma-separated source ids to query")
    compare.add_argument("--category", help="Comparison category (movies, music, games, ...)")
    compare.add_argument("--series", help="JSON file with the search-interest series")
    compare.add_argument("--force", action="store_true", help="Bypass the cache via the refresh coordinator")
    compare.set_defaults(func=cmd_compare)

    sources = subparsers.add_parser("sources", help="List source adapters")
    sources.add_argument("--json", action="store_true", help="Print as JSON")
    sources.set_defaults(func=cmd_sources)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
