"""
Secret management for provider API keys.

Usage:
    from trend_engine.config.secrets import get_secret

    # Will raise if key is missing
    key = get_secret("YOUTUBE_API_KEY")

CLI check:
    python -m trend_engine.config.secrets --check
"""

import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

# Load .env file on module import: repo root first, then current directory
_repo_root = Path(__file__).resolve().parent.parent.parent
_env_path = _repo_root / ".env"
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()


# Environment variables each source needs (empty list = no credentials)
SOURCE_SECRETS: Dict[str, List[str]] = {
    "search_trends": [],
    "wikipedia": [],
    "youtube": ["YOUTUBE_API_KEY"],
    "tmdb": ["TMDB_API_KEY"],
    "spotify": ["SPOTIFY_CLIENT_ID", "SPOTIFY_CLIENT_SECRET"],
    "steam": [],
    "bestbuy": ["BESTBUY_API_KEY"],
    "github": [],
    "reddit": [],
}


class MissingAPIKeyError(Exception):
    """Raised when a required API key is not configured."""
    pass


def get_secret(name: str) -> str:
    """
    Get a secret from the environment.

    Returns:
        str: The secret value

    Raises:
        MissingAPIKeyError: If the variable is unset or blank
    """
    value = os.environ.get(name, "").strip()
    if not value:
        raise MissingAPIKeyError(
            f"{name} not found. "
            "Copy .env.example to .env and add your key."
        )
    return value


def get_optional_secret(name: str) -> Optional[str]:
    """Get a secret, or None if it is not configured."""
    value = os.environ.get(name, "").strip()
    return value or None


def has_credentials(source_id: str) -> bool:
    """True if every variable the source needs is set."""
    return all(get_optional_secret(name) for name in SOURCE_SECRETS.get(source_id, []))


def check_keys() -> Dict[str, bool]:
    """
    Check which sources have their credentials configured.

    Returns:
        Dict mapping source id to configured status
    """
    return {source_id: has_credentials(source_id) for source_id in SOURCE_SECRETS}


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Check provider API key configuration")
    parser.add_argument("--check", action="store_true", help="Check which sources are configured")
    args = parser.parse_args()

    if args.check:
        print("Source credential status:")
        print("-" * 40)
        for source_id, ok in check_keys().items():
            needed = ", ".join(SOURCE_SECRETS[source_id]) or "no key required"
            status = "configured" if ok else "MISSING"
            print(f"  {source_id:15} {status:12} ({needed})")
        missing = [s for s, ok in check_keys().items() if not ok]
        sys.exit(1 if missing else 0)
    else:
        parser.print_help()
