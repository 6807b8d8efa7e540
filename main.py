"""
CLI entry point for the callshield gateway.

Usage:
    python main.py api [--host 0.0.0.0] [--port 8000]
    python main.py stats
    python main.py sweep
    python main.py clear-cache
"""

import argparse
import json
import logging
import sys

from callshield.cache.store import CacheStore
from callshield.config import get_settings
from callshield.observability.stats import StatsCollector


def _configure_logging(settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format=settings.logging.format,
    )


def _open_store(settings) -> CacheStore:
    """Open the persisted cache without a background sweep."""
    return CacheStore.from_settings(settings, start_sweeper=False)


def cmd_api(args, settings):
    """Start the HTTP API server."""
    import uvicorn

    from callshield.api import create_app

    app = create_app(settings)
    host = args.host or settings.api.host
    port = args.port or settings.api.port
    print(f"Starting callshield API on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


def cmd_stats(args, settings):
    """Print cache statistics for the persisted store."""
    with _open_store(settings) as store:
        report = StatsCollector(store).cache_report()
    print(json.dumps(report.model_dump(), indent=2))


def cmd_sweep(args, settings):
    """Remove expired entries from the persisted store."""
    with _open_store(settings) as store:
        removed = store.sweep_expired()
    print(f"Removed {removed} expired entries")


def cmd_clear_cache(args, settings):
    """Delete every cached entry, in memory and on disk."""
    with _open_store(settings) as store:
        removed = store.clear()
    print(f"Cleared {removed} entries")


def main():
    parser = argparse.ArgumentParser(
        description="callshield - cache and rate limit gateway for metered AI services"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    p_api = subparsers.add_parser("api", help="Start REST API server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    subparsers.add_parser("stats", help="Show cache statistics")
    subparsers.add_parser("sweep", help="Remove expired cache entries")
    subparsers.add_parser("clear-cache", help="Delete all cache entries")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    _configure_logging(settings)

    commands = {
        "api": cmd_api,
        "stats": cmd_stats,
        "sweep": cmd_sweep,
        "clear-cache": cmd_clear_cache,
    }
    commands[args.command](args, settings)


if __name__ == "__main__":
    main()
