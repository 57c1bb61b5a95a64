#!/usr/bin/env python3
"""
Catalog Service - CLI

Ingest discovery items, record events and read feeds against a local
catalog database. Settings come from the environment (.env supported).

Usage:
    python run_catalog.py ingest items.json --source tmdb --kind movie
    python run_catalog.py event --owner u1 --context 3 --kind item.collectable_added --payload '{"title": "Dune"}'
    python run_catalog.py feed --viewer u1 --scope all --limit 20
    python run_catalog.py match --title "The Hobit" --creator Tolkien --kind book
    python run_catalog.py stats
"""

import argparse
import asyncio
import json
import logging
import sys

import httpx
from dotenv import load_dotenv

from discovery.hook import CollectableDiscoveryHook
from discovery.ingestion import DiscoveryIngestionJob, DiscoveryItem
from feed.aggregator import EventAggregator
from feed.composer import FeedComposer
from services.config import CatalogConfig
from storage.collectable_store import CollectableStore
from storage.cover_media import HttpCoverMaterializer
from storage.database import database
from storage.event_store import EventStore
from storage.fuzzy_matcher import CollectableMatcher, FuzzyMatcher
from storage.feed_store import FEED_SCOPES

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def open_database(config: CatalogConfig):
    return database(
        config.db_path,
        pool_size=config.pool_size,
        busy_timeout_ms=config.busy_timeout_ms,
        operation_timeout_seconds=config.operation_timeout_seconds,
    )


async def run_ingest(args, config: CatalogConfig):
    """Run a discovery ingestion batch from a JSON file."""
    with open(args.file, "r", encoding="utf-8") as f:
        data = json.load(f)
    records = data if isinstance(data, list) else data.get("items", [])
    items = [DiscoveryItem.from_dict(record, source=args.source, kind=args.kind) for record in records]

    print(f"\n{'='*60}")
    print("Discovery Ingestion")
    print(f"{'='*60}")
    print(f"File: {args.file}")
    print(f"Items: {len(items)}")
    print(f"Source: {args.source or 'from records'}")
    print(f"Hook enabled: {config.discovery_hook_enabled}")
    print(f"{'='*60}\n")

    async with open_database(config) as db:
        async with httpx.AsyncClient(timeout=15.0) as client:
            materializer = (
                HttpCoverMaterializer(config.cover_cache_dir, client, provider=args.source or "discovery")
                if config.cover_download_enabled
                else None
            )
            store = CollectableStore(db, cover_materializer=materializer)
            job = DiscoveryIngestionJob(CollectableDiscoveryHook.from_config(store, config))
            result = await job.run(items)

    print(f"\n{'='*60}")
    print("RESULTS")
    print(f"{'='*60}")
    print(f"Status: {result.status.value}")
    print(f"Created: {result.created}")
    print(f"Existing: {result.existing}")
    print(f"Skipped: {result.skipped}")
    print(f"Errors: {result.errored}")

    if result.errors:
        print(f"Error: {result.to_dict()['error_message']}")

    if args.json:
        print(f"\n{json.dumps(result.to_dict(), indent=2)}")

    return result


async def run_event(args, config: CatalogConfig):
    """Record one user action."""
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        print(f"ERROR: --payload is not valid JSON: {e}")
        sys.exit(1)

    async with open_database(config) as db:
        aggregator = EventAggregator.from_config(db, config)
        recorded = await aggregator.record_event(args.owner, args.context, args.kind, payload)

    if recorded.standalone:
        print(f"Logged standalone event {recorded.log_id}")
    else:
        action = "Created" if recorded.created_aggregate else "Extended"
        print(
            f"{action} aggregate {recorded.aggregate.id} "
            f"(items={recorded.aggregate.item_count}, window_end={recorded.aggregate.window_end_utc.isoformat()})"
        )
    return recorded


async def run_feed(args, config: CatalogConfig):
    """Print a composed feed page as JSON."""
    async with open_database(config) as db:
        composer = FeedComposer.from_config(db, config)
        page = await composer.get_feed(
            args.viewer,
            scope=args.scope,
            owner_id=args.owner,
            event_type=args.type,
            limit=args.limit,
            offset=args.offset,
            include_discovery=not args.no_discovery,
        )
    print(json.dumps(page, indent=2, default=str))
    return page


async def run_stats(args, config: CatalogConfig):
    """Print catalog and event counts."""
    async with open_database(config) as db:
        catalog = await CollectableStore(db).stats()
        events = await EventStore(db).stats()
        schema_version = await db.get_schema_version()

    stats = {"db_path": config.db_path, "schema_version": schema_version, "catalog": catalog, "events": events}
    if args.json:
        print(json.dumps(stats, indent=2))
        return stats

    print(f"\n{'='*60}")
    print(f"Catalog: {config.db_path} (schema v{schema_version})")
    print(f"{'='*60}")
    print(f"Collectables: {catalog['total']}")
    for kind, count in catalog["by_kind"].items():
        print(f"  {kind}: {count}")
    print(f"Cached covers: {catalog['cached_covers']}")
    print(f"Aggregates: {events['aggregates']}")
    print(f"Event logs: {events['event_logs']} ({events['standalone_logs']} standalone)")
    return stats


async def run_match(args, config: CatalogConfig):
    """Resolve an OCR/vision reading against the catalog."""
    async with open_database(config) as db:
        matcher = CollectableMatcher(CollectableStore(db), FuzzyMatcher.from_config(db, config))
        match = await matcher.find_best_match(args.title, args.creator, kind=args.kind, year=args.year)

    if match is None:
        print(f"No match for {args.title!r} (threshold {config.fuzzy_match_threshold})")
        return None

    result = {"source": match.source, "collectable": match.collectable.to_dict()}
    print(json.dumps(result, indent=2, default=str))
    return result


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""

    parser = argparse.ArgumentParser(
        description="Catalog Service CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_catalog.py ingest bluray.json --source bluray --kind movie
  python run_catalog.py event --owner u1 --context 3 --kind item.collectable_added
  python run_catalog.py feed --viewer u1 --scope friends
  python run_catalog.py stats --json
        """,
    )
    parser.add_argument("--db", type=str, help="Database path (overrides CATALOG_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest normalized discovery items from JSON")
    ingest_parser.add_argument("file", type=str, help="JSON list of items (or {\"items\": [...]})")
    ingest_parser.add_argument("--source", type=str, help="Provider for bare items (bluray, igdb, tmdb, ...)")
    ingest_parser.add_argument("--kind", type=str, help="Collectable kind for bare items (book, movie, game, ...)")
    ingest_parser.add_argument("--json", action="store_true", help="Output full JSON result")

    event_parser = subparsers.add_parser("event", help="Record one user action")
    event_parser.add_argument("--owner", type=str, help="Acting user id")
    event_parser.add_argument("--context", type=int, help="Shelf id")
    event_parser.add_argument("--kind", type=str, help="Event type, e.g. item.collectable_added")
    event_parser.add_argument("--payload", type=str, help="JSON payload")

    feed_parser = subparsers.add_parser("feed", help="Compose a feed page")
    feed_parser.add_argument("--viewer", type=str, required=True, help="Viewing user id")
    feed_parser.add_argument("--scope", choices=FEED_SCOPES, default="all", help="Feed scope (default: all)")
    feed_parser.add_argument("--owner", type=str, help="Only this user's activity")
    feed_parser.add_argument("--type", type=str, help="Only this event type")
    feed_parser.add_argument("--limit", type=int, default=20, help="Page size, 1-50 (default: 20)")
    feed_parser.add_argument("--offset", type=int, default=0, help="Page offset (default: 0)")
    feed_parser.add_argument("--no-discovery", action="store_true", help="Skip the discovery block")

    match_parser = subparsers.add_parser("match", help="Find the catalog entry for a title/creator reading")
    match_parser.add_argument("--title", type=str, required=True, help="Title as read")
    match_parser.add_argument("--creator", type=str, help="Author, director or studio as read")
    match_parser.add_argument("--kind", type=str, help="Collectable kind (book, movie, game, ...)")
    match_parser.add_argument("--year", type=int, help="Release year")

    stats_parser = subparsers.add_parser("stats", help="Catalog statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output JSON")

    return parser


def main():
    """Main entry point"""
    load_dotenv()

    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = CatalogConfig.from_env()
    if args.db:
        config.db_path = args.db

    if args.command == "ingest":
        result = asyncio.run(run_ingest(args, config))
        sys.exit(1 if result.errored and not (result.created or result.existing) else 0)
    elif args.command == "event":
        asyncio.run(run_event(args, config))
    elif args.command == "feed":
        asyncio.run(run_feed(args, config))
    elif args.command == "match":
        asyncio.run(run_match(args, config))
    elif args.command == "stats":
        asyncio.run(run_stats(args, config))
    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
