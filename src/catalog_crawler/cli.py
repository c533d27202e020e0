"""Command-line interface for the catalog crawler."""

import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from catalog_crawler.config import CrawlerConfig, settings
from catalog_crawler.database import AbstractDatabase, get_db_client
from catalog_crawler.discovery_cache import DiscoveryCache
from catalog_crawler.errors import ConfigError, CrawlerError
from catalog_crawler.extraction import HtmlExtractionService
from catalog_crawler.images import ImageDownloader
from catalog_crawler.infrastructure.fetchers import (
    IsolatedSessionFetcher,
    PageInspector,
    create_fetcher,
)
from catalog_crawler.infrastructure.retry import RetryController, RetryPolicy
from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer
from catalog_crawler.logging_config import setup_logging
from catalog_crawler.models import SessionStatus
from catalog_crawler.orchestrator import CrawlOrchestrator
from catalog_crawler.session_repository import CrawlSessionRepository
from catalog_crawler.utils.captcha_solver import create_solver_from_settings
from catalog_crawler.utils.challenge_handler import ChallengeDetector
from catalog_crawler.utils.human_simulator import create_human_simulator
from catalog_crawler.utils.mitigation import ChallengeMitigator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


def build_orchestrator(config: CrawlerConfig, db: AbstractDatabase) -> CrawlOrchestrator:
    """Wire the production collaborators for one crawl run.

    Args:
        config: Validated crawl configuration
        db: Open database handle

    Returns:
        Ready-to-run CrawlOrchestrator
    """
    browser_settings = config.browser_settings()
    pacer = Pacer()
    detector = ChallengeDetector()
    simulator = create_human_simulator()
    solver = create_solver_from_settings(settings)
    if solver is None:
        logger.info("No challenge solving service configured, mitigation is backoff only")

    mitigator = ChallengeMitigator(
        detector,
        pacer=pacer,
        backoff=DelayRange(config.challenge_backoff_min, config.challenge_backoff_max),
        simulator=simulator,
        solver=solver,
        solver_timeout=config.solver_timeout,
    )
    item_fetcher = create_fetcher(
        config,
        detector,
        mitigator=mitigator,
        pacer=pacer,
        simulator=simulator,
        browser_settings=browser_settings,
    )
    # Listing pages always go through a fresh browser, one page at a time
    discovery_fetcher = IsolatedSessionFetcher(
        PageInspector(detector, mitigator, browser_settings),
        browser_settings=browser_settings,
        pacer=pacer,
        simulator=simulator,
        dwell_seconds=config.dwell_seconds,
    )
    retry = RetryController(RetryPolicy.from_config(config), max_retries=config.max_retries)
    downloader = None
    if config.download_images:
        downloader = ImageDownloader(max_retries=config.image_retries, timeout=config.image_timeout)

    return CrawlOrchestrator(
        config=config,
        db=db,
        cache=DiscoveryCache(db),
        sessions=CrawlSessionRepository(db),
        extraction=HtmlExtractionService(collection_key=config.collection_key),
        item_fetcher=item_fetcher,
        discovery_fetcher=discovery_fetcher,
        retry=retry,
        image_downloader=downloader,
        pacer=pacer,
    )


def load_config(args) -> CrawlerConfig:
    """Environment, then optional JSON file, then command-line overrides."""
    config = CrawlerConfig.from_file(args.config) if args.config else CrawlerConfig.from_env()

    if args.key:
        config.collection_key = args.key
    if args.max_pages is not None:
        config.max_pages = args.max_pages
    if args.max_items is not None:
        config.max_items = args.max_items
    if args.no_images:
        config.download_images = False
    if args.strategy:
        config.strategy = args.strategy
    if args.search_url:
        config.search_url_template = args.search_url

    config.validate()
    return config


async def _run_crawl(orchestrator: CrawlOrchestrator, start_page: Optional[int]):
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.interrupt)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # Not supported on this platform

    try:
        return await orchestrator.run(start_page=start_page)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def crawl_command(args) -> int:
    """Run discovery and extraction for one collection key."""
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FATAL

    try:
        db = get_db_client(db_url=args.db)
    except Exception as e:
        logger.error(f"Cannot open database: {e}")
        return EXIT_FATAL

    try:
        orchestrator = build_orchestrator(config, db)
        summary = asyncio.run(_run_crawl(orchestrator, args.start_page))
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except CrawlerError as e:
        logger.error(f"Crawl aborted: {e}")
        return EXIT_FATAL
    except Exception as e:
        logger.exception(f"Crawl aborted by unexpected error: {e}")
        return EXIT_FATAL
    finally:
        db.close()

    if args.output == "json":
        print(json.dumps(summary.to_dict(), indent=2, default=str))

    if summary.status == SessionStatus.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_OK


def cache_command(args) -> int:
    """Inspect or clear the discovery cache."""
    db = get_db_client(db_url=args.db)
    cache = DiscoveryCache(db)
    try:
        if args.action == "clear-all":
            removed = cache.clear_all()
            print(f"Removed {removed} cached URLs")
            return EXIT_OK

        if not args.key:
            print("--key is required for this action", file=sys.stderr)
            return EXIT_FATAL

        if args.action == "status":
            stats = cache.get_stats(args.key)
            print(f"\n{'=' * 60}")
            print(f"Discovery cache: {args.key}")
            print(f"{'=' * 60}")
            print(f"  Total URLs:   {stats.total}")
            print(f"  Last page:    {stats.last_page}")
            print(f"  Processed:    {stats.processed} ({stats.successful} ok, {stats.failed} failed)")
            print(f"  Unprocessed:  {stats.unprocessed}")
        elif args.action == "clear":
            removed = cache.clear(args.key)
            print(f"Removed {removed} cached URLs for {args.key}")
        elif args.action == "list":
            for entry in cache.get_all_urls(args.key):
                if entry.processed:
                    state = "ok" if entry.crawl_successful else f"failed ({entry.error_message})"
                else:
                    state = "pending"
                print(f"p{entry.page_number:<3} {state:<10} {entry.url}")
        return EXIT_OK
    finally:
        db.close()


def sessions_command(args) -> int:
    """List recent crawl sessions with their error counts."""
    db = get_db_client(db_url=args.db)
    repo = CrawlSessionRepository(db)
    try:
        recent = repo.get_recent_sessions(args.limit)
        if not recent:
            print("No crawl sessions recorded")
            return EXIT_OK

        for session in recent:
            errors = repo.get_error_stats(session.id)
            error_text = ", ".join(f"{k}={v}" for k, v in sorted(errors.items())) or "none"
            print(
                f"#{session.id} {session.collection_key} {session.status.value} "
                f"started={session.started_at} found={session.items_found} new={session.items_new} "
                f"updated={session.items_updated} failed={session.items_failed} errors: {error_text}"
            )
        return EXIT_OK
    finally:
        db.close()


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description="Catalog crawler - discover and extract listing items into a local database"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper() if settings.LOG_LEVEL else "INFO",
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=settings.LOG_FILE,
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Database URL (default: DATABASE_URL or sqlite:///data/catalog_crawler.db)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    crawl_parser = subparsers.add_parser("crawl", help="Run a crawl for a collection key.")
    crawl_parser.add_argument("--key", help="Collection key, e.g. a city slug")
    crawl_parser.add_argument("--max-pages", type=int, help="Last listing page to discover")
    crawl_parser.add_argument("--max-items", type=int, help="Maximum items to extract in this run")
    crawl_parser.add_argument("--no-images", action="store_true", help="Store image URLs without downloading")
    crawl_parser.add_argument(
        "--start-page",
        type=int,
        help="Start discovery at this page instead of the computed resume page",
    )
    crawl_parser.add_argument(
        "--strategy",
        choices=["isolated", "pooled"],
        help="Fetch strategy (default: isolated)",
    )
    crawl_parser.add_argument("--search-url", help="Listing URL template containing {key}")
    crawl_parser.add_argument("--config", help="JSON config file")
    crawl_parser.add_argument(
        "--output",
        "-o",
        choices=["text", "json"],
        default="text",
        help="Print the run summary as JSON with 'json'",
    )
    crawl_parser.set_defaults(func=crawl_command)

    cache_parser = subparsers.add_parser("cache", help="Inspect or clear the discovery cache.")
    cache_parser.add_argument("action", choices=["status", "clear", "clear-all", "list"])
    cache_parser.add_argument("--key", help="Collection key")
    cache_parser.set_defaults(func=cache_command)

    sessions_parser = subparsers.add_parser("sessions", help="List recent crawl sessions.")
    sessions_parser.add_argument("--limit", type=int, default=10, help="Number of sessions (default: 10)")
    sessions_parser.set_defaults(func=sessions_command)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_file=args.log_file)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(EXIT_FATAL)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
