"""
Crawl orchestrator.

Runs one crawl for a collection key:

    Init -> ComputeResumePoint -> (discovery complete? skip : Discovery)
         -> Extraction -> Finalize

Discovery fills the URL cache page by page. Extraction drains the unprocessed
URLs through the configured fetch strategy, each item wrapped by the retry
controller. Every item ends with exactly one ``mark_processed`` call, so a
crashed or interrupted run resumes with only the remaining URLs.
"""

import asyncio
import logging
import time
import traceback
from dataclasses import asdict
from typing import Callable, Optional

from catalog_crawler.config import CrawlerConfig
from catalog_crawler.database import AbstractDatabase
from catalog_crawler.discovery import DiscoveryRunner
from catalog_crawler.discovery_cache import DiscoveryCache
from catalog_crawler.errors import ErrorKind, PersistenceError
from catalog_crawler.extraction import ExtractionService
from catalog_crawler.images import ImageDownloader
from catalog_crawler.infrastructure.fetchers import ItemFetcher
from catalog_crawler.infrastructure.retry import RetryController, RetryPolicy, outcome_for_page
from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer
from catalog_crawler.models import (
    CrawlStats,
    CrawlSummary,
    FetchOutcome,
    FetchStatus,
    SessionStatus,
    StructuredRecord,
)
from catalog_crawler.session_repository import CrawlSessionRepository
from catalog_crawler.utils.progress_reporter import ProgressReporter

logger = logging.getLogger(__name__)


def compute_resume_page(existing_items: int, items_per_page: int) -> int:
    """First listing page not yet covered by ``existing_items`` cached URLs."""
    if items_per_page < 1:
        raise ValueError("items_per_page must be >= 1")
    return max(0, existing_items) // items_per_page + 1


class CrawlOrchestrator:
    """
    Two-phase crawl driver.

    Args:
        config: Crawl tunables
        db: Persistence handle for item records and images
        cache: Discovery cache
        sessions: Crawl session and error repository
        extraction: Page parser
        item_fetcher: Fetch strategy for item pages
        discovery_fetcher: Fetcher for listing pages, defaults to item_fetcher
        retry: Retry controller, defaults to one built from config
        image_downloader: Image downloader, None to store image URLs only
        pacer: Pacer for discovery page delays
        clock: Monotonic clock for durations
    """

    def __init__(
        self,
        config: CrawlerConfig,
        db: AbstractDatabase,
        cache: DiscoveryCache,
        sessions: CrawlSessionRepository,
        extraction: ExtractionService,
        item_fetcher: ItemFetcher,
        discovery_fetcher: Optional[ItemFetcher] = None,
        retry: Optional[RetryController] = None,
        image_downloader: Optional[ImageDownloader] = None,
        pacer: Optional[Pacer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.db = db
        self.cache = cache
        self.sessions = sessions
        self.extraction = extraction
        self.item_fetcher = item_fetcher
        self.discovery_fetcher = discovery_fetcher or item_fetcher
        self.retry = retry or RetryController(
            RetryPolicy.from_config(config), max_retries=config.max_retries
        )
        self.image_downloader = image_downloader
        self.pacer = pacer or Pacer()
        self._clock = clock

        self.stats = CrawlStats()
        self.session_id: Optional[int] = None
        self.reporter: Optional[ProgressReporter] = None
        self._interrupted = asyncio.Event()
        self._fatal_stack: Optional[str] = None
        self._fatal_kind = ErrorKind.UNKNOWN

    def interrupt(self) -> None:
        """Stop starting new items. Items in flight run to completion."""
        if not self._interrupted.is_set():
            logger.warning("Interrupt requested, finishing items in flight")
        self._interrupted.set()

    @property
    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    async def run(self, start_page: Optional[int] = None) -> CrawlSummary:
        """
        Run discovery and extraction for ``config.collection_key``.

        Args:
            start_page: Explicit first listing page. When given, discovery
                runs from that page even if the cache already covers the
                page target.

        Returns:
            CrawlSummary for completed and interrupted runs

        Raises:
            PersistenceError: Storage failed (after the session is finalized)
            asyncio.CancelledError: The run was cancelled (after finalize)
        """
        cfg = self.config
        started = self._clock()
        self.stats = CrawlStats()
        self._fatal_stack = None

        self.session_id = self.sessions.start_session(cfg.collection_key, cfg.max_items)
        summary = CrawlSummary(
            session_id=self.session_id,
            collection_key=cfg.collection_key,
            status=SessionStatus.RUNNING,
            stats=self.stats,
        )

        try:
            await self._discovery_phase(summary, start_page)
            await self._extraction_phase()
            summary.status = SessionStatus.INTERRUPTED if self.interrupted else SessionStatus.COMPLETED
            if self.interrupted:
                summary.error_message = "interrupted"
        except asyncio.CancelledError:
            summary.status = SessionStatus.INTERRUPTED
            summary.error_message = "cancelled"
            await self._finalize(summary, started)
            raise
        except Exception as e:
            summary.status = SessionStatus.FAILED
            summary.error_message = f"{type(e).__name__}: {e}"
            self._fatal_stack = traceback.format_exc()
            self._fatal_kind = ErrorKind.PERSISTENCE_ERROR if isinstance(e, PersistenceError) else ErrorKind.UNKNOWN
            logger.error(f"Crawl failed: {summary.error_message}")
            await self._finalize(summary, started)
            raise

        await self._finalize(summary, started)
        return summary

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _discovery_phase(self, summary: CrawlSummary, start_page: Optional[int]) -> None:
        cfg = self.config
        key = cfg.collection_key

        if start_page is None:
            if self.cache.is_discovery_complete(key, cfg.max_pages):
                cached = self.cache.get_stats(key)
                logger.info(
                    f"Discovery already complete for {key} ({cached.total} URLs through page "
                    f"{cached.last_page}), using cached URLs"
                )
                summary.discovery_skipped = True
                summary.start_page = cached.last_page + 1
                return
            existing = self.cache.get_stats(key).total
            start_page = compute_resume_page(existing, cfg.items_per_page)
            if existing:
                logger.info(f"{existing} URLs already cached for {key}, resuming at page {start_page}")

        summary.start_page = start_page
        if start_page > cfg.max_pages:
            logger.info(f"Resume page {start_page} is beyond max_pages={cfg.max_pages}, skipping discovery")
            summary.discovery_skipped = True
            return

        runner = DiscoveryRunner(
            fetcher=self.discovery_fetcher,
            extraction=self.extraction,
            cache=self.cache,
            retry=self.retry,
            pacer=self.pacer,
            page_delay=DelayRange(cfg.page_delay_min, cfg.page_delay_max),
            items_per_page=cfg.items_per_page,
            warning_ratio=cfg.discovery_warning_ratio,
        )
        result = await runner.run(
            cfg.search_url(),
            key,
            start_page,
            cfg.max_pages,
            should_stop=self._interrupted.is_set,
        )
        summary.pages_crawled = result.pages_crawled
        summary.urls_discovered = result.urls_new

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _extraction_phase(self) -> None:
        cfg = self.config
        if self.interrupted:
            return

        urls = self.cache.get_unprocessed_urls(cfg.collection_key, limit=cfg.max_items)
        self.stats.items_found = len(urls)
        self.sessions.update_stats(self.session_id, self.stats.session_counters())

        if not urls:
            logger.info(f"No unprocessed URLs for {cfg.collection_key}")
            return

        logger.info(f"Extracting {len(urls)} items with the {cfg.strategy} strategy")
        self.reporter = ProgressReporter(total_items=len(urls))
        self.reporter.update_stats(**asdict(self.stats))
        self.reporter.start(cfg.progress_interval_ms)

        queue: asyncio.Queue = asyncio.Queue()
        for url in urls:
            queue.put_nowait(url)

        await self.item_fetcher.start()
        try:
            worker_count = max(1, min(self.item_fetcher.concurrency, len(urls)))
            workers = [asyncio.create_task(self._worker(queue)) for _ in range(worker_count)]
            try:
                await asyncio.gather(*workers)
            except BaseException:
                for task in workers:
                    task.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                raise
        finally:
            await self.item_fetcher.close()

        self.sessions.update_stats(self.session_id, self.stats.session_counters())

    async def _worker(self, queue: asyncio.Queue) -> None:
        while not self.interrupted:
            try:
                url = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            await self._process_item(url)

            if not queue.empty() and not self.interrupted:
                await self.item_fetcher.pace()

    async def _attempt(self, url: str) -> FetchOutcome:
        """One fetch + extract attempt for an item URL."""
        page = await self.item_fetcher.fetch_item(url)
        outcome = outcome_for_page(page)
        if outcome is not None:
            return outcome

        record = self.extraction.extract_record(page, url)
        if record is None:
            return FetchOutcome(
                status=FetchStatus.EXTRACTION_FAILED,
                http_status=page.http_status,
                page=page,
                error="no data extracted",
            )
        return FetchOutcome(status=FetchStatus.OK, http_status=page.http_status, page=page, record=record)

    async def _process_item(self, url: str) -> None:
        """Process one URL to a terminal outcome. Only PersistenceError escapes."""
        try:
            outcome = await self.retry.attempt(lambda: self._attempt(url), label=url)
            if outcome.is_success:
                await self._save(outcome.record)
                self.cache.mark_processed(url, True)
                logger.info(f"Saved item {outcome.record.id} ({outcome.attempts_used} attempts)")
            else:
                self._record_failure(url, self.retry.policy.error_kind(outcome), outcome.describe())
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error processing {url}: {e}")
            self._record_failure(url, ErrorKind.UNKNOWN, str(e) or type(e).__name__, traceback.format_exc())

        self.stats.items_processed += 1
        if self.reporter is not None:
            self.reporter.update_stats(**asdict(self.stats))
        if self.stats.items_processed % self.config.stats_flush_every == 0:
            self.sessions.update_stats(self.session_id, self.stats.session_counters())

    async def _save(self, record: StructuredRecord) -> None:
        if not record.collection_key:
            record.collection_key = self.config.collection_key

        is_new = self.db.find_by_id(record.id) is None
        self.db.upsert_record(record)
        await self._save_images(record)

        if is_new:
            self.stats.items_new += 1
        else:
            self.stats.items_updated += 1

    async def _save_images(self, record: StructuredRecord) -> None:
        # Image rows are replaced wholesale on re-crawl
        self.db.delete_images(record.id)
        if not record.image_urls:
            return

        if self.config.download_images and self.image_downloader is not None:
            result = await self.image_downloader.download_all(record.id, record.image_urls)
            self.stats.images_downloaded += result.downloaded
            self.stats.images_failed += result.failed
            rows = result.rows
        else:
            rows = [
                {"item_id": record.id, "image_url": url, "local_path": None, "position": position}
                for position, url in enumerate(record.image_urls)
            ]
        self.db.insert_images(rows)

    def _record_failure(
        self,
        url: str,
        kind: ErrorKind,
        message: str,
        stack: Optional[str] = None,
    ) -> None:
        logger.error(f"Item failed ({kind.value}): {url} - {message}")
        self.stats.items_failed += 1
        self.sessions.log_error(self.session_id, kind, message, stack=stack, url=url)
        self.cache.mark_processed(url, False, message)

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _finalize(self, summary: CrawlSummary, started: float) -> None:
        if self.reporter is not None:
            await self.reporter.stop()
            self.reporter = None

        summary.duration_seconds = self._clock() - started

        try:
            self.sessions.update_stats(self.session_id, self.stats.session_counters())
        except Exception as e:
            logger.error(f"Could not save counters for crawl session {self.session_id}: {e}")

        if summary.status == SessionStatus.FAILED:
            try:
                self.sessions.log_error(
                    self.session_id,
                    self._fatal_kind,
                    summary.error_message or "crawl failed",
                    stack=self._fatal_stack,
                )
            except Exception as e:
                logger.error(f"Could not record fatal error for crawl session {self.session_id}: {e}")

        try:
            if summary.status == SessionStatus.INTERRUPTED:
                self.sessions.interrupt_session(self.session_id, summary.error_message)
            else:
                self.sessions.complete_session(
                    self.session_id,
                    success=summary.status == SessionStatus.COMPLETED,
                    error_message=summary.error_message,
                )
        except Exception as e:
            logger.error(f"Could not close crawl session {self.session_id}: {e}")

        self.log_summary(summary)

    def log_summary(self, summary: CrawlSummary) -> None:
        s = summary.stats
        logger.info("=" * 60)
        logger.info(f"Crawl {summary.status.value.upper()}: {summary.collection_key} (session {summary.session_id})")
        if summary.discovery_skipped:
            logger.info("Discovery: skipped, cached URLs used")
        else:
            logger.info(
                f"Discovery: {summary.pages_crawled} pages from page {summary.start_page}, "
                f"{summary.urls_discovered} new URLs"
            )
        logger.info(
            f"Items: {s.items_processed}/{s.items_found} processed | {s.items_new} new | "
            f"{s.items_updated} updated | {s.items_failed} failed"
        )
        logger.info(f"Images: {s.images_downloaded} downloaded | {s.images_failed} failed")
        logger.info(f"Duration: {ProgressReporter.format_duration(summary.duration_seconds)}")
        if summary.error_message:
            logger.info(f"Reason: {summary.error_message}")
        logger.info("=" * 60)

