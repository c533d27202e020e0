"""
Discovery phase: walk paginated listing pages and cache item URLs.

Pages are fetched strictly one at a time in increasing order. Each listing
fetch goes through the retry controller; pagination stops at the page
budget, at the first page without item links, or at the first page that
stays blocked after retries.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from catalog_crawler.discovery_cache import DiscoveryCache
from catalog_crawler.errors import DiscoveryBlockedError
from catalog_crawler.extraction import ExtractionService
from catalog_crawler.infrastructure.fetchers import ItemFetcher
from catalog_crawler.infrastructure.retry import RetryController, outcome_for_page
from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer
from catalog_crawler.models import FetchOutcome, FetchStatus

logger = logging.getLogger(__name__)


def listing_page_url(base_url: str, page_number: int) -> str:
    """URL of a listing page: the base URL for page 1, else with ``page=N``."""
    if page_number <= 1:
        return base_url
    parts = urlparse(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page_number)))
    return urlunparse(parts._replace(query=urlencode(query)))


@dataclass
class DiscoveryResult:
    """What one discovery run did."""
    start_page: int
    pages_crawled: int = 0
    last_page: int = 0
    urls_found: int = 0
    urls_new: int = 0
    stopped_reason: str = "page budget reached"
    low_yield: bool = False


class DiscoveryRunner:
    """
    Sequential listing-page crawler feeding the discovery cache.

    Args:
        fetcher: Fetcher used for listing pages
        extraction: Extracts item links from a listing page
        cache: Discovery cache
        retry: Retry controller wrapping each page fetch
        pacer: Pacer for the delay between pages
        page_delay: Range of that delay
        items_per_page: Expected item links per full page
        warning_ratio: Warn when fewer than this share of the expected links were found
        max_retries: Retry budget per listing page
    """

    def __init__(
        self,
        fetcher: ItemFetcher,
        extraction: ExtractionService,
        cache: DiscoveryCache,
        retry: RetryController,
        pacer: Optional[Pacer] = None,
        page_delay: DelayRange = DelayRange(20.0, 40.0),
        items_per_page: int = 34,
        warning_ratio: float = 0.8,
        max_retries: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.extraction = extraction
        self.cache = cache
        self.retry = retry
        self.pacer = pacer or Pacer()
        self.page_delay = page_delay
        self.items_per_page = items_per_page
        self.warning_ratio = warning_ratio
        self.max_retries = max_retries

    async def _fetch_listing(self, url: str) -> FetchOutcome:
        page = await self.fetcher.fetch_item(url)
        outcome = outcome_for_page(page)
        if outcome is not None:
            return outcome
        return FetchOutcome(status=FetchStatus.OK, http_status=page.http_status, page=page)

    async def discover_page(self, base_url: str, page_number: int) -> list[str]:
        """
        Fetch one listing page and return its item URLs.

        Raises:
            DiscoveryBlockedError: The page failed after all retries
        """
        url = listing_page_url(base_url, page_number)
        logger.info(f"Listing page {page_number}: {url}")

        outcome = await self.retry.attempt(
            lambda: self._fetch_listing(url),
            max_retries=self.max_retries,
            label=url,
        )
        if not outcome.is_success:
            raise DiscoveryBlockedError(page_number, outcome.describe())

        return self.extraction.extract_listing_urls(outcome.page)

    async def run(
        self,
        base_url: str,
        collection_key: str,
        start_page: int,
        max_pages: int,
        should_stop: Callable[[], bool] = lambda: False,
    ) -> DiscoveryResult:
        """
        Discover pages ``start_page`` through ``max_pages``.

        Args:
            base_url: First listing page URL
            collection_key: Key the URLs are cached under
            start_page: First page to fetch
            max_pages: Last page to fetch
            should_stop: Checked before each page (interruption)

        Returns:
            DiscoveryResult
        """
        result = DiscoveryResult(start_page=start_page)
        logger.info(f"Discovery for {collection_key}: pages {start_page}-{max_pages}")

        await self.fetcher.start()
        try:
            for page_number in range(start_page, max_pages + 1):
                if should_stop():
                    result.stopped_reason = "interrupted"
                    break

                try:
                    urls = await self.discover_page(base_url, page_number)
                except DiscoveryBlockedError as e:
                    logger.warning(f"Stopping discovery: {e}")
                    result.stopped_reason = "blocked"
                    break

                if not urls:
                    logger.info(f"No item links on page {page_number}, end of listing")
                    result.stopped_reason = "no more pages"
                    break

                inserted = self.cache.save_batch(urls, page_number, collection_key)
                result.pages_crawled += 1
                result.last_page = page_number
                result.urls_found += len(urls)
                result.urls_new += inserted
                logger.info(
                    f"Page {page_number}: {len(urls)} URLs ({inserted} new, "
                    f"{len(urls) - inserted} already cached)"
                )

                if page_number < max_pages and not should_stop():
                    await self.pacer.wait(self.page_delay, "listing page delay")
        finally:
            await self.fetcher.close()

        self._validate(result)
        logger.info(
            f"Discovery finished ({result.stopped_reason}): {result.pages_crawled} pages, "
            f"{result.urls_found} URLs, {result.urls_new} new"
        )
        return result

    def _validate(self, result: DiscoveryResult) -> None:
        """Warn when far fewer URLs were found than full pages would hold."""
        if result.pages_crawled == 0:
            return
        expected = result.pages_crawled * self.items_per_page
        if result.urls_found < self.warning_ratio * expected:
            result.low_yield = True
            logger.warning(
                f"Low discovery yield: {result.urls_found} URLs from {result.pages_crawled} pages, "
                f"expected about {expected}. The site may be blocking listing pages."
            )
