"""
Fetch strategies.

Two interchangeable implementations of the ItemFetcher interface, selected
once per run:

- PooledSessionFetcher: long-lived contexts from a BrowserPool, gated by a
  concurrency ceiling and a requests-per-minute token bucket; contexts are
  recycled after a fixed number of uses
- IsolatedSessionFetcher: a brand-new browser per item, human-like scroll
  and dwell, full teardown, and a long randomized delay between items

Both run the per-page part of the item state machine on the live page
(navigate, status check, render wait, detect, mitigate, re-detect) through a
shared PageInspector and return a RawPage snapshot. Navigation failures are
raised as TransportError.
"""

import asyncio
import logging
from typing import Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from catalog_crawler.browser_config import BrowserSettings
from catalog_crawler.errors import BrowserPoolError, TransportError
from catalog_crawler.infrastructure.browser_pool import BrowserPool
from catalog_crawler.infrastructure.rate_limiter import TokenBucketLimiter
from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer
from catalog_crawler.models import PageVerdict, RawPage
from catalog_crawler.utils.challenge_handler import ChallengeDetector, get_challenge_instructions
from catalog_crawler.utils.human_simulator import HumanSimulator
from catalog_crawler.utils.mitigation import ChallengeMitigator

logger = logging.getLogger(__name__)

# Status codes after which a pooled session is considered burned
BURNED_SESSION_CODES = (403, 429)


class ItemFetcher(Protocol):
    """Common interface of the fetch strategies."""

    concurrency: int

    async def start(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def fetch_item(self, url: str) -> RawPage:
        """Fetch one URL. Raises TransportError when navigation fails."""
        ...

    async def pace(self) -> float:
        """Sleep the strategy's delay before the next item."""
        ...


class PageInspector:
    """
    Turns a navigated live page into a RawPage.

    Args:
        detector: Challenge detector
        mitigator: Challenge mitigator, None to skip mitigation
        browser_settings: Render wait settings
    """

    def __init__(
        self,
        detector: ChallengeDetector,
        mitigator: Optional[ChallengeMitigator] = None,
        browser_settings: Optional[BrowserSettings] = None,
    ):
        self.detector = detector
        self.mitigator = mitigator
        self.settings = browser_settings or BrowserSettings()

    async def navigate(self, page, url: str):
        """Navigate and return the response (None for same-document navigations)."""
        return await page.goto(url, wait_until=self.settings.wait_until, timeout=self.settings.timeout)

    async def wait_for_render(self, page) -> bool:
        """Wait until client-side content has rendered. Returns False on timeout."""
        if self.settings.render_timeout <= 0:
            return True
        try:
            await page.wait_for_function(
                "(min) => !!document.body && document.body.innerText.length > min",
                arg=self.settings.min_content_length,
                timeout=self.settings.render_timeout,
            )
            return True
        except PlaywrightTimeoutError:
            logger.debug(f"Content did not finish rendering: {page.url}")
            return False

    async def inspect(self, page, response, url: str, simulator: Optional[HumanSimulator] = None,
                      dwell_seconds: float = 0.0) -> RawPage:
        """
        Run status check, render wait, interaction, detection and mitigation.

        Args:
            page: Live page after navigation
            response: Navigation response
            url: Requested URL
            simulator: Human simulator for scroll and dwell, None to skip
            dwell_seconds: Time to stay on the page

        Returns:
            RawPage snapshot
        """
        status = response.status if response is not None else None
        if status is not None and not 200 <= status < 300:
            logger.warning(f"HTTP {status} for {url}")
            return RawPage(url=url, http_status=status, final_url=page.url)

        await self.wait_for_render(page)
        if simulator is not None:
            await simulator.browse_page(page, dwell_seconds)

        verdict = await self.detector.detect(page)
        mitigation = None
        if verdict == PageVerdict.CHALLENGED and self.mitigator is not None:
            mitigation = await self.mitigator.mitigate(page)
            verdict = await self.detector.detect(page)
        if verdict != PageVerdict.CLEAN:
            logger.warning(f"{url} is {verdict.value}. {get_challenge_instructions(verdict)}")

        return RawPage(
            url=url,
            http_status=status,
            content=await page.content(),
            final_url=page.url,
            verdict=verdict,
            mitigation=mitigation,
        )


class IsolatedSessionFetcher:
    """
    One fresh browser per item.

    Args:
        inspector: Page inspector
        browser_settings: Launch and context settings
        pacer: Pacer for the inter-item delay
        item_delay: Range of the delay between items
        simulator: Human simulator for scroll and dwell
        dwell_seconds: Time to stay on each page
    """

    concurrency = 1

    def __init__(
        self,
        inspector: PageInspector,
        browser_settings: Optional[BrowserSettings] = None,
        pacer: Optional[Pacer] = None,
        item_delay: DelayRange = DelayRange(60.0, 120.0),
        simulator: Optional[HumanSimulator] = None,
        dwell_seconds: float = 8.0,
    ):
        self.inspector = inspector
        self.settings = browser_settings or inspector.settings
        self.pacer = pacer or Pacer()
        self.item_delay = item_delay
        self.simulator = simulator
        self.dwell_seconds = dwell_seconds
        self._playwright = None
        self.items_fetched = 0

    async def start(self) -> None:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            logger.info("Isolated-session fetcher ready (fresh browser per item)")

    async def close(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

    async def fetch_item(self, url: str) -> RawPage:
        if self._playwright is None:
            raise RuntimeError("Fetcher not started. Call start() first.")

        browser = None
        context = None
        try:
            browser = await self._playwright.chromium.launch(**self.settings.launch_options())
            context = await browser.new_context(**self.settings.context_options())
            context.set_default_timeout(self.settings.timeout)
            page = await context.new_page()

            logger.info(f"Navigating to {url}")
            response = await self.inspector.navigate(page, url)
            raw = await self.inspector.inspect(
                page, response, url, simulator=self.simulator, dwell_seconds=self.dwell_seconds,
            )
            self.items_fetched += 1
            return raw
        except PlaywrightError as e:
            raise TransportError(url, f"Navigation failed: {e}") from e
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.warning(f"Error closing context: {e}")
            if browser is not None:
                try:
                    await browser.close()
                except Exception as e:
                    logger.warning(f"Error closing browser: {e}")

    async def pace(self) -> float:
        return await self.pacer.wait(self.item_delay, "isolated inter-item delay")


class PooledSessionFetcher:
    """
    Shared contexts with concurrency and request-rate ceilings.

    Args:
        inspector: Page inspector
        pool: Browser pool of long-lived contexts
        limiter: Requests-per-minute token bucket
        max_concurrency: Maximum fetches in flight
        pacer: Pacer for the per-request delay
        request_delay: Range of the delay after each item
    """

    def __init__(
        self,
        inspector: PageInspector,
        pool: BrowserPool,
        limiter: TokenBucketLimiter,
        max_concurrency: int = 3,
        pacer: Optional[Pacer] = None,
        request_delay: DelayRange = DelayRange(2.0, 5.0),
    ):
        self.inspector = inspector
        self.pool = pool
        self.limiter = limiter
        self.concurrency = max_concurrency
        self.pacer = pacer or Pacer()
        self.request_delay = request_delay
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.items_fetched = 0

    async def start(self) -> None:
        await self.pool.start()
        logger.info(
            f"Pooled-session fetcher ready ({self.pool.max_size} sessions, "
            f"{self.concurrency} concurrent, {self.limiter.rate * 60:.0f} req/min)"
        )

    async def close(self) -> None:
        status = self.pool.get_status()
        logger.info(
            f"Pooled-session fetcher done: {self.items_fetched} items, "
            f"{status.leases} leases, {status.replaced} sessions replaced"
        )
        await self.pool.stop()

    async def fetch_item(self, url: str) -> RawPage:
        async with self._semaphore:
            await self.limiter.acquire()
            try:
                async with self.pool.acquire() as lease:
                    logger.info(f"Navigating to {url} (session {lease.session_id})")
                    response = await self.inspector.navigate(lease.page, url)
                    raw = await self.inspector.inspect(lease.page, response, url)
                    if raw.verdict != PageVerdict.CLEAN or raw.http_status in BURNED_SESSION_CODES:
                        lease.retire()
                    self.items_fetched += 1
                    return raw
            except PlaywrightError as e:
                raise TransportError(url, f"Navigation failed: {e}") from e
            except BrowserPoolError as e:
                raise TransportError(url, str(e)) from e

    async def pace(self) -> float:
        return await self.pacer.wait(self.request_delay)


def create_fetcher(
    config,
    detector: ChallengeDetector,
    mitigator: Optional[ChallengeMitigator] = None,
    pacer: Optional[Pacer] = None,
    simulator: Optional[HumanSimulator] = None,
    browser_settings: Optional[BrowserSettings] = None,
) -> ItemFetcher:
    """
    Build the item fetcher selected by ``config.strategy``.

    Args:
        config: CrawlerConfig
        detector: Challenge detector
        mitigator: Challenge mitigator
        pacer: Shared pacer (carries the jitter source)
        simulator: Human simulator used by the isolated strategy
        browser_settings: Overrides ``config.browser_settings()``

    Returns:
        IsolatedSessionFetcher or PooledSessionFetcher
    """
    settings = browser_settings or config.browser_settings()
    pacer = pacer or Pacer()
    inspector = PageInspector(detector, mitigator, settings)

    if config.strategy == "pooled":
        pool = BrowserPool(
            max_size=config.pool_size,
            max_uses=config.session_max_uses,
            browser_settings=settings,
        )
        limiter = TokenBucketLimiter.per_minute(config.max_requests_per_minute)
        return PooledSessionFetcher(
            inspector,
            pool,
            limiter,
            max_concurrency=config.max_concurrency,
            pacer=pacer,
            request_delay=DelayRange(config.request_delay_min, config.request_delay_max),
        )

    if config.strategy == "isolated":
        return IsolatedSessionFetcher(
            inspector,
            browser_settings=settings,
            pacer=pacer,
            item_delay=DelayRange(config.item_delay_min, config.item_delay_max),
            simulator=simulator,
            dwell_seconds=config.dwell_seconds,
        )

    raise ValueError(f"Unknown fetch strategy: {config.strategy}")
