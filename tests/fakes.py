"""Test doubles shared by the crawler tests."""

from collections import defaultdict
from typing import Dict, List, Optional

from catalog_crawler.models import RawPage, StructuredRecord


class SleepRecorder:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeFetcher:
    """
    Scripted ItemFetcher.

    ``script`` maps a URL to a list of RawPage objects or exceptions returned
    on successive calls; the last entry repeats. Unscripted URLs return a
    clean 200 page.
    """

    def __init__(self, script: Optional[Dict[str, list]] = None, concurrency: int = 1, on_fetch=None):
        self.script = script or {}
        self.concurrency = concurrency
        self.on_fetch = on_fetch
        self.calls: List[str] = []
        self.call_counts: Dict[str, int] = defaultdict(int)
        self.started = 0
        self.closed = 0
        self.paced = 0

    async def start(self) -> None:
        self.started += 1

    async def close(self) -> None:
        self.closed += 1

    async def fetch_item(self, url: str) -> RawPage:
        self.calls.append(url)
        index = self.call_counts[url]
        self.call_counts[url] += 1
        if self.on_fetch is not None:
            self.on_fetch(url)

        steps = self.script.get(url)
        if not steps:
            return RawPage(url=url, http_status=200, content=f"<html>{url}</html>", final_url=url)
        step = steps[min(index, len(steps) - 1)]
        if isinstance(step, Exception):
            raise step
        return step

    async def pace(self) -> float:
        self.paced += 1
        return 0.0


class FakeExtraction:
    """
    ExtractionService double.

    Listing pages return ``listings[page.url]``. Item pages yield a record
    whose id is the last path segment, unless the URL is in ``fail_urls``.
    """

    def __init__(self, listings: Optional[Dict[str, List[str]]] = None,
                 fail_urls=(), images: Optional[Dict[str, List[str]]] = None):
        self.listings = listings or {}
        self.fail_urls = set(fail_urls)
        self.images = images or {}

    def extract_listing_urls(self, page: RawPage) -> List[str]:
        return list(self.listings.get(page.url, []))

    def extract_record(self, page: RawPage, url: str) -> Optional[StructuredRecord]:
        if url in self.fail_urls:
            return None
        item_id = url.rstrip("/").rsplit("/", 1)[-1]
        return StructuredRecord(
            id=item_id,
            url=url,
            data={"title": f"Item {item_id}"},
            image_urls=list(self.images.get(url, [])),
        )

    def extract_image_urls(self, page: RawPage) -> List[str]:
        return list(self.images.get(page.url, []))


def item_urls(count: int, start: int = 1) -> List[str]:
    return [f"https://catalog.test/listings/item-{n}" for n in range(start, start + count)]

