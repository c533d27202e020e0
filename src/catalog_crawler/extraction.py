"""
HTML extraction for listing and item pages.

The crawler core only depends on the ExtractionService protocol. The default
HtmlExtractionService parses the captured page HTML with BeautifulSoup using
an ExtractionSelectors table, which can be loaded from JSON when the target
layout changes.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from catalog_crawler.models import RawPage, StructuredRecord

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")


class ExtractionService(Protocol):
    """What the crawler needs from a page parser."""

    def extract_listing_urls(self, page: RawPage) -> List[str]:
        ...

    def extract_record(self, page: RawPage, url: str) -> Optional[StructuredRecord]:
        ...

    def extract_image_urls(self, page: RawPage) -> List[str]:
        ...


@dataclass
class ExtractionSelectors:
    """CSS selectors and patterns for one target layout.

    Each selector value may hold several comma separated alternatives;
    the first one that matches wins.
    """

    item_link: str = 'a[href*="/listings/"], a[href*="/bulletin/"]'
    item_id_pattern: str = r"/(?:listings|bulletin)/([^/?#]+)"
    text_fields: Dict[str, str] = field(default_factory=lambda: {
        "address": '[data-testid="address"], .property-address',
        "neighborhood": '[data-testid="neighborhood"], .neighborhood',
        "city": '[data-testid="city"], .city',
        "property_type": '[data-testid="property-type"], .property-type',
        "description": '[data-testid="description"], .property-description',
        "contact_name": '[data-testid="contact-name"], .contact-name',
        "contact_agency": '[data-testid="contact-agency"], .contact-agency',
    })
    number_fields: Dict[str, str] = field(default_factory=lambda: {
        "price": '[data-testid="price"], .property-price, .price-value',
        "rooms": '[data-testid="rooms"], .room-count',
        "size": '[data-testid="size"], .property-size',
        "floor": '[data-testid="floor"], .floor-number',
        "total_floors": '[data-testid="total-floors"], .total-floors',
    })
    flag_fields: Dict[str, str] = field(default_factory=lambda: {
        "has_parking": '[data-amenity="parking"]',
        "has_elevator": '[data-amenity="elevator"]',
        "has_balcony": '[data-amenity="balcony"]',
        "has_shelter": '[data-amenity="shelter"]',
    })
    images: str = '[data-testid="gallery"] img, .gallery img, .property-images img'

    @classmethod
    def from_file(cls, path: str) -> "ExtractionSelectors":
        """Load selectors from JSON; missing keys keep the defaults."""
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)


def _select_first(soup: BeautifulSoup, selector: str):
    for alternative in selector.split(","):
        alternative = alternative.strip()
        if not alternative:
            continue
        element = soup.select_one(alternative)
        if element is not None:
            return element
    return None


def parse_number(text: Optional[str]) -> Optional[float]:
    """First number in ``text`` with thousands separators removed."""
    if not text:
        return None
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    # Commas are thousands separators ("1,250,000"), as are repeated dots ("1.250.000")
    raw = match.group(0).replace(",", "")
    if raw.count(".") > 1:
        raw = raw.replace(".", "")
    value = float(raw)
    return int(value) if value.is_integer() else value


class HtmlExtractionService:
    """
    Default ExtractionService over captured page HTML.

    Args:
        selectors: Selector table, defaults to ExtractionSelectors()
        collection_key: Stamped on every extracted record
    """

    def __init__(self, selectors: Optional[ExtractionSelectors] = None, collection_key: str = ""):
        self.selectors = selectors or ExtractionSelectors()
        self.collection_key = collection_key
        self._id_re = re.compile(self.selectors.item_id_pattern)

    def item_id(self, url: str) -> Optional[str]:
        """Item id parsed from the URL path, or None."""
        match = self._id_re.search(urlparse(url).path)
        return match.group(1) if match else None

    def extract_listing_urls(self, page: RawPage) -> List[str]:
        """Absolute, de-duplicated item URLs from a listing page, in page order."""
        soup = BeautifulSoup(page.content, "html.parser")
        base = page.final_url or page.url
        urls: List[str] = []
        seen = set()

        for alternative in self.selectors.item_link.split(","):
            for link in soup.select(alternative.strip()):
                href = link.get("href")
                if not href:
                    continue
                absolute = urljoin(base, href).split("#")[0]
                if self.item_id(absolute) and absolute not in seen:
                    seen.add(absolute)
                    urls.append(absolute)

        logger.debug(f"Found {len(urls)} item links on {page.url}")
        return urls

    def extract_record(self, page: RawPage, url: str) -> Optional[StructuredRecord]:
        """
        Structured record for an item page.

        Returns:
            StructuredRecord, or None when the URL carries no item id
            or none of the configured fields are present
        """
        item_id = self.item_id(url)
        if item_id is None:
            logger.error(f"Could not extract item ID from URL: {url}")
            return None

        soup = BeautifulSoup(page.content, "html.parser")
        data: Dict[str, object] = {}

        for name, selector in self.selectors.text_fields.items():
            element = _select_first(soup, selector)
            if element is not None:
                text = element.get_text(" ", strip=True)
                if text:
                    data[name] = text

        for name, selector in self.selectors.number_fields.items():
            element = _select_first(soup, selector)
            if element is not None:
                value = parse_number(element.get_text(" ", strip=True))
                if value is not None:
                    data[name] = value

        found_any = bool(data)
        for name, selector in self.selectors.flag_fields.items():
            data[name] = _select_first(soup, selector) is not None

        if not found_any:
            logger.warning(f"No item fields found on {url}")
            return None

        title = soup.title.get_text(strip=True) if soup.title else None
        if title:
            data.setdefault("title", title)

        return StructuredRecord(
            id=item_id,
            url=url,
            collection_key=self.collection_key,
            data=data,
            image_urls=self.extract_image_urls(page),
        )

    def extract_image_urls(self, page: RawPage) -> List[str]:
        """Absolute gallery image URLs in page order."""
        soup = BeautifulSoup(page.content, "html.parser")
        base = page.final_url or page.url
        urls: List[str] = []

        for alternative in self.selectors.images.split(","):
            for img in soup.select(alternative.strip()):
                src = img.get("src") or img.get("data-src")
                if not src or src.startswith("data:"):
                    continue
                absolute = urljoin(base, src)
                if absolute not in urls:
                    urls.append(absolute)

        return urls
