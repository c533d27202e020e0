"""
Item image downloads.

Images are fetched with httpx, retried with a linear delay, and written under
``<images_dir>/<item_id>/``. A failed image is counted, never raised: image
problems do not fail the item.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from catalog_crawler.browser_config import USER_AGENTS
from catalog_crawler.config import settings

logger = logging.getLogger(__name__)


@dataclass
class ImageDownloadStats:
    """Outcome of downloading one item's images."""
    downloaded: int = 0
    failed: int = 0
    rows: List[Dict[str, Any]] = field(default_factory=list)  # Ready for insert_images


def get_image_extension(url: str, content_type: Optional[str] = None) -> str:
    """File extension from the content type, else the URL, else 'jpg'."""
    if content_type:
        match = re.search(r"image/(\w+)", content_type)
        if match:
            kind = match.group(1).lower()
            return "jpg" if kind == "jpeg" else kind

    match = re.search(r"\.(\w+)(?:\?|$)", url)
    if match:
        ext = match.group(1).lower()
        if ext in ("jpg", "jpeg", "png", "webp", "gif"):
            return "jpg" if ext == "jpeg" else ext

    return "jpg"


class ImageDownloader:
    """
    Downloads item images to disk.

    Args:
        images_dir: Root directory, defaults to settings.IMAGES_DIR
        max_retries: Tries per image
        retry_delay: Seconds added per failed try (linear)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
        sleep: Async sleep function
    """

    def __init__(
        self,
        images_dir: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.images_dir = Path(images_dir or settings.IMAGES_DIR)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.transport = transport
        self._sleep = sleep

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.get(url)
                response.raise_for_status()
                content_type = response.headers.get("content-type", "")
                if not content_type.startswith("image/"):
                    raise ValueError(f"Invalid content type: {content_type}")
                if not response.content:
                    raise ValueError("Downloaded image is empty")
                return response
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Image download attempt {attempt} failed: {e}")
                if attempt < self.max_retries:
                    await self._sleep(self.retry_delay * attempt)

        raise last_error

    async def download_all(self, item_id: str, urls: List[str]) -> ImageDownloadStats:
        """
        Download every image of an item.

        Returns:
            ImageDownloadStats with one row per successful download
        """
        stats = ImageDownloadStats()
        if not urls:
            return stats

        item_dir = self.images_dir / item_id
        item_dir.mkdir(parents=True, exist_ok=True)

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENTS[0]},
            transport=self.transport,
        ) as client:
            for position, url in enumerate(urls):
                try:
                    response = await self._fetch(client, url)
                except (httpx.HTTPError, ValueError) as e:
                    stats.failed += 1
                    logger.error(f"Image download failed after {self.max_retries} attempts: {url} - {e}")
                    continue

                ext = get_image_extension(url, response.headers.get("content-type"))
                path = item_dir / f"{position:02d}.{ext}"
                path.write_bytes(response.content)

                stats.downloaded += 1
                stats.rows.append({
                    "item_id": item_id,
                    "image_url": url,
                    "local_path": str(path),
                    "position": position,
                })

        logger.info(f"Images for {item_id}: {stats.downloaded} downloaded, {stats.failed} failed")
        return stats
