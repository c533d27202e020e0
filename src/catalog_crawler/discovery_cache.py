"""
Persistent cache of discovered item URLs.

Rows are scoped by collection key and remember the listing page they were
found on, so a restarted crawl can skip discovery and continue extraction
from where the previous run stopped.

Features:
- Idempotent batch saves (duplicate URLs are no-ops)
- Unprocessed URLs in (page, insertion) order
- Per-key aggregates used to compute resume points
- Explicit clear paths for one key or the whole cache
"""

import logging
from typing import Iterable, List, Optional

from catalog_crawler.database import AbstractDatabase, now_iso
from catalog_crawler.models import CacheStats, DiscoveredUrl

logger = logging.getLogger(__name__)


class DiscoveryCache:
    """Discovery-phase URL store backed by the ``url_cache`` table."""

    def __init__(self, db: AbstractDatabase):
        """
        Args:
            db: Connected database handle
        """
        self.db = db

    def save_batch(self, urls: Iterable[str], page_number: int, collection_key: str) -> int:
        """Save URLs found on one listing page.

        Args:
            urls: Item URLs in page order
            page_number: 1-based listing page number
            collection_key: Collection the page belongs to

        Returns:
            Number of URLs that were not already cached
        """
        unique = list(dict.fromkeys(u for u in urls if u))
        if not unique:
            return 0

        timestamp = now_iso()
        inserted = self.db.executemany(
            """
            INSERT OR IGNORE INTO url_cache (url, collection_key, page_number, discovered_at)
            VALUES (?, ?, ?, ?)
            """,
            ((url, collection_key, page_number, timestamp) for url in unique),
        )
        logger.debug(
            f"Cached {inserted}/{len(unique)} new URLs from page {page_number} ({collection_key})"
        )
        return inserted

    def get_unprocessed_urls(self, collection_key: str, limit: Optional[int] = None) -> List[str]:
        """URLs not yet processed, ordered by page then insertion."""
        sql = """
            SELECT url FROM url_cache
            WHERE collection_key = ? AND processed = 0
            ORDER BY page_number, id
        """
        params: list = [collection_key]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [row["url"] for row in self.db.query(sql, params)]

    def get_all_urls(self, collection_key: str) -> List[DiscoveredUrl]:
        rows = self.db.query(
            "SELECT * FROM url_cache WHERE collection_key = ? ORDER BY page_number, id",
            (collection_key,),
        )
        return [DiscoveredUrl.from_row(row) for row in rows]

    def get_urls_by_page(self, collection_key: str, page_number: int) -> List[str]:
        rows = self.db.query(
            "SELECT url FROM url_cache WHERE collection_key = ? AND page_number = ? ORDER BY id",
            (collection_key, page_number),
        )
        return [row["url"] for row in rows]

    def get_stats(self, collection_key: str) -> CacheStats:
        rows = self.db.query(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(processed), 0) AS processed,
                COALESCE(SUM(CASE WHEN crawl_successful = 1 THEN 1 ELSE 0 END), 0) AS successful,
                COALESCE(SUM(CASE WHEN crawl_successful = 0 THEN 1 ELSE 0 END), 0) AS failed,
                COALESCE(MAX(page_number), 0) AS last_page
            FROM url_cache
            WHERE collection_key = ?
            """,
            (collection_key,),
        )
        row = rows[0]
        return CacheStats(
            total=row["total"],
            processed=row["processed"],
            successful=row["successful"],
            failed=row["failed"],
            last_page=row["last_page"],
        )

    def get_last_page(self, collection_key: str) -> int:
        """Highest listing page number cached for the key, 0 when empty."""
        return self.get_stats(collection_key).last_page

    def mark_processed(self, url: str, success: bool, error_note: Optional[str] = None) -> bool:
        """Record the terminal outcome of a URL.

        Only an unprocessed row is updated, so the processed flag
        flips at most once.

        Returns:
            True if the row was updated
        """
        cursor = self.db.execute(
            """
            UPDATE url_cache
            SET processed = 1, processed_at = ?, crawl_successful = ?, error_message = ?
            WHERE url = ? AND processed = 0
            """,
            (now_iso(), 1 if success else 0, None if success else error_note, url),
        )
        if cursor.rowcount == 0:
            logger.warning(f"mark_processed had no effect (unknown or already processed): {url}")
            return False
        return True

    def is_discovery_complete(self, collection_key: str, target_page_count: int) -> bool:
        """True when the cache already holds the configured number of pages."""
        return self.get_last_page(collection_key) >= target_page_count

    def clear(self, collection_key: str) -> int:
        """Delete all cached URLs of one key. Returns rows removed."""
        cursor = self.db.execute("DELETE FROM url_cache WHERE collection_key = ?", (collection_key,))
        logger.info(f"Cleared {cursor.rowcount} cached URLs for {collection_key}")
        return cursor.rowcount

    def clear_all(self) -> int:
        """Delete the whole cache. Returns rows removed."""
        cursor = self.db.execute("DELETE FROM url_cache")
        logger.info(f"Cleared {cursor.rowcount} cached URLs")
        return cursor.rowcount
