"""Data models for the catalog crawler."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PageVerdict(str, Enum):
    """Classification of a fetched page."""
    CLEAN = "clean"
    CHALLENGED = "challenged"
    RATE_LIMITED = "rate_limited"


class MitigationResult(str, Enum):
    """Result of a challenge mitigation attempt."""
    SOLVED = "solved"
    UNSOLVED = "unsolved"


class FetchStatus(str, Enum):
    """Status of a single fetch attempt or attempt sequence."""
    OK = "ok"
    RATE_LIMITED = "rate_limited"  # soft block
    CHALLENGED = "challenged"
    HTTP_ERROR = "http_error"
    EXTRACTION_FAILED = "extraction_failed"
    TRANSPORT_ERROR = "transport_error"


class SessionStatus(str, Enum):
    """Lifecycle status of a crawl session."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class DiscoveredUrl:
    """An item URL found on a listing page."""

    url: str
    collection_key: str
    page_number: int
    discovered_at: Optional[datetime] = None
    processed: bool = False
    crawl_successful: Optional[bool] = None  # None until processed
    error_message: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "DiscoveredUrl":
        successful = row["crawl_successful"]
        return cls(
            id=row["id"],
            url=row["url"],
            collection_key=row["collection_key"],
            page_number=row["page_number"],
            discovered_at=_parse_ts(row["discovered_at"]),
            processed=bool(row["processed"]),
            crawl_successful=None if successful is None else bool(successful),
            error_message=row["error_message"],
        )


@dataclass
class CacheStats:
    """Aggregate discovery cache counts for one collection key."""

    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    last_page: int = 0

    @property
    def unprocessed(self) -> int:
        return self.total - self.processed


@dataclass
class CrawlSession:
    """One orchestrator run."""

    id: int
    collection_key: str
    max_items: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    items_found: int = 0
    items_new: int = 0
    items_updated: int = 0
    items_failed: int = 0
    images_downloaded: int = 0
    images_failed: int = 0
    status: SessionStatus = SessionStatus.RUNNING
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "CrawlSession":
        return cls(
            id=row["id"],
            collection_key=row["collection_key"],
            max_items=row["max_items"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            items_found=row["items_found"],
            items_new=row["items_new"],
            items_updated=row["items_updated"],
            items_failed=row["items_failed"],
            images_downloaded=row["images_downloaded"],
            images_failed=row["images_failed"],
            status=SessionStatus(row["status"]),
            error_message=row["error_message"],
        )


@dataclass
class CrawlErrorRecord:
    """Append-only audit entry for a failure during a crawl."""

    session_id: int
    error_type: str
    message: str
    stack: Optional[str] = None
    url: Optional[str] = None
    occurred_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "CrawlErrorRecord":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            error_type=row["error_type"],
            message=row["error_message"],
            stack=row["error_stack"],
            url=row["url"],
            occurred_at=_parse_ts(row["occurred_at"]),
        )


@dataclass
class RawPage:
    """Snapshot of a fetched page, taken while the browser was still live.

    ``verdict`` is the detector result after any mitigation ran;
    ``mitigation`` is None when the page was never challenged.
    """

    url: str
    http_status: Optional[int]
    content: str = ""
    final_url: Optional[str] = None
    verdict: PageVerdict = PageVerdict.CLEAN
    mitigation: Optional[MitigationResult] = None

    @property
    def is_success_status(self) -> bool:
        # Some navigations (client-side routing) report no response at all
        return self.http_status is None or 200 <= self.http_status < 300


@dataclass
class StructuredRecord:
    """Structured data extracted from an item page."""

    id: str
    url: str
    collection_key: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    image_urls: list[str] = field(default_factory=list)


@dataclass
class FetchOutcome:
    """Result passed between the retry controller and the orchestrator."""

    status: FetchStatus
    attempts_used: int = 1
    http_status: Optional[int] = None
    error: Optional[str] = None
    record: Optional[StructuredRecord] = None
    page: Optional[RawPage] = None
    mitigation: Optional[MitigationResult] = None

    @property
    def is_success(self) -> bool:
        return self.status == FetchStatus.OK

    def describe(self) -> str:
        """Short human-readable description for logs and error records."""
        if self.status == FetchStatus.HTTP_ERROR:
            return f"HTTP {self.http_status}"
        if self.error:
            return f"{self.status.value}: {self.error}"
        return self.status.value


@dataclass
class CrawlStats:
    """Live counters for a crawl run."""

    items_found: int = 0
    items_processed: int = 0
    items_new: int = 0
    items_updated: int = 0
    items_failed: int = 0
    images_downloaded: int = 0
    images_failed: int = 0

    def session_counters(self) -> Dict[str, int]:
        """Counters in the shape stored on the crawl session row."""
        return {
            "items_found": self.items_found,
            "items_new": self.items_new,
            "items_updated": self.items_updated,
            "items_failed": self.items_failed,
            "images_downloaded": self.images_downloaded,
            "images_failed": self.images_failed,
        }


@dataclass
class CrawlSummary:
    """Final result of an orchestrator run."""

    session_id: Optional[int]
    collection_key: str
    status: SessionStatus
    stats: CrawlStats = field(default_factory=CrawlStats)
    start_page: int = 1
    discovery_skipped: bool = False
    urls_discovered: int = 0
    pages_crawled: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _parse_ts(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
