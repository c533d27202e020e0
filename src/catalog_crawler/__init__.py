"""Two-phase catalog crawler: listing discovery, then item extraction."""

__version__ = "0.1.0"

from catalog_crawler.config import CrawlerConfig, settings
from catalog_crawler.database import AbstractDatabase, LocalSqliteDatabase, get_db_client
from catalog_crawler.discovery import DiscoveryRunner, DiscoveryResult
from catalog_crawler.discovery_cache import DiscoveryCache
from catalog_crawler.errors import (
    CrawlerError,
    ConfigError,
    PersistenceError,
    TransportError,
    DiscoveryBlockedError,
    ErrorKind,
)
from catalog_crawler.models import (
    PageVerdict,
    MitigationResult,
    FetchStatus,
    SessionStatus,
    DiscoveredUrl,
    CacheStats,
    CrawlSession,
    CrawlErrorRecord,
    RawPage,
    StructuredRecord,
    FetchOutcome,
    CrawlStats,
    CrawlSummary,
)
from catalog_crawler.orchestrator import CrawlOrchestrator, compute_resume_page
from catalog_crawler.session_repository import CrawlSessionRepository

__all__ = [
    "CrawlerConfig",
    "settings",
    "AbstractDatabase",
    "LocalSqliteDatabase",
    "get_db_client",
    "DiscoveryRunner",
    "DiscoveryResult",
    "DiscoveryCache",
    "CrawlerError",
    "ConfigError",
    "PersistenceError",
    "TransportError",
    "DiscoveryBlockedError",
    "ErrorKind",
    "PageVerdict",
    "MitigationResult",
    "FetchStatus",
    "SessionStatus",
    "DiscoveredUrl",
    "CacheStats",
    "CrawlSession",
    "CrawlErrorRecord",
    "RawPage",
    "StructuredRecord",
    "FetchOutcome",
    "CrawlStats",
    "CrawlSummary",
    "CrawlOrchestrator",
    "compute_resume_page",
    "CrawlSessionRepository",
]
