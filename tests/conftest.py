"""Shared fixtures for the crawler tests."""

import pytest

from catalog_crawler.config import CrawlerConfig
from catalog_crawler.database import LocalSqliteDatabase
from catalog_crawler.discovery_cache import DiscoveryCache
from catalog_crawler.infrastructure.retry import RetryController, RetryPolicy
from catalog_crawler.infrastructure.timing_evasion import Pacer, SequenceJitter
from catalog_crawler.session_repository import CrawlSessionRepository

from fakes import SleepRecorder


@pytest.fixture
def db(tmp_path):
    """Temporary sqlite database with the crawler schema."""
    database = LocalSqliteDatabase(db_url=f"sqlite:///{tmp_path / 'crawler.db'}")
    yield database
    database.close()


@pytest.fixture
def cache(db):
    return DiscoveryCache(db)


@pytest.fixture
def sessions(db):
    return CrawlSessionRepository(db)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def pacer(sleep_recorder):
    """Pacer that always draws the lower bound and never really sleeps."""
    return Pacer(jitter=SequenceJitter([0.0]), sleep=sleep_recorder)


@pytest.fixture
def retry(sleep_recorder):
    return RetryController(RetryPolicy(base_delay=1.0, delay_increment=1.0), max_retries=2, sleep=sleep_recorder)


@pytest.fixture
def crawler_config():
    """Small, fast configuration."""
    return CrawlerConfig(
        collection_key="testville",
        search_url_template="https://catalog.test/search/{key}",
        items_per_page=2,
        max_pages=2,
        max_items=50,
        download_images=False,
        max_retries=2,
        retry_base_delay=1.0,
        retry_delay_increment=1.0,
        page_delay_min=0.0,
        page_delay_max=0.0,
        progress_interval_ms=60000,
        stats_flush_every=2,
    )
