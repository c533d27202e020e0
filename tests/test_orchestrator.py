"""Tests for the crawl orchestrator: resume, skip, retry and finalize behavior."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from catalog_crawler.errors import PersistenceError, TransportError
from catalog_crawler.images import ImageDownloadStats
from catalog_crawler.models import RawPage, SessionStatus
from catalog_crawler.orchestrator import CrawlOrchestrator, compute_resume_page

from fakes import FakeExtraction, FakeFetcher, item_urls

SEARCH_URL = "https://catalog.test/search/testville"


def listing(page_number: int) -> str:
    return SEARCH_URL if page_number == 1 else f"{SEARCH_URL}?page={page_number}"


def make_orchestrator(config, db, cache, sessions, retry, pacer, fetcher,
                      extraction=None, discovery_fetcher=None, image_downloader=None):
    return CrawlOrchestrator(
        config=config,
        db=db,
        cache=cache,
        sessions=sessions,
        extraction=extraction or FakeExtraction(),
        item_fetcher=fetcher,
        discovery_fetcher=discovery_fetcher or FakeFetcher(),
        retry=retry,
        image_downloader=image_downloader,
        pacer=pacer,
    )


def seed_cache(cache, urls, per_page=2, key="testville"):
    for index in range(0, len(urls), per_page):
        cache.save_batch(urls[index:index + per_page], index // per_page + 1, key)


class TestComputeResumePage:
    """Tests for the resume-point arithmetic."""

    def test_full_pages(self):
        """68 existing items at 34 per page resume at page 3."""
        assert compute_resume_page(68, 34) == 3

    def test_empty_and_partial(self):
        """No items start at page 1; a partial page is fetched again."""
        assert compute_resume_page(0, 34) == 1
        assert compute_resume_page(33, 34) == 1
        assert compute_resume_page(35, 34) == 2

    def test_invalid_page_size(self):
        """A page size below 1 is rejected."""
        with pytest.raises(ValueError):
            compute_resume_page(10, 0)


class TestFullRun:
    """Discovery followed by extraction on an empty cache."""

    @pytest.mark.asyncio
    async def test_discovers_then_extracts(self, crawler_config, db, cache, sessions, retry, pacer):
        """All discovered URLs are extracted, saved and marked processed."""
        urls = item_urls(4)
        extraction = FakeExtraction(listings={listing(1): urls[:2], listing(2): urls[2:]})
        discovery = FakeFetcher()
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, fetcher,
            extraction=extraction, discovery_fetcher=discovery,
        )
        summary = await orchestrator.run()

        assert summary.status == SessionStatus.COMPLETED
        assert discovery.calls == [listing(1), listing(2)]
        assert summary.pages_crawled == 2
        assert summary.urls_discovered == 4
        assert sorted(fetcher.calls) == sorted(urls)
        assert summary.stats.items_found == 4
        assert summary.stats.items_processed == 4
        assert summary.stats.items_new == 4
        assert db.count_records("testville") == 4

        stats = cache.get_stats("testville")
        assert stats.processed == 4
        assert stats.successful == 4

        session = sessions.find_session(summary.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.items_found == 4
        assert session.items_new == 4
        assert session.completed_at is not None

    @pytest.mark.asyncio
    async def test_fetchers_are_started_and_closed(self, crawler_config, db, cache, sessions, retry, pacer):
        """Both fetchers are closed after their phase."""
        urls = item_urls(2)
        extraction = FakeExtraction(listings={listing(1): urls})
        discovery = FakeFetcher()
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, fetcher,
            extraction=extraction, discovery_fetcher=discovery,
        )
        await orchestrator.run()

        assert discovery.started == discovery.closed == 1
        assert fetcher.started == fetcher.closed == 1

    @pytest.mark.asyncio
    async def test_second_run_updates_existing_records(self, crawler_config, db, cache, sessions, retry, pacer):
        """Re-crawling a known item counts it as updated, not new."""
        urls = item_urls(2)
        seed_cache(cache, urls)
        crawler_config.max_pages = 1
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        first = await orchestrator.run()
        assert first.stats.items_new == 2

        cache.clear("testville")
        seed_cache(cache, urls)
        second = await orchestrator.run()

        assert second.stats.items_new == 0
        assert second.stats.items_updated == 2
        assert db.count_records() == 2


class TestResumeAndSkip:
    """Resume-point and discovery-skip behavior."""

    @pytest.mark.asyncio
    async def test_discovery_skipped_when_cache_complete(self, crawler_config, db, cache, sessions, retry, pacer):
        """A cache reaching max_pages skips discovery; URLs come from the cache."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        discovery = FakeFetcher()
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, fetcher, discovery_fetcher=discovery,
        )
        summary = await orchestrator.run()

        assert summary.discovery_skipped is True
        assert discovery.calls == []
        assert discovery.started == 0
        assert sorted(fetcher.calls) == sorted(urls)

    @pytest.mark.asyncio
    async def test_resumes_discovery_after_cached_pages(self, crawler_config, db, cache, sessions, retry, pacer):
        """Discovery restarts at the first page the cache does not cover."""
        crawler_config.max_pages = 3
        urls = item_urls(6)
        seed_cache(cache, urls[:2])
        extraction = FakeExtraction(listings={listing(2): urls[2:4], listing(3): urls[4:]})
        discovery = FakeFetcher()

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, FakeFetcher(),
            extraction=extraction, discovery_fetcher=discovery,
        )
        summary = await orchestrator.run()

        assert summary.start_page == 2
        assert discovery.calls == [listing(2), listing(3)]
        assert cache.get_stats("testville").total == 6

    @pytest.mark.asyncio
    async def test_explicit_start_page_forces_discovery(self, crawler_config, db, cache, sessions, retry, pacer):
        """An explicit start page runs discovery even over a complete cache."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        extraction = FakeExtraction(listings={listing(2): urls[2:]})
        discovery = FakeFetcher()

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, FakeFetcher(),
            extraction=extraction, discovery_fetcher=discovery,
        )
        summary = await orchestrator.run(start_page=2)

        assert summary.discovery_skipped is False
        assert discovery.calls == [listing(2)]
        assert summary.urls_discovered == 0

    @pytest.mark.asyncio
    async def test_crash_resume_processes_only_remaining(self, crawler_config, db, cache, sessions, retry, pacer):
        """A run interrupted after 10 of 20 items leaves exactly 10 for the next run."""
        crawler_config.max_pages = 10
        urls = item_urls(20)
        seed_cache(cache, urls)

        holder = {}

        def interrupt_after_ten(url):
            if len(first_fetcher.calls) == 10:
                holder["orchestrator"].interrupt()

        first_fetcher = FakeFetcher(on_fetch=interrupt_after_ten)
        first = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, first_fetcher)
        holder["orchestrator"] = first
        first_summary = await first.run()

        assert first_summary.status == SessionStatus.INTERRUPTED
        assert first_summary.stats.items_processed == 10
        assert sessions.find_session(first_summary.session_id).status == SessionStatus.INTERRUPTED
        assert len(cache.get_unprocessed_urls("testville")) == 10

        second_fetcher = FakeFetcher()
        second = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, second_fetcher)
        second_summary = await second.run()

        assert second_summary.status == SessionStatus.COMPLETED
        assert len(second_fetcher.calls) == 10
        assert set(second_fetcher.calls).isdisjoint(first_fetcher.calls)
        assert set(first_fetcher.calls) | set(second_fetcher.calls) == set(urls)
        assert cache.get_stats("testville").processed == 20

    @pytest.mark.asyncio
    async def test_max_items_caps_extraction(self, crawler_config, db, cache, sessions, retry, pacer):
        """Only max_items URLs are taken, in page order."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        crawler_config.max_items = 3
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert fetcher.calls == urls[:3]
        assert summary.stats.items_found == 3
        assert cache.get_unprocessed_urls("testville") == urls[3:]


class TestItemOutcomes:
    """Per-item retry, failure recording and at-most-once processing."""

    @pytest.fixture
    def seeded(self, crawler_config, cache):
        urls = item_urls(4)
        seed_cache(cache, urls)
        return urls

    @pytest.mark.asyncio
    async def test_transient_then_success(self, seeded, crawler_config, db, cache, sessions, retry, pacer, sleep_recorder):
        """Transient statuses are retried with linear backoff until success."""
        url = seeded[0]
        fetcher = FakeFetcher(script={url: [
            RawPage(url=url, http_status=503),
            RawPage(url=url, http_status=502),
            RawPage(url=url, http_status=200, content="<html/>"),
        ]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert fetcher.call_counts[url] == 3
        assert sleep_recorder.calls[:2] == [1.0, 2.0]
        assert summary.stats.items_failed == 0
        assert db.find_by_id("item-1") is not None

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """An always-transient item uses max_retries + 1 attempts and fails once."""
        url = seeded[1]
        fetcher = FakeFetcher(script={url: [RawPage(url=url, http_status=503)]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert fetcher.call_counts[url] == 3
        assert summary.stats.items_failed == 1
        errors = sessions.get_session_errors(summary.session_id)
        assert len(errors) == 1
        assert errors[0].error_type == "http_transient"
        assert errors[0].url == url

        entry = [u for u in cache.get_all_urls("testville") if u.url == url][0]
        assert entry.processed is True
        assert entry.crawl_successful is False
        assert entry.error_message == "HTTP 503"

    @pytest.mark.asyncio
    async def test_terminal_status_not_retried(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """A terminal status fails the item after one attempt."""
        url = seeded[2]
        fetcher = FakeFetcher(script={url: [RawPage(url=url, http_status=404)]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert fetcher.call_counts[url] == 1
        assert sessions.get_error_stats(summary.session_id) == {"http_terminal": 1}

    @pytest.mark.asyncio
    async def test_extraction_failure_not_retried(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """A page yielding no record is failed without retry."""
        url = seeded[0]
        fetcher = FakeFetcher()
        extraction = FakeExtraction(fail_urls=[url])

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, fetcher, extraction=extraction,
        )
        summary = await orchestrator.run()

        assert fetcher.call_counts[url] == 1
        assert summary.stats.items_failed == 1
        assert summary.stats.items_new == 3
        assert sessions.get_error_stats(summary.session_id) == {"extraction_failed": 1}

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """Navigation failures are transient."""
        url = seeded[0]
        fetcher = FakeFetcher(script={url: [
            TransportError(url, "net::ERR_CONNECTION_RESET"),
            RawPage(url=url, http_status=200, content="<html/>"),
        ]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert fetcher.call_counts[url] == 2
        assert summary.stats.items_failed == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_and_crawl_continues(self, seeded, crawler_config, db, cache,
                                                                 sessions, retry, pacer):
        """An unexpected exception fails only its own item."""
        url = seeded[0]
        fetcher = FakeFetcher(script={url: [RuntimeError("page crashed")]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert summary.status == SessionStatus.COMPLETED
        assert summary.stats.items_failed == 1
        assert summary.stats.items_new == 3
        errors = sessions.get_session_errors(summary.session_id)
        assert errors[0].error_type == "unknown"
        assert "page crashed" in errors[0].message
        assert errors[0].stack is not None

    @pytest.mark.asyncio
    async def test_each_url_marked_processed_once(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """mark_processed is called exactly once per URL regardless of retries."""
        flaky = seeded[0]
        broken = seeded[1]
        fetcher = FakeFetcher(script={
            flaky: [RawPage(url=flaky, http_status=503), RawPage(url=flaky, http_status=200)],
            broken: [RawPage(url=broken, http_status=503)],
        })
        cache.mark_processed = Mock(wraps=cache.mark_processed)

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        await orchestrator.run()

        marked = [c.args[0] for c in cache.mark_processed.call_args_list]
        assert sorted(marked) == sorted(seeded)
        assert cache.mark_processed(flaky, True) is False

    @pytest.mark.asyncio
    async def test_pacing_between_items(self, seeded, crawler_config, db, cache, sessions, retry, pacer):
        """The strategy's pace runs between items, not after the last."""
        fetcher = FakeFetcher()

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        await orchestrator.run()

        assert fetcher.paced == len(seeded) - 1

    @pytest.mark.asyncio
    async def test_concurrent_workers_process_each_url_once(self, crawler_config, db, cache, sessions, retry, pacer):
        """With several workers every URL is still fetched exactly once."""
        urls = item_urls(6)
        crawler_config.max_pages = 3
        seed_cache(cache, urls)
        fetcher = FakeFetcher(concurrency=3)

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        assert sorted(fetcher.calls) == sorted(urls)
        assert summary.stats.items_new == 6


class TestImages:
    """Image row handling."""

    @pytest.mark.asyncio
    async def test_image_urls_stored_without_download(self, crawler_config, db, cache, sessions, retry, pacer):
        """With downloads disabled the image URLs are still recorded."""
        urls = item_urls(2)
        seed_cache(cache, urls)
        crawler_config.max_pages = 1
        images = {urls[0]: ["https://img.test/a.jpg", "https://img.test/b.jpg"]}

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, FakeFetcher(),
            extraction=FakeExtraction(images=images),
        )
        await orchestrator.run()

        rows = db.get_images("item-1")
        assert [r["image_url"] for r in rows] == images[urls[0]]
        assert all(r["local_path"] is None for r in rows)

    @pytest.mark.asyncio
    async def test_downloaded_images_counted(self, crawler_config, db, cache, sessions, retry, pacer):
        """Downloader results feed the image counters and rows."""
        urls = item_urls(2)
        seed_cache(cache, urls)
        crawler_config.max_pages = 1
        crawler_config.download_images = True
        images = {urls[0]: ["https://img.test/a.jpg", "https://img.test/b.jpg"]}

        downloader = Mock()
        downloader.download_all = AsyncMock(return_value=ImageDownloadStats(
            downloaded=1,
            failed=1,
            rows=[{"item_id": "item-1", "image_url": "https://img.test/a.jpg",
                   "local_path": "/tmp/item-1/00.jpg", "position": 0}],
        ))

        orchestrator = make_orchestrator(
            crawler_config, db, cache, sessions, retry, pacer, FakeFetcher(),
            extraction=FakeExtraction(images=images), image_downloader=downloader,
        )
        summary = await orchestrator.run()

        downloader.download_all.assert_awaited_once_with("item-1", images[urls[0]])
        assert summary.stats.images_downloaded == 1
        assert summary.stats.images_failed == 1
        assert db.get_images("item-1")[0]["local_path"] == "/tmp/item-1/00.jpg"


class TestFinalize:
    """Session closing and fatal error handling."""

    @pytest.mark.asyncio
    async def test_session_close_failure_is_swallowed(self, crawler_config, db, cache, sessions, retry, pacer):
        """A failing session close still returns an accurate summary."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        sessions.complete_session = Mock(side_effect=PersistenceError("database is locked"))

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, FakeFetcher())
        summary = await orchestrator.run()

        sessions.complete_session.assert_called_once()
        assert summary.status == SessionStatus.COMPLETED
        assert summary.stats.items_processed == 4
        assert summary.stats.items_new == 4

    @pytest.mark.asyncio
    async def test_persistence_error_is_fatal(self, crawler_config, db, cache, sessions, retry, pacer):
        """A storage failure aborts the run after the session is marked failed."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        db.upsert_record = Mock(side_effect=PersistenceError("disk I/O error"))

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, FakeFetcher())

        with pytest.raises(PersistenceError):
            await orchestrator.run()

        session = sessions.get_recent_sessions(1)[0]
        assert session.status == SessionStatus.FAILED
        assert "disk I/O error" in session.error_message
        assert sessions.get_error_stats(session.id) == {"persistence_error": 1}
        # The failing item was never marked processed
        assert len(cache.get_unprocessed_urls("testville")) == 4

    @pytest.mark.asyncio
    async def test_session_closed_when_fatal_error_log_fails(self, crawler_config, db, cache, sessions,
                                                             retry, pacer):
        """A failing audit write does not keep the session open."""
        seed_cache(cache, item_urls(4))
        db.upsert_record = Mock(side_effect=PersistenceError("disk I/O error"))
        sessions.log_error = Mock(side_effect=PersistenceError("database is locked"))

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, FakeFetcher())

        with pytest.raises(PersistenceError, match="disk I/O error"):
            await orchestrator.run()

        sessions.log_error.assert_called_once()
        session = sessions.get_recent_sessions(1)[0]
        assert session.status == SessionStatus.FAILED
        assert "disk I/O error" in session.error_message

    @pytest.mark.asyncio
    async def test_session_closed_when_counter_write_fails(self, crawler_config, db, cache, sessions,
                                                           retry, pacer):
        """Counter writes fail during the run and again at close; the session still closes."""
        seed_cache(cache, item_urls(4))
        sessions.update_stats = Mock(side_effect=PersistenceError("database is locked"))

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, FakeFetcher())

        with pytest.raises(PersistenceError):
            await orchestrator.run()

        assert sessions.update_stats.call_count == 2
        session = sessions.get_recent_sessions(1)[0]
        assert session.status == SessionStatus.FAILED
        assert sessions.get_error_stats(session.id) == {"persistence_error": 1}

    @pytest.mark.asyncio
    async def test_cancellation_marks_session_interrupted(self, crawler_config, db, cache, sessions, retry, pacer):
        """Cancelling the run task closes the session as interrupted."""
        seed_cache(cache, item_urls(4))
        entered = asyncio.Event()

        class HangingFetcher(FakeFetcher):
            async def fetch_item(self, url):
                entered.set()
                await asyncio.Event().wait()

        fetcher = HangingFetcher()
        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)

        task = asyncio.create_task(orchestrator.run())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        session = sessions.get_recent_sessions(1)[0]
        assert session.status == SessionStatus.INTERRUPTED
        assert fetcher.closed == 1
        assert len(cache.get_unprocessed_urls("testville")) == 4

    @pytest.mark.asyncio
    async def test_counters_flushed_to_session(self, crawler_config, db, cache, sessions, retry, pacer):
        """Final counters are written to the session row."""
        urls = item_urls(4)
        seed_cache(cache, urls)
        fetcher = FakeFetcher(script={urls[3]: [RawPage(url=urls[3], http_status=410)]})

        orchestrator = make_orchestrator(crawler_config, db, cache, sessions, retry, pacer, fetcher)
        summary = await orchestrator.run()

        session = sessions.find_session(summary.session_id)
        assert session.items_found == 4
        assert session.items_new == 3
        assert session.items_failed == 1
