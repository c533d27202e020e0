"""Tests for the browser context pool."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from catalog_crawler.errors import BrowserPoolError
from catalog_crawler.infrastructure.browser_pool import (
    BrowserPool,
    PoolStatus,
    SessionHealth,
    SessionMetrics,
)


@pytest.fixture
def mock_playwright():
    """Patched async_playwright whose browser creates mock contexts."""
    with patch("catalog_crawler.infrastructure.browser_pool.async_playwright") as factory:
        pw = MagicMock()
        pw.stop = AsyncMock()
        browser = MagicMock()
        browser.close = AsyncMock()
        contexts = []

        async def new_context(**kwargs):
            if pw.broken_opens:
                pw.broken_opens -= 1
                raise RuntimeError("Target closed")
            context = MagicMock()
            context.close = AsyncMock()
            context.clear_cookies = AsyncMock()
            context.pages = []
            page = MagicMock()
            page.close = AsyncMock()
            context.new_page = AsyncMock(return_value=page)
            contexts.append(context)
            return context

        browser.new_context = AsyncMock(side_effect=new_context)
        pw.chromium.launch = AsyncMock(return_value=browser)
        factory.return_value.start = AsyncMock(return_value=pw)
        pw.browser = browser
        pw.contexts = contexts
        pw.broken_opens = 0
        yield pw


class TestSessionMetrics:
    """Test cases for SessionMetrics."""

    def test_initialization(self):
        metrics = SessionMetrics(session_id=1, created_at=datetime.now())
        assert metrics.uses == 0
        assert metrics.health == SessionHealth.HEALTHY
        assert metrics.failure_rate == 0.0

    def test_one_failure_in_three_degrades(self):
        metrics = SessionMetrics(session_id=1, created_at=datetime.now())
        metrics.record(True)
        metrics.record(True)
        metrics.record(False)

        assert metrics.failure_rate == pytest.approx(1 / 3, rel=0.01)
        assert metrics.health == SessionHealth.DEGRADED
        assert metrics.last_used is not None

    def test_mostly_failing_is_unhealthy(self):
        metrics = SessionMetrics(session_id=1, created_at=datetime.now())
        metrics.record(True)
        metrics.record(False)
        metrics.record(False)

        assert metrics.health == SessionHealth.UNHEALTHY

    def test_retired_overrides_rate(self):
        metrics = SessionMetrics(session_id=1, created_at=datetime.now(), retired=True)
        assert metrics.health == SessionHealth.RETIRED


class TestBrowserPool:
    """Test cases for BrowserPool."""

    def test_initialization(self):
        pool = BrowserPool(max_size=2, max_uses=5)
        assert pool.max_size == 2
        assert pool.max_uses == 5
        assert pool.is_started is False

    @pytest.mark.asyncio
    async def test_not_started_raises_error(self):
        pool = BrowserPool()
        with pytest.raises(RuntimeError, match="not started"):
            async with pool.acquire():
                pass

    @pytest.mark.asyncio
    async def test_start_creates_contexts(self, mock_playwright):
        """One browser is launched and max_size contexts are created."""
        pool = BrowserPool(max_size=3)
        await pool.start()

        assert pool.is_started
        assert pool.available_count == 3
        mock_playwright.chromium.launch.assert_awaited_once()
        assert len(mock_playwright.contexts) == 3
        await pool.stop()

    @pytest.mark.asyncio
    async def test_context_recycled_after_max_uses(self, mock_playwright):
        """A session that served max_uses leases is closed and replaced."""
        pool = BrowserPool(max_size=1, max_uses=2)
        await pool.start()

        for _ in range(2):
            async with pool.acquire() as lease:
                assert lease.page is not None

        first = mock_playwright.contexts[0]
        first.close.assert_awaited_once()
        assert len(mock_playwright.contexts) == 2
        assert pool.get_status().replaced == 1
        assert pool.available_count == 1
        await pool.stop()

    @pytest.mark.asyncio
    async def test_retired_session_replaced(self, mock_playwright):
        """Retiring a lease replaces its context on release."""
        pool = BrowserPool(max_size=1, max_uses=10)
        await pool.start()

        async with pool.acquire() as lease:
            lease.retire()

        mock_playwright.contexts[0].close.assert_awaited_once()
        async with pool.acquire() as lease:
            assert lease.context is mock_playwright.contexts[1]
        await pool.stop()

    @pytest.mark.asyncio
    async def test_error_recorded_and_reraised(self, mock_playwright):
        pool = BrowserPool(max_size=1, max_uses=10)
        await pool.start()

        with pytest.raises(ValueError):
            async with pool.acquire():
                raise ValueError("boom")

        status = pool.get_status()
        assert status.failures == 1
        assert status.leases == 1
        assert status.replaced == 1
        await pool.stop()

    @pytest.mark.asyncio
    async def test_clear_state(self, mock_playwright):
        pool = BrowserPool(max_size=1)
        await pool.start()

        async with pool.acquire(clear_state=True):
            pass

        mock_playwright.contexts[0].clear_cookies.assert_awaited_once()
        await pool.stop()

    @pytest.mark.asyncio
    async def test_stop_and_restart(self, mock_playwright):
        """After stop, a restart starts with exactly max_size fresh contexts."""
        pool = BrowserPool(max_size=2)
        await pool.start()
        await pool.stop()

        mock_playwright.browser.close.assert_awaited_once()
        mock_playwright.stop.assert_awaited_once()
        assert pool.is_started is False

        await pool.start()
        assert pool.available_count == 2
        async with pool.acquire() as lease:
            assert lease.context is mock_playwright.contexts[2] or lease.context is mock_playwright.contexts[3]
        await pool.stop()

    @pytest.mark.asyncio
    async def test_status(self, mock_playwright):
        pool = BrowserPool(max_size=2)
        await pool.start()

        status = pool.get_status()

        assert isinstance(status, PoolStatus)
        assert status.sessions == 2
        assert status.idle == 2
        assert status.in_use == 0
        assert status.healthy == 2
        await pool.stop()

    def test_check_health_unknown_context(self):
        pool = BrowserPool()
        assert pool.check_health(99) == SessionHealth.UNHEALTHY


async def lease_once(pool):
    async with pool.acquire() as lease:
        return lease


class TestLostSessions:
    """Pool behavior when replacement sessions cannot be opened."""

    @pytest.mark.asyncio
    async def test_browser_relaunched_when_replacement_fails(self, mock_playwright):
        pool = BrowserPool(max_size=1, max_uses=1)
        await pool.start()
        mock_playwright.broken_opens = 1

        async with pool.acquire():
            pass

        assert mock_playwright.chromium.launch.await_count == 2
        mock_playwright.browser.close.assert_awaited_once()
        assert pool.get_status().sessions == 1
        lease = await asyncio.wait_for(lease_once(pool), 1.0)
        assert lease.context is mock_playwright.contexts[-1]
        await pool.stop()

    @pytest.mark.asyncio
    async def test_empty_pool_fails_fast(self, mock_playwright):
        """Once no session can be opened, acquire raises instead of waiting forever."""
        pool = BrowserPool(max_size=1, max_uses=1)
        await pool.start()
        mock_playwright.broken_opens = 100

        async with pool.acquire():
            pass

        assert pool.get_status().sessions == 0
        with pytest.raises(BrowserPoolError):
            await asyncio.wait_for(lease_once(pool), 1.0)
        await pool.stop()

    @pytest.mark.asyncio
    async def test_blocked_acquirer_woken_when_last_session_lost(self, mock_playwright):
        pool = BrowserPool(max_size=1, max_uses=10)
        await pool.start()
        mock_playwright.broken_opens = 100

        async with pool.acquire() as lease:
            waiter = asyncio.create_task(lease_once(pool))
            await asyncio.sleep(0)
            assert not waiter.done()
            lease.retire()

        with pytest.raises(BrowserPoolError):
            await asyncio.wait_for(waiter, 1.0)
        await pool.stop()
