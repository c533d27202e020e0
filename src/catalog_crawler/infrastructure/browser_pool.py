"""
Pooled browser sessions.

One Chromium instance carries ``max_size`` long-lived contexts ("sessions").
The pooled fetch strategy leases a session per item; cookies survive between
leases so the target sees a returning visitor. A session is replaced once it
has served ``max_uses`` leases, when its failure rate climbs, or when the
caller retires it after the target flagged it.
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from playwright.async_api import async_playwright

from catalog_crawler.browser_config import BrowserSettings
from catalog_crawler.errors import BrowserPoolError

logger = logging.getLogger(__name__)

CLEAR_STORAGE_JS = "() => { localStorage.clear(); sessionStorage.clear(); }"

# Queued when the last session is lost so blocked acquirers wake up
_NO_SESSION = -1


class SessionHealth(Enum):
    """Health of one pooled session."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    RETIRED = "retired"


@dataclass
class SessionMetrics:
    """Lease counters for one pooled session."""
    session_id: int
    created_at: datetime
    uses: int = 0
    failures: int = 0
    last_used: Optional[datetime] = None
    retired: bool = False

    @property
    def failure_rate(self) -> float:
        return self.failures / self.uses if self.uses else 0.0

    @property
    def health(self) -> SessionHealth:
        if self.retired:
            return SessionHealth.RETIRED
        if self.failure_rate > 0.5:
            return SessionHealth.UNHEALTHY
        if self.failure_rate > 0.2:
            return SessionHealth.DEGRADED
        return SessionHealth.HEALTHY

    def record(self, ok: bool) -> None:
        self.uses += 1
        if not ok:
            self.failures += 1
        self.last_used = datetime.now()


@dataclass
class PoolLease:
    """A session and a fresh page handed out by ``BrowserPool.acquire``."""
    session_id: int
    context: Any
    page: Any
    metrics: SessionMetrics

    def retire(self) -> None:
        """Flag the session as burned; it is replaced when the lease ends."""
        self.metrics.retired = True


@dataclass
class PoolStatus:
    """Point-in-time view of the pool."""
    sessions: int
    idle: int
    in_use: int
    healthy: int
    degraded: int
    unhealthy: int
    leases: int
    failures: int
    replaced: int
    uptime_seconds: float


class BrowserPool:
    """
    Bounded pool of browser contexts over a single shared browser.

    Usage:
        pool = BrowserPool(max_size=3, max_uses=10)
        await pool.start()
        async with pool.acquire() as lease:
            await lease.page.goto(url)
        await pool.stop()
    """

    # Sessions failing more often than this are replaced
    FAILURE_RATE_LIMIT = 0.3

    def __init__(
        self,
        max_size: int = 3,
        max_uses: int = 10,
        browser_settings: Optional[BrowserSettings] = None,
    ):
        """
        Args:
            max_size: Number of sessions in the pool
            max_uses: Leases a session serves before it is replaced
            browser_settings: Launch and context settings
        """
        self.max_size = max_size
        self.max_uses = max_uses
        self.settings = browser_settings or BrowserSettings()

        self._playwright = None
        self._browser = None
        self._contexts: Dict[int, Any] = {}
        self._metrics: Dict[int, SessionMetrics] = {}
        self._idle: asyncio.Queue = asyncio.Queue()
        self._replace_lock = asyncio.Lock()
        self._started_at: Optional[datetime] = None
        self._next_id = 0
        self._leases = 0
        self._failures = 0
        self._replaced = 0

    @property
    def is_started(self) -> bool:
        return self._started_at is not None

    @property
    def available_count(self) -> int:
        return self._idle.qsize()

    async def start(self) -> None:
        """Launch the browser and open ``max_size`` sessions."""
        if self.is_started:
            return

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(**self.settings.launch_options())
        for _ in range(self.max_size):
            await self._open_session()

        self._started_at = datetime.now()
        logger.info(f"Browser pool started: {self.max_size} sessions, replaced after {self.max_uses} uses")

    async def stop(self) -> None:
        """Close every session, the browser and Playwright."""
        if not self.is_started:
            return
        self._started_at = None

        for session_id, context in list(self._contexts.items()):
            await _close_quietly(context.close, f"session {session_id}")
        self._contexts.clear()
        self._metrics.clear()
        self._idle = asyncio.Queue()

        if self._browser is not None:
            await _close_quietly(self._browser.close, "browser")
            self._browser = None
        if self._playwright is not None:
            await _close_quietly(self._playwright.stop, "playwright")
            self._playwright = None

        logger.info(
            f"Browser pool stopped after {self._leases} leases "
            f"({self._failures} failed, {self._replaced} sessions replaced)"
        )

    async def _open_session(self) -> int:
        context = await self._browser.new_context(**self.settings.context_options())
        context.set_default_timeout(self.settings.timeout)

        session_id = self._next_id
        self._next_id += 1
        self._contexts[session_id] = context
        self._metrics[session_id] = SessionMetrics(session_id=session_id, created_at=datetime.now())
        await self._idle.put(session_id)

        logger.debug(f"Opened browser session {session_id}")
        return session_id

    def _replacement_reason(self, metrics: SessionMetrics) -> Optional[str]:
        if metrics.retired:
            return "retired"
        if metrics.uses >= self.max_uses:
            return f"served {metrics.uses} uses"
        if metrics.failure_rate > self.FAILURE_RATE_LIMIT:
            return f"failure rate {metrics.failure_rate:.0%}"
        return None

    async def _replace(self, session_id: int, reason: str) -> None:
        async with self._replace_lock:
            context = self._contexts.pop(session_id, None)
            self._metrics.pop(session_id, None)
            if context is not None:
                await _close_quietly(context.close, f"session {session_id}")

            if not self.is_started:
                return
            new_id = await self._reopen()
            if new_id is None:
                logger.error(
                    f"Could not replace session {session_id} ({reason}), "
                    f"{len(self._contexts)} sessions left"
                )
                if not self._contexts:
                    self._idle.put_nowait(_NO_SESSION)
                return
            self._replaced += 1
            logger.info(f"Replaced session {session_id} ({reason}) with session {new_id}")

    async def _reopen(self) -> Optional[int]:
        """Open a session; when the browser is gone and no session needs it, relaunch it once."""
        try:
            return await self._open_session()
        except Exception as e:
            if self._contexts:
                logger.warning(f"Could not open a browser session: {e}")
                return None
            logger.warning(f"Could not open a browser session, relaunching browser: {e}")

        try:
            if self._browser is not None:
                await _close_quietly(self._browser.close, "browser")
            self._browser = await self._playwright.chromium.launch(**self.settings.launch_options())
            return await self._open_session()
        except Exception as e:
            logger.error(f"Browser relaunch failed: {e}")
            return None

    async def _next_session(self) -> int:
        while True:
            if not self._contexts:
                async with self._replace_lock:
                    if not self._contexts and await self._reopen() is None:
                        self._idle.put_nowait(_NO_SESSION)
                        raise BrowserPoolError("Browser pool has no usable sessions")
            session_id = await self._idle.get()
            if session_id != _NO_SESSION:
                return session_id

    async def _clear_storage(self, context) -> None:
        try:
            await context.clear_cookies()
            for page in context.pages:
                try:
                    await page.evaluate(CLEAR_STORAGE_JS)
                except Exception as e:
                    logger.debug(f"Skipped storage clear on a navigating page: {e}")
        except Exception as e:
            logger.warning(f"Could not clear session state: {e}")

    @asynccontextmanager
    async def acquire(self, clear_state: bool = False):
        """
        Lease an idle session with a new page.

        Cookies persist between leases unless ``clear_state`` is set.
        An exception raised inside the block counts as a failed use and
        propagates.

        Raises:
            BrowserPoolError: Every session is gone and none could be reopened

        Yields:
            PoolLease
        """
        if not self.is_started:
            raise RuntimeError("Browser pool not started. Call start() first.")

        session_id = await self._next_session()
        context = self._contexts[session_id]
        metrics = self._metrics[session_id]
        ok = False

        try:
            if clear_state:
                await self._clear_storage(context)
            try:
                page = await context.new_page()
            except Exception:
                metrics.record(False)
                self._failures += 1
                raise
            self._leases += 1
            try:
                yield PoolLease(session_id, context, page, metrics)
                ok = True
            finally:
                metrics.record(ok)
                if not ok:
                    self._failures += 1
                await _close_quietly(page.close, "page", level=logging.DEBUG)
        finally:
            reason = self._replacement_reason(metrics)
            if reason is not None:
                await self._replace(session_id, reason)
            elif self.is_started:
                await self._idle.put(session_id)

    def check_health(self, session_id: int) -> SessionHealth:
        """Health of a session; unknown ids report UNHEALTHY."""
        metrics = self._metrics.get(session_id)
        return metrics.health if metrics is not None else SessionHealth.UNHEALTHY

    def get_status(self) -> PoolStatus:
        health = Counter(m.health for m in self._metrics.values())
        uptime = (datetime.now() - self._started_at).total_seconds() if self._started_at else 0.0
        idle = self._idle.qsize()

        return PoolStatus(
            sessions=len(self._contexts),
            idle=idle,
            in_use=len(self._contexts) - idle,
            healthy=health[SessionHealth.HEALTHY],
            degraded=health[SessionHealth.DEGRADED],
            unhealthy=health[SessionHealth.UNHEALTHY],
            leases=self._leases,
            failures=self._failures,
            replaced=self._replaced,
            uptime_seconds=uptime,
        )


async def _close_quietly(close_fn, what: str, level: int = logging.WARNING) -> None:
    try:
        await close_fn()
    except Exception as e:
        logger.log(level, f"Error closing {what}: {e}")
