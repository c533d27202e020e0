"""
Periodic progress reporting for a crawl run.

The reporter owns a copy of the run counters and logs a snapshot on its own
asyncio task every ``interval_ms``. Workers push counter changes with
``update_stats`` / ``increment``, which are plain in-memory updates and
never wait on the reporter.
"""

import asyncio
import logging
import time
from dataclasses import asdict, fields
from typing import Any, Callable, Dict, Optional

from catalog_crawler.models import CrawlStats

logger = logging.getLogger(__name__)


class ProgressReporter:
    """
    Usage:
        reporter = ProgressReporter(total_items=100)
        reporter.start(10000)
        reporter.increment("items_new")
        ...
        await reporter.stop()  # logs the final snapshot
    """

    def __init__(
        self,
        total_items: int = 0,
        clock: Callable[[], float] = time.monotonic,
        log: Optional[logging.Logger] = None,
    ):
        self.total_items = total_items
        self._clock = clock
        self._log = log or logger
        self._stats = CrawlStats()
        self._counter_names = {f.name for f in fields(CrawlStats)}
        self._task: Optional[asyncio.Task] = None
        self._start_time = clock()
        self._last_update = self._start_time
        self._running = False
        self._stopped = False
        self.snapshots_emitted = 0

    def start(self, interval_ms: int = 10000) -> None:
        """Start periodic snapshots. Must be called inside a running event loop."""
        if self._running:
            return
        self._start_time = self._clock()
        self._last_update = self._start_time
        self._running = True
        self._stopped = False
        self._task = asyncio.create_task(self._run(max(interval_ms, 1) / 1000.0))
        self._log.info("Progress reporting started")

    async def _run(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.log_progress()

    async def stop(self) -> None:
        """Stop the timer and log a final snapshot. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.log_progress(final=True)
        self._log.info("Progress reporting stopped")

    def update_stats(self, **partial: int) -> None:
        """Overwrite counters by name. Unknown names are ignored."""
        for name, value in partial.items():
            if name in self._counter_names:
                setattr(self._stats, name, value)
        self._last_update = self._clock()

    def increment(self, field_name: str, amount: int = 1) -> None:
        if field_name in self._counter_names:
            setattr(self._stats, field_name, getattr(self._stats, field_name) + amount)
            self._last_update = self._clock()

    def get_stats(self) -> Dict[str, Any]:
        """Copy of the current counters."""
        return asdict(self._stats)

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._start_time

    def estimated_time_remaining(self, total: Optional[int] = None) -> float:
        """
        Seconds left at the current average pace.

        Args:
            total: Item total, defaults to the one given at construction
        """
        total = self.total_items if total is None else total
        done = self._stats.items_processed
        if done == 0:
            return 0.0
        per_item = self.elapsed_seconds / done
        return max(0.0, per_item * (total - done))

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format seconds as '1h 5m', '3m 20s' or '42s'."""
        seconds = int(max(0, seconds))
        minutes, secs = divmod(seconds, 60)
        hours, minutes = divmod(minutes, 60)
        if hours > 0:
            return f"{hours}h {minutes}m"
        if minutes > 0:
            return f"{minutes}m {secs}s"
        return f"{secs}s"

    def log_progress(self, final: bool = False) -> None:
        """Log one snapshot of the counters."""
        s = self._stats
        elapsed = self.elapsed_seconds
        minutes = elapsed / 60 if elapsed > 0 else 0
        rate = s.items_processed / minutes if minutes else 0.0

        self._log.info("=" * 60)
        self._log.info("Final statistics:" if final else "Progress update:")
        self._log.info(f"Elapsed: {self.format_duration(elapsed)}")
        self._log.info(
            f"Items: {s.items_processed}/{self.total_items or s.items_found} processed | "
            f"{s.items_new} new | {s.items_updated} updated | {s.items_failed} failed"
        )
        self._log.info(f"Images: {s.images_downloaded} downloaded | {s.images_failed} failed")
        if not final and self.total_items:
            eta = self.format_duration(self.estimated_time_remaining())
            self._log.info(f"Rate: {rate:.1f} items/min | ETA {eta}")
        else:
            self._log.info(f"Rate: {rate:.1f} items/min")
        self._log.info("=" * 60)
        self.snapshots_emitted += 1
