"""
Human-like interaction simulator for browser automation.

Features:
- Scrolling in small, uneven increments
- Mouse wandering with slight random jitter
- Human pause simulation (0.3-1.5s random)
- Item page browsing: scroll, pause, dwell
- Fast mode for skipping all human simulation
"""

import asyncio
import random
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from catalog_crawler.infrastructure.timing_evasion import JitterSource

logger = logging.getLogger(__name__)


@dataclass
class HumanSimulatorConfig:
    """Configuration for human-like interaction simulation."""

    # Pause configuration
    min_pause_seconds: float = 0.3
    max_pause_seconds: float = 1.5

    # Scroll configuration
    min_scroll_steps: int = 3
    max_scroll_steps: int = 6
    scroll_amounts: tuple = (300, 500)  # Scroll passes on an item page

    # Mouse movement configuration
    mouse_move_steps: int = 10  # Number of intermediate steps in mouse movement
    mouse_move_jitter_px: int = 2  # Random jitter added to each step
    mouse_wander_points: int = 3

    # Mode flags
    fast_mode: bool = False  # Skip all human simulation when True


class HumanSimulator:
    """
    Simulates human-like interactions for browser automation.

    Usage:
        simulator = HumanSimulator()

        # Scroll through an item page and dwell on it
        await simulator.browse_page(page, dwell_seconds=8)

        # Add a thinking pause
        await simulator.human_pause()
    """

    def __init__(
        self,
        config: Optional[HumanSimulatorConfig] = None,
        rng: Optional[JitterSource] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the human simulator.

        Args:
            config: Configuration options. Uses defaults if not provided.
            rng: Jitter source for every random draw
            sleep: Async sleep function
        """
        self.config = config or HumanSimulatorConfig()
        self._rng = rng or random.Random()
        self._sleep = sleep

    def _steps(self) -> int:
        low, high = self.config.min_scroll_steps, self.config.max_scroll_steps
        return max(1, int(round(self._rng.uniform(low, high))))

    async def human_pause(self, reason: str = "thinking") -> float:
        """
        Pause for a human-like duration.

        Args:
            reason: Reason for the pause (for logging)

        Returns:
            Actual pause duration in seconds
        """
        if self.config.fast_mode:
            return 0.0

        pause_duration = self._rng.uniform(
            self.config.min_pause_seconds,
            self.config.max_pause_seconds
        )
        logger.debug(f"Human pause ({reason}): {pause_duration:.2f}s")
        await self._sleep(pause_duration)
        return pause_duration

    async def _move_mouse_to(
        self,
        page,
        start_x: float,
        start_y: float,
        target_x: float,
        target_y: float,
    ) -> None:
        """
        Move mouse to target position with human-like movement.
        """
        steps = self.config.mouse_move_steps

        for i in range(1, steps + 1):
            progress = i / steps
            x = start_x + (target_x - start_x) * progress
            y = start_y + (target_y - start_y) * progress

            # Less jitter near the end for accuracy
            jitter_factor = 1 - progress
            jitter_x = self._rng.uniform(
                -self.config.mouse_move_jitter_px,
                self.config.mouse_move_jitter_px
            ) * jitter_factor
            jitter_y = self._rng.uniform(
                -self.config.mouse_move_jitter_px,
                self.config.mouse_move_jitter_px
            ) * jitter_factor

            await page.mouse.move(x + jitter_x, y + jitter_y)
            await self._sleep(0.01)

    async def wander_mouse(self, page) -> int:
        """
        Move the mouse between a few random points in the viewport.

        Returns:
            Number of points visited
        """
        if self.config.fast_mode:
            return 0

        viewport = page.viewport_size or {"width": 1000, "height": 600}
        x, y = viewport["width"] / 2, viewport["height"] / 2

        for _ in range(self.config.mouse_wander_points):
            target_x = self._rng.uniform(0, viewport["width"])
            target_y = self._rng.uniform(0, viewport["height"])
            await self._move_mouse_to(page, x, y, target_x, target_y)
            x, y = target_x, target_y

        return self.config.mouse_wander_points

    async def scroll_like_human(
        self,
        page,
        direction: str = "down",
        amount: int = 300,
    ) -> None:
        """
        Scroll the page with human-like behavior.

        Args:
            page: Playwright page object
            direction: "up" or "down"
            amount: Scroll amount in pixels
        """
        if self.config.fast_mode:
            scroll_amount = -amount if direction == "up" else amount
            await page.evaluate(f"window.scrollBy(0, {scroll_amount})")
            return

        steps = self._steps()
        step_amount = amount // steps

        for _ in range(steps):
            scroll_amount = -step_amount if direction == "up" else step_amount
            variation = self._rng.uniform(0.8, 1.2)
            actual_scroll = int(scroll_amount * variation)

            await page.evaluate(f"window.scrollBy(0, {actual_scroll})")
            await self._sleep(self._rng.uniform(0.05, 0.15))

        logger.debug(f"Scrolled {direction} ~{amount}px in {steps} steps")

    async def browse_page(self, page, dwell_seconds: float = 0.0) -> float:
        """
        Scroll through a page in passes, then dwell on it.

        Args:
            page: Playwright page object
            dwell_seconds: Time to stay on the page after scrolling

        Returns:
            Total seconds spent pausing and dwelling
        """
        spent = 0.0
        for amount in self.config.scroll_amounts:
            await self.scroll_like_human(page, "down", amount)
            spent += await self.human_pause("reading")

        if dwell_seconds > 0 and not self.config.fast_mode:
            await self._sleep(dwell_seconds)
            spent += dwell_seconds

        return spent

    async def simulate_presence(self, page) -> None:
        """Short burst of mouse and scroll activity on a challenged page."""
        await self.wander_mouse(page)
        await self.scroll_like_human(page, "down", 200)
        await self.human_pause("presence")


def create_human_simulator(
    fast_mode: bool = False,
    rng: Optional[JitterSource] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> HumanSimulator:
    """
    Create a configured HumanSimulator instance.

    Args:
        fast_mode: Skip all human simulation (for testing)
        rng: Jitter source
        sleep: Async sleep function

    Returns:
        Configured HumanSimulator instance
    """
    return HumanSimulator(HumanSimulatorConfig(fast_mode=fast_mode), rng=rng, sleep=sleep)
