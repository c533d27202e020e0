"""
Challenge mitigation.

Runs on a live page that the detector classified as challenged and reports
SOLVED or UNSOLVED. Steps, in order:

1. Long passive backoff, then reload and re-detect (many challenges clear
   on their own once request pressure drops)
2. A short burst of human-like activity, then re-detect
3. The external solving service, if one is configured, under a timeout

Mitigation never raises: any failure degrades to UNSOLVED so the caller
records a challenge failure for the item.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer
from catalog_crawler.models import MitigationResult, PageVerdict
from catalog_crawler.utils.challenge_handler import ChallengeDetector
from catalog_crawler.utils.human_simulator import HumanSimulator

logger = logging.getLogger(__name__)


@dataclass
class MitigationStats:
    """Counters of mitigation attempts by resolving step."""
    attempts: int = 0
    cleared_by_backoff: int = 0
    cleared_by_simulation: int = 0
    solved_by_service: int = 0
    unsolved: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class ChallengeMitigator:
    """
    Tries to get past a challenge on a live page.

    Args:
        detector: Detector used to re-check the page
        pacer: Pacer for the passive backoff
        backoff: Range for the passive backoff
        simulator: Human simulator, None to skip that step
        solver: Object with ``async solve_page(page) -> bool``, None when unconfigured
        solver_timeout: Seconds allowed for the solver
        reload_timeout_ms: Navigation timeout for the post-backoff reload
    """

    def __init__(
        self,
        detector: ChallengeDetector,
        pacer: Optional[Pacer] = None,
        backoff: DelayRange = DelayRange(30.0, 60.0),
        simulator: Optional[HumanSimulator] = None,
        solver=None,
        solver_timeout: float = 120.0,
        reload_timeout_ms: int = 30000,
    ):
        self.detector = detector
        self.pacer = pacer or Pacer()
        self.backoff = backoff
        self.simulator = simulator
        self.solver = solver
        self.solver_timeout = solver_timeout
        self.reload_timeout_ms = reload_timeout_ms
        self.stats = MitigationStats()

    async def mitigate(self, page) -> MitigationResult:
        """
        Attempt to clear the challenge on ``page``.

        Returns:
            MitigationResult.SOLVED or MitigationResult.UNSOLVED
        """
        self.stats.attempts += 1
        url = getattr(page, "url", "")
        logger.warning(f"Challenge on {url}, starting mitigation")

        try:
            result = await self._run(page)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"Mitigation error on {url}: {e}")
            result = MitigationResult.UNSOLVED

        if result == MitigationResult.UNSOLVED:
            self.stats.unsolved += 1
            logger.warning(f"Challenge unsolved: {url}")
        return result

    async def _run(self, page) -> MitigationResult:
        await self.pacer.wait(self.backoff, "challenge backoff")
        await page.reload(wait_until="domcontentloaded", timeout=self.reload_timeout_ms)
        if await self.detector.detect(page) == PageVerdict.CLEAN:
            self.stats.cleared_by_backoff += 1
            logger.info("Challenge cleared after backoff")
            return MitigationResult.SOLVED

        if self.simulator is not None:
            await self.simulator.simulate_presence(page)
            if await self.detector.detect(page) == PageVerdict.CLEAN:
                self.stats.cleared_by_simulation += 1
                logger.info("Challenge cleared after human simulation")
                return MitigationResult.SOLVED

        if self.solver is None:
            logger.info("No solver configured, giving up on challenge")
            return MitigationResult.UNSOLVED

        try:
            solved = await asyncio.wait_for(self.solver.solve_page(page), timeout=self.solver_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Solver timed out after {self.solver_timeout:.0f}s")
            return MitigationResult.UNSOLVED

        if solved:
            self.stats.solved_by_service += 1
            return MitigationResult.SOLVED
        return MitigationResult.UNSOLVED

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.to_dict()
