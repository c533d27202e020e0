"""Tests for ChallengeMitigator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from catalog_crawler.infrastructure.timing_evasion import DelayRange, Pacer, SequenceJitter
from catalog_crawler.models import MitigationResult, PageVerdict
from catalog_crawler.utils.mitigation import ChallengeMitigator

from fakes import SleepRecorder


@pytest.fixture
def page():
    page = MagicMock()
    page.url = "https://catalog.test/listings/1"
    page.reload = AsyncMock()
    return page


def detector_returning(*verdicts):
    detector = Mock()
    detector.detect = AsyncMock(side_effect=list(verdicts))
    return detector


def make_mitigator(detector, **kwargs):
    sleep = SleepRecorder()
    pacer = Pacer(jitter=SequenceJitter([0.0]), sleep=sleep)
    mitigator = ChallengeMitigator(detector, pacer=pacer, backoff=DelayRange(30.0, 60.0), **kwargs)
    return mitigator, sleep


class TestChallengeMitigator:
    """Test cases for the mitigation sequence."""

    @pytest.mark.asyncio
    async def test_cleared_by_backoff(self, page):
        """Backoff, reload, and a clean re-check resolve the challenge."""
        mitigator, sleep = make_mitigator(detector_returning(PageVerdict.CLEAN))

        result = await mitigator.mitigate(page)

        assert result == MitigationResult.SOLVED
        assert sleep.calls == [30.0]
        page.reload.assert_awaited_once()
        assert mitigator.stats.cleared_by_backoff == 1

    @pytest.mark.asyncio
    async def test_cleared_by_simulation(self, page):
        simulator = Mock()
        simulator.simulate_presence = AsyncMock()
        mitigator, _ = make_mitigator(
            detector_returning(PageVerdict.CHALLENGED, PageVerdict.CLEAN), simulator=simulator,
        )

        result = await mitigator.mitigate(page)

        assert result == MitigationResult.SOLVED
        simulator.simulate_presence.assert_awaited_once_with(page)
        assert mitigator.stats.cleared_by_simulation == 1

    @pytest.mark.asyncio
    async def test_no_solver_is_unsolved(self, page):
        mitigator, _ = make_mitigator(detector_returning(PageVerdict.CHALLENGED))

        result = await mitigator.mitigate(page)

        assert result == MitigationResult.UNSOLVED
        assert mitigator.stats.unsolved == 1

    @pytest.mark.asyncio
    async def test_solver_success(self, page):
        solver = Mock()
        solver.solve_page = AsyncMock(return_value=True)
        mitigator, _ = make_mitigator(detector_returning(PageVerdict.CHALLENGED), solver=solver)

        result = await mitigator.mitigate(page)

        assert result == MitigationResult.SOLVED
        solver.solve_page.assert_awaited_once_with(page)
        assert mitigator.stats.solved_by_service == 1

    @pytest.mark.asyncio
    async def test_solver_failure(self, page):
        solver = Mock()
        solver.solve_page = AsyncMock(return_value=False)
        mitigator, _ = make_mitigator(detector_returning(PageVerdict.CHALLENGED), solver=solver)

        assert await mitigator.mitigate(page) == MitigationResult.UNSOLVED

    @pytest.mark.asyncio
    async def test_solver_timeout(self, page):
        """A solver exceeding its time budget counts as unsolved."""
        class SlowSolver:
            async def solve_page(self, page):
                await asyncio.sleep(10)
                return True

        mitigator, _ = make_mitigator(
            detector_returning(PageVerdict.CHALLENGED), solver=SlowSolver(), solver_timeout=0.01,
        )

        assert await mitigator.mitigate(page) == MitigationResult.UNSOLVED

    @pytest.mark.asyncio
    async def test_errors_degrade_to_unsolved(self, page):
        """Mitigation never raises; a failing reload yields UNSOLVED."""
        page.reload = AsyncMock(side_effect=RuntimeError("page crashed"))
        mitigator, _ = make_mitigator(detector_returning(PageVerdict.CLEAN))

        result = await mitigator.mitigate(page)

        assert result == MitigationResult.UNSOLVED
        assert mitigator.get_stats()["errors"] == 1
        assert mitigator.get_stats()["attempts"] == 1
