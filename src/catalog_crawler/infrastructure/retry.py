"""
Retry and backoff for a single item fetch.

Each attempt's outcome is classified as success, terminal or transient.
Terminal outcomes end the sequence at once; transient outcomes are retried
after a linear backoff (``base + retry_index * increment``) until the retry
budget is spent, and the last transient outcome is returned as final.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from catalog_crawler.errors import ErrorKind, TransportError
from catalog_crawler.models import (
    FetchOutcome,
    FetchStatus,
    MitigationResult,
    PageVerdict,
    RawPage,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[FetchOutcome]]


class RetryDecision(str, Enum):
    """What the controller does with an attempt's outcome."""
    SUCCESS = "success"
    TERMINAL = "terminal"
    TRANSIENT = "transient"


@dataclass
class RetryPolicy:
    """HTTP code sets and linear backoff parameters."""

    base_delay: float = 10.0
    delay_increment: float = 10.0
    terminal_status_codes: Tuple[int, ...] = (401, 403, 404, 410)
    transient_status_codes: Tuple[int, ...] = (
        408, 425, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524, 525, 526, 527,
    )

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        """Build from a CrawlerConfig."""
        return cls(
            base_delay=config.retry_base_delay,
            delay_increment=config.retry_delay_increment,
            terminal_status_codes=tuple(config.terminal_status_codes),
            transient_status_codes=tuple(config.transient_status_codes),
        )

    def backoff_delay(self, retry_index: int) -> float:
        """Seconds to wait before retry number ``retry_index`` (0-based)."""
        return self.base_delay + retry_index * self.delay_increment

    def is_transient_status(self, code: Optional[int]) -> bool:
        # Unlisted error codes are terminal
        return code in self.transient_status_codes and code not in self.terminal_status_codes

    def classify(self, outcome: FetchOutcome) -> RetryDecision:
        """Default classifier for attempt outcomes."""
        status = outcome.status
        if status == FetchStatus.OK:
            return RetryDecision.SUCCESS
        if status in (FetchStatus.TRANSPORT_ERROR, FetchStatus.RATE_LIMITED):
            return RetryDecision.TRANSIENT
        if status == FetchStatus.HTTP_ERROR:
            if self.is_transient_status(outcome.http_status):
                return RetryDecision.TRANSIENT
            return RetryDecision.TERMINAL
        if status == FetchStatus.CHALLENGED:
            # A solved challenge that still shows is worth a fresh attempt
            if outcome.mitigation == MitigationResult.SOLVED:
                return RetryDecision.TRANSIENT
            return RetryDecision.TERMINAL
        return RetryDecision.TERMINAL

    def error_kind(self, outcome: FetchOutcome) -> ErrorKind:
        """Audit category for a failed final outcome."""
        status = outcome.status
        if status == FetchStatus.HTTP_ERROR:
            if self.is_transient_status(outcome.http_status):
                return ErrorKind.HTTP_TRANSIENT
            return ErrorKind.HTTP_TERMINAL
        return {
            FetchStatus.TRANSPORT_ERROR: ErrorKind.TRANSPORT_ERROR,
            FetchStatus.RATE_LIMITED: ErrorKind.RATE_LIMITED,
            FetchStatus.CHALLENGED: ErrorKind.CHALLENGED,
            FetchStatus.EXTRACTION_FAILED: ErrorKind.EXTRACTION_FAILED,
        }.get(status, ErrorKind.UNKNOWN)


def outcome_for_page(page: RawPage) -> Optional[FetchOutcome]:
    """
    Outcome for a fetched page that cannot be extracted.

    Returns:
        An HTTP_ERROR, CHALLENGED or RATE_LIMITED outcome, or None for a
        clean 2xx page
    """
    if not page.is_success_status:
        return FetchOutcome(status=FetchStatus.HTTP_ERROR, http_status=page.http_status, page=page)
    if page.verdict == PageVerdict.CHALLENGED:
        return FetchOutcome(
            status=FetchStatus.CHALLENGED,
            http_status=page.http_status,
            page=page,
            mitigation=page.mitigation,
            error=f"challenge {(page.mitigation or MitigationResult.UNSOLVED).value}",
        )
    if page.verdict == PageVerdict.RATE_LIMITED:
        return FetchOutcome(status=FetchStatus.RATE_LIMITED, http_status=page.http_status, page=page)
    return None


DEFAULT_POLICY = RetryPolicy()


def classify_outcome(outcome: FetchOutcome) -> RetryDecision:
    """Classify with the default code sets."""
    return DEFAULT_POLICY.classify(outcome)


class RetryController:
    """
    Wraps fetch attempts with bounded retries.

    Guarantees exactly one final outcome per call and no attempt after a
    terminal classification. Only ``TransportError`` is converted into an
    outcome; any other exception propagates to the caller.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            policy: Classification and backoff policy
            max_retries: Default retry budget (total tries = max_retries + 1)
            sleep: Async sleep function
        """
        self.policy = policy or RetryPolicy()
        self.max_retries = max_retries
        self.sleep = sleep

    async def attempt(
        self,
        fetch_fn: FetchFn,
        max_retries: Optional[int] = None,
        classify: Optional[Callable[[FetchOutcome], RetryDecision]] = None,
        label: str = "",
    ) -> FetchOutcome:
        """
        Run ``fetch_fn`` until success, a terminal outcome, or the retry budget is spent.

        Args:
            fetch_fn: Zero-argument coroutine function producing one attempt's outcome
            max_retries: Retry budget for this call
            classify: Outcome classifier, defaults to the policy's
            label: Text identifying the target in log lines

        Returns:
            The final FetchOutcome with ``attempts_used`` set
        """
        retries = self.max_retries if max_retries is None else max(0, max_retries)
        classify = classify or self.policy.classify
        outcome: Optional[FetchOutcome] = None

        for attempt_index in range(retries + 1):
            try:
                outcome = await fetch_fn()
            except TransportError as e:
                outcome = FetchOutcome(status=FetchStatus.TRANSPORT_ERROR, error=str(e))
            outcome.attempts_used = attempt_index + 1

            decision = classify(outcome)
            if decision != RetryDecision.TRANSIENT:
                return outcome

            if attempt_index == retries:
                logger.warning(
                    f"Giving up after {outcome.attempts_used} attempts: "
                    f"{outcome.describe()} {label}".rstrip()
                )
                return outcome

            delay = self.policy.backoff_delay(attempt_index)
            logger.warning(
                f"Transient failure ({outcome.describe()}), retry {attempt_index + 1}/{retries} "
                f"in {delay:.0f}s {label}".rstrip()
            )
            await self.sleep(delay)

        return outcome
