"""
Challenge and blocking detection.

Classifies a fetched page as clean, challenged (anti-automation interstitial)
or rate limited. Detection is a fixed ordered check on injected markers:

1. challenge marker text, or a challenge selector present on the live page
2. rate-limit / blocking phrases
3. otherwise clean

The marker lists are the only target-specific knowledge here and are
injected through DetectionMarkers (loadable from JSON).
"""
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List

from catalog_crawler.models import PageVerdict

logger = logging.getLogger(__name__)

VISIBLE_TEXT_JS = "() => document.body ? document.body.innerText : ''"


# =============================================================================
# Detection Markers
# =============================================================================

@dataclass
class DetectionMarkers:
    """Site-specific text and selector markers."""

    challenge_texts: List[str] = field(default_factory=lambda: [
        "Press & Hold",
        "סליחה על ההפרעה",  # "Sorry for the interruption"
        "verify you are human",
    ])
    challenge_selectors: List[str] = field(default_factory=lambda: [
        'text="Press & Hold"',
        "#px-captcha",
        "[class*='px-captcha']",
        "iframe[src*='captcha']",
    ])
    rate_limit_texts: List[str] = field(default_factory=lambda: [
        "too many requests",
        "rate limit",
        "access denied",
    ])

    @classmethod
    def from_file(cls, path: str) -> "DetectionMarkers":
        """Load markers from a JSON file; missing keys keep the defaults."""
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)
        defaults = cls()
        return cls(
            challenge_texts=list(data.get("challenge_texts", defaults.challenge_texts)),
            challenge_selectors=list(data.get("challenge_selectors", defaults.challenge_selectors)),
            rate_limit_texts=list(data.get("rate_limit_texts", defaults.rate_limit_texts)),
        )

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Challenge Detection
# =============================================================================

class ChallengeDetector:
    """
    Deterministic page classifier.

    Args:
        markers: Marker lists to check, defaults to DetectionMarkers()
    """

    def __init__(self, markers: DetectionMarkers | None = None):
        self.markers = markers or DetectionMarkers()
        self._challenge_texts = [t.lower() for t in self.markers.challenge_texts]
        self._rate_limit_texts = [t.lower() for t in self.markers.rate_limit_texts]

    def classify(self, content: str, marker_present: bool = False) -> PageVerdict:
        """
        Classify page text.

        Args:
            content: Visible page text
            marker_present: Whether a challenge selector matched on the live page

        Returns:
            PageVerdict
        """
        text = (content or "").lower()

        if marker_present or any(t in text for t in self._challenge_texts):
            return PageVerdict.CHALLENGED
        if any(t in text for t in self._rate_limit_texts):
            return PageVerdict.RATE_LIMITED
        return PageVerdict.CLEAN

    async def has_challenge_marker(self, page) -> bool:
        """Check the live page for any challenge selector."""
        for selector in self.markers.challenge_selectors:
            try:
                if await page.locator(selector).count() > 0:
                    logger.debug(f"Challenge selector matched: {selector}")
                    return True
            except Exception:
                continue  # Invalid selector or page navigating
        return False

    async def detect(self, page) -> PageVerdict:
        """
        Classify a live Playwright page by its visible text and selectors.

        Args:
            page: Async Playwright Page

        Returns:
            PageVerdict
        """
        text = await page.evaluate(VISIBLE_TEXT_JS)
        marker_present = await self.has_challenge_marker(page)
        verdict = self.classify(text, marker_present=marker_present)
        if verdict != PageVerdict.CLEAN:
            logger.warning(f"Page classified as {verdict.value}: {page.url}")
        return verdict


def get_challenge_instructions(verdict: PageVerdict) -> str:
    """Operator-facing hint for a non-clean verdict."""
    instructions = {
        PageVerdict.CHALLENGED: (
            "An anti-automation challenge is being served. Lower the request rate, "
            "switch to the isolated strategy, or configure CAPTCHA_SERVICE and CAPTCHA_API_KEY."
        ),
        PageVerdict.RATE_LIMITED: (
            "The site is rate limiting this client. Increase the delays or reduce "
            "max_requests_per_minute and max_concurrency."
        ),
    }
    return instructions.get(verdict, "No action needed.")
