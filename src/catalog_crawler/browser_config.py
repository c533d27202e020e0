"""
Browser configuration for Playwright-based fetching.

This module provides a validated Pydantic model for browser launch and context
settings shared by both fetch strategies, plus pre-configured instances.
"""
import random
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# User agent pool for rotation
USER_AGENTS = [
    # Chrome on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    # Chrome on Mac
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
]


def get_random_user_agent() -> str:
    """Get a random user agent from the pool."""
    return random.choice(USER_AGENTS)


class BrowserSettings(BaseModel):
    """
    Launch and context settings for crawler browsers.

    All fields are validated by Pydantic to ensure type safety and valid values.
    """

    headless: bool = Field(
        default=True,
        description="Run browser in headless mode (no visible UI)"
    )

    timeout: int = Field(
        default=30000,
        description="Navigation timeout in milliseconds",
        ge=1000,
        le=300000
    )

    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = Field(
        default="domcontentloaded",
        description="When to consider navigation complete"
    )

    render_timeout: int = Field(
        default=15000,
        description="Milliseconds to wait for client-side content after navigation",
        ge=0,
    )

    min_content_length: int = Field(
        default=5000,
        description="Body text length that counts as fully rendered content",
        ge=0,
    )

    user_agent: Optional[str] = Field(
        default=None,
        description="Custom user agent. If None and rotate_user_agent=True, a random one is used."
    )

    rotate_user_agent: bool = Field(
        default=False,
        description="Pick a user agent from the pool for each new context"
    )

    viewport_width: int = Field(default=1920, ge=320)
    viewport_height: int = Field(default=1080, ge=240)

    locale: Optional[str] = Field(
        default=None,
        description="Browser locale, e.g. 'he-IL'"
    )

    timezone_id: Optional[str] = Field(
        default=None,
        description="Browser timezone, e.g. 'Asia/Jerusalem'"
    )

    launch_args: List[str] = Field(
        default_factory=lambda: [
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-blink-features=AutomationControlled",
        ],
        description="Browser launch arguments"
    )

    class Config:
        """Pydantic model configuration."""
        frozen = False
        validate_assignment = True

    def get_user_agent(self) -> str:
        """Get the user agent to use for a new context."""
        if self.user_agent:
            return self.user_agent
        if self.rotate_user_agent:
            return get_random_user_agent()
        return USER_AGENTS[0]

    def launch_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``chromium.launch``."""
        return {
            "headless": self.headless,
            "args": list(self.launch_args),
        }

    def context_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``browser.new_context``."""
        options: Dict[str, Any] = {
            "user_agent": self.get_user_agent(),
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "ignore_https_errors": True,
        }
        if self.locale:
            options["locale"] = self.locale
        if self.timezone_id:
            options["timezone_id"] = self.timezone_id
        return options


DEFAULT_BROWSER_SETTINGS = BrowserSettings()

STEALTH_BROWSER_SETTINGS = BrowserSettings(
    headless=True,
    timeout=60000,
    rotate_user_agent=True,
    launch_args=[
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-blink-features=AutomationControlled",
        "--disable-features=IsolateOrigins,site-per-process",
        "--no-first-run",
        "--no-default-browser-check",
        "--window-size=1920,1080",
    ],
)
"""
Stealth settings for targets with aggressive anti-bot protection.

Longer timeouts, rotated user agents and reduced automation signals.
"""
