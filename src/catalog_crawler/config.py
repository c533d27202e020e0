from dotenv import load_dotenv
from dataclasses import dataclass
from typing import Tuple
from pathlib import Path
import json
import os
from urllib.parse import quote

from catalog_crawler.browser_config import BrowserSettings
from catalog_crawler.errors import ConfigError

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/catalog_crawler.db")
    DB_BACKEND = os.getenv("DB_BACKEND", "local")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("LOG_FILE")

    USER_AGENT = os.getenv("USER_AGENT")
    IMAGES_DIR = os.getenv("IMAGES_DIR", "data/images")

    # External challenge solving service (optional)
    CAPTCHA_SERVICE = os.getenv("CAPTCHA_SERVICE")  # '2captcha', 'capsolver' or unset
    CAPTCHA_API_KEY = os.getenv("CAPTCHA_API_KEY")
    CAPTCHA_TIMEOUT = float(os.getenv("CAPTCHA_TIMEOUT", "120"))


settings = Settings()

STRATEGIES = ("isolated", "pooled")

# Fields whose env/file value is a comma separated list of ints
_CODE_FIELDS = ("terminal_status_codes", "transient_status_codes")


@dataclass
class CrawlerConfig:
    """Tunables for a crawl run.

    Delays are in seconds unless the field name says otherwise.
    """

    # Target
    collection_key: str = "haifa"
    search_url_template: str = "https://www.madlan.co.il/for-sale/{key}"
    items_per_page: int = 34
    max_pages: int = 5
    max_items: int = 100
    download_images: bool = True
    strategy: str = "isolated"  # 'isolated' or 'pooled'

    # Retry / backoff for transient failures (linear: base + n * increment)
    max_retries: int = 3
    retry_base_delay: float = 10.0
    retry_delay_increment: float = 10.0
    terminal_status_codes: Tuple[int, ...] = (401, 403, 404, 410)
    transient_status_codes: Tuple[int, ...] = (
        408, 425, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524, 525, 526, 527,
    )

    # Pooled-session strategy
    pool_size: int = 3
    max_concurrency: int = 3
    max_requests_per_minute: int = 60
    session_max_uses: int = 10
    request_delay_min: float = 2.0
    request_delay_max: float = 5.0

    # Isolated-session strategy
    item_delay_min: float = 60.0
    item_delay_max: float = 120.0
    dwell_seconds: float = 8.0

    # Discovery
    page_delay_min: float = 20.0
    page_delay_max: float = 40.0
    discovery_warning_ratio: float = 0.8

    # Challenge mitigation
    challenge_backoff_min: float = 30.0
    challenge_backoff_max: float = 60.0
    solver_timeout: float = 120.0

    # Progress / bookkeeping
    progress_interval_ms: int = 10000
    stats_flush_every: int = 5

    # Images
    image_retries: int = 3
    image_timeout: float = 30.0

    # Browser
    headless: bool = True
    locale: str = ""
    timezone_id: str = ""

    @classmethod
    def from_env(cls) -> "CrawlerConfig":
        """Load configuration from environment variables.

        Environment variables are prefixed with CRAWLER_,
        e.g. CRAWLER_MAX_PAGES=10 or CRAWLER_STRATEGY=pooled.

        Returns:
            CrawlerConfig with values from environment
        """
        config = cls()
        prefix = "CRAWLER_"

        for field_name in config.__dataclass_fields__:
            env_value = os.getenv(f"{prefix}{field_name.upper()}")
            if env_value is not None:
                config._set_from_string(field_name, env_value)

        return config

    @classmethod
    def from_file(cls, path: str) -> "CrawlerConfig":
        """Load configuration from a JSON file.

        The file may hold the fields at top level or under a 'crawler' key.
        A missing file yields the defaults.
        """
        config = cls()
        file_path = Path(path)

        if not file_path.exists():
            return config

        with open(file_path, 'r') as f:
            data = json.load(f)

        crawler_data = data.get('crawler', data)

        for field_name in config.__dataclass_fields__:
            if field_name in crawler_data:
                value = crawler_data[field_name]
                if field_name in _CODE_FIELDS:
                    value = tuple(int(v) for v in value)
                setattr(config, field_name, value)

        return config

    def _set_from_string(self, field_name: str, raw: str) -> None:
        field_type = self.__dataclass_fields__[field_name].type
        try:
            if field_name in _CODE_FIELDS:
                value = tuple(int(part) for part in raw.split(",") if part.strip())
            elif field_type == bool:
                value = raw.strip().lower() in ("1", "true", "yes", "on")
            elif field_type == int:
                value = int(raw)
            elif field_type == float:
                value = float(raw)
            else:
                value = raw
        except ValueError:
            return  # Keep default if conversion fails
        setattr(self, field_name, value)

    def validate(self) -> None:
        """Check value ranges, raising ConfigError listing every problem."""
        problems = []

        if self.strategy not in STRATEGIES:
            problems.append(f"strategy must be one of {', '.join(STRATEGIES)}")
        if "{key}" not in self.search_url_template:
            problems.append("search_url_template must contain '{key}'")
        if self.items_per_page < 1:
            problems.append("items_per_page must be >= 1")
        if self.max_pages < 1:
            problems.append("max_pages must be >= 1")
        if self.max_items < 0:
            problems.append("max_items must be >= 0")
        if self.max_retries < 0:
            problems.append("max_retries must be >= 0")
        if self.max_concurrency < 1:
            problems.append("max_concurrency must be >= 1")
        if self.pool_size < 1:
            problems.append("pool_size must be >= 1")
        if self.max_requests_per_minute < 1:
            problems.append("max_requests_per_minute must be >= 1")
        if self.session_max_uses < 1:
            problems.append("session_max_uses must be >= 1")
        if self.stats_flush_every < 1:
            problems.append("stats_flush_every must be >= 1")
        if not 0 < self.discovery_warning_ratio <= 1:
            problems.append("discovery_warning_ratio must be in (0, 1]")

        for low, high in (
            ("retry_base_delay", None),
            ("retry_delay_increment", None),
            ("request_delay_min", "request_delay_max"),
            ("item_delay_min", "item_delay_max"),
            ("page_delay_min", "page_delay_max"),
            ("challenge_backoff_min", "challenge_backoff_max"),
        ):
            if getattr(self, low) < 0:
                problems.append(f"{low} must be >= 0")
            if high and getattr(self, high) < getattr(self, low):
                problems.append(f"{high} must be >= {low}")

        if problems:
            raise ConfigError(problems)

    def search_url(self) -> str:
        """First listing page URL for the configured collection key."""
        return self.search_url_template.format(key=quote(self.collection_key))

    def browser_settings(self) -> BrowserSettings:
        """Browser settings derived from this config and the environment."""
        return BrowserSettings(
            headless=self.headless,
            user_agent=settings.USER_AGENT,
            locale=self.locale or None,
            timezone_id=self.timezone_id or None,
        )

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            field_name: getattr(self, field_name)
            for field_name in self.__dataclass_fields__
        }

    def save_to_file(self, path: str) -> None:
        """Save current config to a JSON file."""
        with open(path, 'w') as f:
            json.dump({'crawler': self.to_dict()}, f, indent=2)
