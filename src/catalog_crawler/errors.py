"""Exception hierarchy and error taxonomy for the crawler."""

from enum import Enum


class ErrorKind(str, Enum):
    """Audit categories written to the crawl_errors table."""
    TRANSPORT_ERROR = "transport_error"
    HTTP_TERMINAL = "http_terminal"
    HTTP_TRANSIENT = "http_transient"
    CHALLENGED = "challenged"
    RATE_LIMITED = "rate_limited"
    EXTRACTION_FAILED = "extraction_failed"
    PERSISTENCE_ERROR = "persistence_error"
    UNKNOWN = "unknown"


class CrawlerError(Exception):
    """Base class for crawler errors."""


class ConfigError(CrawlerError):
    """Raised when crawler configuration fails validation."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Configuration errors:\n" + "\n".join(self.problems))


class PersistenceError(CrawlerError):
    """Storage failure. Always fatal to a crawl run."""


class TransportError(CrawlerError):
    """Navigation failed before an HTTP response was received."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"{message} ({url})")


class DiscoveryBlockedError(CrawlerError):
    """A listing page stayed blocked after all retries."""

    def __init__(self, page_number: int, reason: str):
        self.page_number = page_number
        self.reason = reason
        super().__init__(f"Listing page {page_number} blocked: {reason}")


class BrowserPoolError(CrawlerError):
    """The browser pool lost every session and could not open a new one."""
