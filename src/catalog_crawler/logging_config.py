"""Logging configuration for the catalog crawler."""

import logging
import sys
from pathlib import Path
from typing import List, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Browser and HTTP clients log every request
QUIET_LOGGERS = ('asyncio', 'httpx', 'httpcore', 'aiohttp', 'playwright')


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
) -> List[logging.Handler]:
    """Route crawl logs to stdout and, optionally, a file.

    Args:
        level: Log level name; unknown names fall back to INFO
        log_file: Optional log file path, parent directories are created
        format_string: Optional custom format string

    Returns:
        The handlers installed on the root logger
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=format_string or DEFAULT_FORMAT,
        handlers=handlers,
        force=True  # Replace handlers from an earlier run in the same process
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handlers
