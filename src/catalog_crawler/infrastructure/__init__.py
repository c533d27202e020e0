"""
Infrastructure Package.

Browser sessions, request pacing, retry and the two fetch strategies.
"""

from .browser_pool import (
    BrowserPool,
    SessionHealth,
    PoolStatus,
    SessionMetrics,
    PoolLease,
)
from .rate_limiter import TokenBucketLimiter
from .timing_evasion import (
    JitterSource,
    SequenceJitter,
    DelayRange,
    Pacer,
)
from .retry import (
    RetryDecision,
    RetryPolicy,
    RetryController,
    classify_outcome,
    outcome_for_page,
)
from .fetchers import (
    ItemFetcher,
    PageInspector,
    IsolatedSessionFetcher,
    PooledSessionFetcher,
    create_fetcher,
)

__all__ = [
    "BrowserPool",
    "SessionHealth",
    "PoolStatus",
    "SessionMetrics",
    "PoolLease",
    "TokenBucketLimiter",
    "JitterSource",
    "SequenceJitter",
    "DelayRange",
    "Pacer",
    "RetryDecision",
    "RetryPolicy",
    "RetryController",
    "classify_outcome",
    "outcome_for_page",
    "ItemFetcher",
    "PageInspector",
    "IsolatedSessionFetcher",
    "PooledSessionFetcher",
    "create_fetcher",
]
