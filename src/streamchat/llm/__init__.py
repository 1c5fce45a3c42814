"""Provider transport, rate limiting, and error recovery for streamchat."""

from streamchat.llm.client import AsyncProviderClient, ProviderTransport
from streamchat.llm.error_recovery import (
    ErrorClassifier,
    RetryContext,
    RetryDecision,
    RetryPolicy,
)
from streamchat.llm.rate_limit import RateLimitState, RateLimitTracker

__all__ = [
    "AsyncProviderClient",
    "ErrorClassifier",
    "ProviderTransport",
    "RateLimitState",
    "RateLimitTracker",
    "RetryContext",
    "RetryDecision",
    "RetryPolicy",
]
