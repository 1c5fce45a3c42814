"""Error classification and retry policy.

Every failure the orchestrator sees goes through ``ErrorClassifier.classify``
exactly once and comes out as an :class:`ErrorKind`; ``RetryPolicy`` turns
that kind plus the attempt count into a retry decision.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass

import httpx

from streamchat.errors import ErrorKind, ProviderError, StreamChatError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error classifier
# ---------------------------------------------------------------------------

# Fallback patterns for errors that carry no status code.  Tried in order
# against the error message; first match wins.
_MESSAGE_PATTERNS: list[tuple[re.Pattern[str], ErrorKind]] = [
    (re.compile(r"\b401\b|invalid api key|unauthori[sz]ed", re.IGNORECASE),
     ErrorKind.INVALID_CREDENTIAL),
    (re.compile(r"\b402\b|insufficient (credits|quota)|payment required", re.IGNORECASE),
     ErrorKind.INSUFFICIENT_QUOTA),
    (re.compile(r"\b429\b|rate.?limit|too many requests", re.IGNORECASE),
     ErrorKind.RATE_LIMITED),
    (re.compile(r"\b50[234]\b|service unavailable|overloaded|timed? ?out", re.IGNORECASE),
     ErrorKind.SERVICE_UNAVAILABLE),
]


class ErrorClassifier:
    """Map transport and provider failures onto :class:`ErrorKind`.

    Order of evidence:
      1. typed streamchat errors that already know their kind
      2. HTTP status code (``ProviderError`` / ``httpx.HTTPStatusError``)
      3. httpx timeout and transport exceptions
      4. message patterns
      5. ``UNKNOWN``
    """

    def classify(self, error: BaseException) -> ErrorKind:
        """Return the error kind for *error*."""
        if isinstance(error, StreamChatError) and not isinstance(error, ProviderError):
            return error.kind

        status = self._status_of(error)
        if status is not None:
            kind = self.classify_status(status)
            if kind is not None:
                return kind

        if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
            return ErrorKind.SERVICE_UNAVAILABLE

        message = str(error)
        for pattern, kind in _MESSAGE_PATTERNS:
            if pattern.search(message):
                return kind

        return ErrorKind.UNKNOWN

    @staticmethod
    def classify_status(status: int) -> ErrorKind | None:
        """Kind for an HTTP status, or ``None`` if the status says nothing."""
        if status == 401:
            return ErrorKind.INVALID_CREDENTIAL
        if status == 402:
            return ErrorKind.INSUFFICIENT_QUOTA
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status == 408 or status >= 500:
            return ErrorKind.SERVICE_UNAVAILABLE
        return None

    @staticmethod
    def _status_of(error: BaseException) -> int | None:
        if isinstance(error, ProviderError):
            return error.status_code
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code
        return None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

_FATAL_KINDS = frozenset({
    ErrorKind.MISSING_CREDENTIAL,
    ErrorKind.INVALID_CREDENTIAL,
    ErrorKind.INSUFFICIENT_QUOTA,
    ErrorKind.CONCURRENT_STREAM_CONFLICT,
})


@dataclass
class RetryDecision:
    """Whether to retry, and after how many seconds."""

    retry: bool
    delay: float | None = None


@dataclass
class RetryContext:
    """Per-request retry bookkeeping.  Never persisted."""

    attempt: int = 0
    rate_limit_retries: int = 0
    last_error_kind: ErrorKind | None = None
    next_delay: float | None = None

    def record(self, kind: ErrorKind, decision: RetryDecision) -> None:
        self.last_error_kind = kind
        self.next_delay = decision.delay
        if decision.retry:
            self.attempt += 1
            if kind is ErrorKind.RATE_LIMITED:
                self.rate_limit_retries += 1


@dataclass
class RetryPolicy:
    """Retry rules per error kind.

    Parameters
    ----------
    max_retries:
        Retry budget for transient kinds.
    base_delay:
        First backoff delay in seconds; doubles per attempt.
    max_delay:
        Cap on any single backoff delay.
    jitter:
        Spread each backoff delay by up to +/-25%.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = False

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            spread = delay * 0.25
            delay += random.uniform(-spread, spread)
        return max(delay, 0.0)

    def should_retry(
        self,
        kind: ErrorKind,
        attempt: int,
        *,
        rate_limit_retries: int = 0,
        reset_in: float | None = None,
    ) -> RetryDecision:
        """Decide whether attempt number *attempt* (0-based) gets a retry.

        Rate-limited requests get a single retry scheduled at the provider's
        reset time (*reset_in* seconds from now).
        """
        if kind in _FATAL_KINDS:
            return RetryDecision(retry=False)

        if kind is ErrorKind.RATE_LIMITED:
            if rate_limit_retries >= 1:
                return RetryDecision(retry=False)
            delay = reset_in if reset_in is not None else self.backoff_delay(attempt)
            return RetryDecision(retry=True, delay=max(delay, 0.0))

        # SERVICE_UNAVAILABLE and UNKNOWN
        if attempt >= self.max_retries:
            return RetryDecision(retry=False)
        return RetryDecision(retry=True, delay=self.backoff_delay(attempt))
