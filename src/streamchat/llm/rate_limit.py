"""Provider rate-limit tracking.

Keeps the quota the provider reports through ``x-ratelimit-*`` response
headers, records explicit 429 cooldowns, and answers whether a new request
may start right now.  One tracker is created per client and injected
wherever it is needed; there is no module-level state.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Mapping

_logger = logging.getLogger(__name__)

# Cooldown when the provider says "no" without telling us for how long.
DEFAULT_COOLDOWN_SECONDS = 60.0

# Client-side request window length.
_WINDOW_SECONDS = 60.0

# Reset values above this are epoch milliseconds rather than seconds.
_MS_THRESHOLD = 10_000_000_000

_DIMENSIONS = ("requests", "tokens")


@dataclass
class RateLimitState:
    """Snapshot of the provider-reported quota.

    Reset times are epoch seconds.  ``None`` means "not reported".
    """

    limit_requests: int | None = None
    remaining_requests: int | None = None
    requests_reset_at: float | None = None
    limit_tokens: int | None = None
    remaining_tokens: int | None = None
    tokens_reset_at: float | None = None
    updated_at: float = 0.0

    def next_reset(self, now: float | None = None) -> float | None:
        """Latest pending reset among the exhausted dimensions."""
        now = time.time() if now is None else now
        resets = []
        for dim in _DIMENSIONS:
            remaining = getattr(self, f"remaining_{dim}")
            reset_at = getattr(self, f"{dim}_reset_at")
            if remaining is not None and remaining <= 0 and reset_at and reset_at > now:
                resets.append(reset_at)
        return max(resets) if resets else None

    def is_exhausted(self, now: float | None = None) -> bool:
        return self.next_reset(now) is not None


def _parse_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _parse_reset(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        reset = float(value)
    except ValueError:
        return None
    if reset > _MS_THRESHOLD:
        reset /= 1000
    return reset


def human_duration(secs: float) -> str:
    if secs <= 0:
        return "available now"
    if secs < 60:
        return f"{secs:.0f}s"
    if secs < 3600:
        return f"{secs / 60:.0f}m"
    return f"{secs / 3600:.1f}h"


class RateLimitTracker:
    """Tracks provider quota and gates new requests.

    Parameters
    ----------
    requests_per_minute:
        Client-side cap on request starts per sliding minute (0 = unlimited).
    default_cooldown:
        Seconds to back off after a 429 that carries no reset hint.
    clock:
        Returns the current epoch time in seconds.
    """

    def __init__(
        self,
        requests_per_minute: int = 0,
        default_cooldown: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = RateLimitState()
        self._requests_per_minute = requests_per_minute
        self._default_cooldown = default_cooldown
        self._clock = clock
        self._cooldown_until: float | None = None
        self._request_times: deque[float] = deque()

    # ----- Record -----

    def observe(self, headers: Mapping[str, str]) -> RateLimitState:
        """Fold one response's rate-limit headers into the state.

        Observations never move a dimension back to an earlier reset window,
        and within one window ``remaining`` only goes down.
        """
        now = self._clock()
        seen = False
        for dim in _DIMENSIONS:
            limit = _parse_int(headers.get(f"x-ratelimit-limit-{dim}"))
            remaining = _parse_int(headers.get(f"x-ratelimit-remaining-{dim}"))
            reset_at = _parse_reset(headers.get(f"x-ratelimit-reset-{dim}"))
            if limit is None and remaining is None and reset_at is None:
                continue
            seen = True
            self._merge(dim, limit, remaining, reset_at, now)

        if seen:
            self.state.updated_at = now
            if self._exhausted_without_reset(now):
                self._extend_cooldown(now + self._default_cooldown)
        return self.state

    def record_rate_limit(self, retry_after: float | None = None) -> float:
        """Record a 429.  Returns the epoch time the cooldown ends.

        Without *retry_after*, the reported quota reset is used, and failing
        that the default cooldown.  An existing longer cooldown is kept.
        """
        now = self._clock()
        if retry_after is not None:
            until = now + max(0.0, retry_after)
        else:
            until = self.state.next_reset(now) or now + self._default_cooldown
        self._extend_cooldown(until)
        _logger.warning(
            "Provider rate-limited for %.0fs (until %s)",
            self._cooldown_until - now,
            time.strftime("%H:%M:%S", time.localtime(self._cooldown_until)),
        )
        return self._cooldown_until

    def record_request(self) -> None:
        """Note that a request is starting (client-side window)."""
        if self._requests_per_minute <= 0:
            return
        now = self._clock()
        self._request_times.append(now)
        self._trim_window(now)

    def clear(self) -> None:
        self.state = RateLimitState()
        self._cooldown_until = None
        self._request_times.clear()

    # ----- Query -----

    def is_available(self) -> bool:
        """True when nothing currently blocks a new request."""
        return self._blocked_until(self._clock()) is None

    def time_until_reset(self) -> float | None:
        """Seconds until requests may start again, or ``None`` if not blocked."""
        now = self._clock()
        until = self._blocked_until(now)
        if until is None:
            return None
        return until - now

    def describe(self) -> str:
        """User-facing explanation of the current limit."""
        now = self._clock()
        until = self._blocked_until(now)
        if until is None:
            return "Requests available"

        requests_out = self.state.remaining_requests is not None and self.state.remaining_requests <= 0
        tokens_out = self.state.remaining_tokens is not None and self.state.remaining_tokens <= 0
        if requests_out and tokens_out:
            reason = "Both request and token limits have been reached."
        elif requests_out:
            reason = "Request limit reached."
        elif tokens_out:
            reason = "Token limit reached."
        else:
            reason = "Please wait before making another request."
        return f"Rate limit exceeded. {reason} Try again in {human_duration(until - now)}."

    # ----- Internals -----

    def _merge(
        self,
        dim: str,
        limit: int | None,
        remaining: int | None,
        reset_at: float | None,
        now: float,
    ) -> None:
        cur_remaining = getattr(self.state, f"remaining_{dim}")
        cur_reset = getattr(self.state, f"{dim}_reset_at")
        window_open = cur_reset is not None and cur_reset > now

        if reset_at is not None and cur_reset is not None and reset_at < cur_reset:
            _logger.debug(
                "Ignoring stale %s rate-limit window (reset %.0f < %.0f)",
                dim, reset_at, cur_reset,
            )
            return

        same_window = (
            (reset_at is not None and reset_at == cur_reset)
            or (reset_at is None and window_open)
        )
        if same_window and remaining is not None and cur_remaining is not None:
            remaining = min(remaining, cur_remaining)
        if reset_at is None and window_open:
            reset_at = cur_reset

        if limit is not None:
            setattr(self.state, f"limit_{dim}", limit)
        if remaining is not None:
            setattr(self.state, f"remaining_{dim}", remaining)
        if reset_at is not None:
            setattr(self.state, f"{dim}_reset_at", reset_at)

    def _exhausted_without_reset(self, now: float) -> bool:
        for dim in _DIMENSIONS:
            remaining = getattr(self.state, f"remaining_{dim}")
            reset_at = getattr(self.state, f"{dim}_reset_at")
            if remaining is not None and remaining <= 0 and not (reset_at and reset_at > now):
                return True
        return False

    def _extend_cooldown(self, until: float) -> None:
        if self._cooldown_until is None or until > self._cooldown_until:
            self._cooldown_until = until

    def _trim_window(self, now: float) -> None:
        while self._request_times and now - self._request_times[0] >= _WINDOW_SECONDS:
            self._request_times.popleft()

    def _blocked_until(self, now: float) -> float | None:
        candidates: list[float] = []
        if self._cooldown_until is not None:
            if self._cooldown_until > now:
                candidates.append(self._cooldown_until)
            else:
                _logger.info("Rate-limit cooldown expired, requests available")
                self._cooldown_until = None

        reset = self.state.next_reset(now)
        if reset is not None:
            candidates.append(reset)

        if self._requests_per_minute > 0:
            self._trim_window(now)
            if len(self._request_times) >= self._requests_per_minute:
                candidates.append(self._request_times[0] + _WINDOW_SECONDS)

        return max(candidates) if candidates else None
