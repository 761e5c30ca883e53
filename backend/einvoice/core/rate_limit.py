"""
Outbound rate limiting for authority API endpoints.

Features:
- One limiter per endpoint key, sized from the endpoint's requests-per-minute budget
- Minimum spacing between consecutive calls (sleep-based, no request is dropped)
- Shared registry so every caller in the process draws from the same budget
- Retry-After / X-Rate-Limit-Reset parsing and capped exponential backoff for 429 responses
"""
import asyncio
import math
import random
import time
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60.0
MAX_JITTER_SECONDS = 0.25

# Requests per minute allowed by the authority
RATE_LIMITS = {
    "submit_documents": 100,
    "get_submission": 300,
    "get_document_details": 125,
    "cancel_document": 12,
    "validate_tin": 60,
    "login": 12,
}

Sleep = Callable[[float], Awaitable[None]]


class EndpointRateLimiter:
    """
    Enforces a minimum interval between calls to one endpoint.

    Concurrent callers queue on a lock, so no caller can slip in under the
    interval even when several coroutines wait at the same time.

    Note: state is per-process. Multiple worker processes each get their own
    budget.
    """

    def __init__(
        self,
        endpoint: str,
        requests_per_minute: int,
        sleep: Optional[Sleep] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.endpoint = endpoint
        self.requests_per_minute = requests_per_minute
        # Rounded up to whole milliseconds
        self.min_interval = math.ceil(60000 / requests_per_minute) / 1000
        self.last_call_at: Optional[float] = None
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Wait until the next call is allowed; returns the time waited."""
        async with self._lock:
            waited = 0.0
            if self.last_call_at is not None:
                elapsed = self._clock() - self.last_call_at
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.debug(f"Throttling {self.endpoint} for {waited:.3f}s")
                    await self._sleep(waited)
            self.last_call_at = self._clock()
            return waited


class RateLimiterRegistry:
    """Holds one limiter per endpoint key."""

    def __init__(self, limits: Optional[Mapping[str, int]] = None, sleep: Optional[Sleep] = None):
        self.limits = dict(limits or RATE_LIMITS)
        self._sleep = sleep
        self._limiters: Dict[str, EndpointRateLimiter] = {}

    def get(self, endpoint: str) -> EndpointRateLimiter:
        if endpoint not in self._limiters:
            if endpoint not in self.limits:
                raise KeyError(f"No rate limit configured for endpoint '{endpoint}'")
            self._limiters[endpoint] = EndpointRateLimiter(
                endpoint, self.limits[endpoint], sleep=self._sleep
            )
        return self._limiters[endpoint]


# Global registry shared by every client in the process
rate_limiters = RateLimiterRegistry()


def parse_retry_after(headers: Mapping[str, str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Read the retry hint from a 429 response.

    Accepts ``Retry-After`` or ``X-Rate-Limit-Reset`` holding either a number
    of seconds or a date. Returns None when neither header is usable.
    """
    value = headers.get("retry-after") or headers.get("x-rate-limit-reset")
    if not value:
        return None
    value = value.strip()

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    now = now or datetime.now(timezone.utc)
    try:
        reset_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            reset_at = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    return max(0.0, (reset_at - now).total_seconds())


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential delay capped at 60s, plus up to 250ms of jitter."""
    delay = min(MAX_BACKOFF_SECONDS, base_delay * (2 ** attempt))
    return delay + random.uniform(0, MAX_JITTER_SECONDS)
