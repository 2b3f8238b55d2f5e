"""Fixed-window rate limiting.

Provides admission control for the generation provider client and the
public reporting API. Each key owns a window of ``window_ms``; every
attempt increments the window's counter and attempts beyond
``max_requests`` are denied until the window expires. Rollover is lazy:
the first attempt after expiry starts a new window, so no background
sweep is needed.

Key Exports:
    RateLimiter: Fixed-window limiter keyed by client identity.
    RateLimitDecision: Outcome of a single admission attempt.
    RateLimitBucket: Per-key window state.

Example:
    >>> limiter = RateLimiter(window_ms=1000, max_requests=5)
    >>> decision = limiter.try_acquire("api-key-1")
    >>> if not decision.allowed:
    ...     print(f"retry in {decision.retry_after_ms}ms")

Thread Safety:
    Counter updates happen under a ``threading.Lock``, so one limiter can
    be shared by event-loop code and worker threads. The provider client
    and the API use separate limiter instances so their quotas never mix.
"""

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from testsmith.exceptions import RateLimitExceeded

log = structlog.get_logger(__name__)


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000


@dataclass
class RateLimitBucket:
    """Window state for one key. Replaced wholesale at rollover."""

    key: str
    window_start: float
    count: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of :meth:`RateLimiter.try_acquire`.

    Attributes:
        allowed: Whether the attempt was admitted.
        retry_after_ms: Milliseconds until the window closes; 0 when allowed.
        remaining: Attempts left in the current window.
    """

    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0


class RateLimiter:
    """Fixed-window admission control keyed by client identity.

    Attributes:
        window_ms: Window length in milliseconds.
        max_requests: Attempts admitted per window.
        name: Label used in log events.
    """

    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        name: str = "default",
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        """Initialize the limiter.

        Args:
            window_ms: Window length in milliseconds. Must be positive.
            max_requests: Attempts admitted per window. Must be positive.
            name: Label included in log events to tell limiters apart.
            clock: Millisecond clock; injectable for tests.
        """
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.name = name
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> RateLimitDecision:
        """Record an attempt for ``key`` and decide whether to admit it.

        Args:
            key: Client identity (API key, host, or provider name).

        Returns:
            RateLimitDecision; denied decisions carry
            ``retry_after_ms = window_start + window_ms - now``.
        """
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.window_start + self.window_ms:
                bucket = RateLimitBucket(key=key, window_start=now)
                self._buckets[key] = bucket

            bucket.count += 1
            if bucket.count <= self.max_requests:
                return RateLimitDecision(allowed=True, remaining=self.max_requests - bucket.count)

            retry_after = bucket.window_start + self.window_ms - now
            decision = RateLimitDecision(allowed=False, retry_after_ms=max(1, int(retry_after + 0.999)))

        log.debug(
            "rate_limit_denied",
            limiter=self.name,
            key=key,
            retry_after_ms=decision.retry_after_ms,
        )
        return decision

    def check(self, key: str) -> RateLimitDecision:
        """Like :meth:`try_acquire` but raise when denied.

        Raises:
            RateLimitExceeded: If the attempt is denied.
        """
        decision = self.try_acquire(key)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision.retry_after_ms)
        return decision

    async def acquire(self, key: str, max_wait_ms: int | None = None) -> None:
        """Wait until an attempt for ``key`` is admitted.

        Sleeps for each denial's ``retry_after_ms`` and tries again.

        Args:
            key: Client identity.
            max_wait_ms: Give up once this much time has been spent waiting.
                None waits indefinitely.

        Raises:
            RateLimitExceeded: If ``max_wait_ms`` would be exceeded.
        """
        waited = 0
        while True:
            decision = self.try_acquire(key)
            if decision.allowed:
                return
            if max_wait_ms is not None and waited + decision.retry_after_ms > max_wait_ms:
                raise RateLimitExceeded(key, decision.retry_after_ms)
            log.info(
                "rate_limit_wait",
                limiter=self.name,
                key=key,
                retry_after_ms=decision.retry_after_ms,
            )
            waited += decision.retry_after_ms
            await asyncio.sleep(decision.retry_after_ms / 1000)

    def bucket(self, key: str) -> RateLimitBucket | None:
        """Current window state for ``key``, if any."""
        with self._lock:
            return self._buckets.get(key)

    def reset(self, key: str | None = None) -> None:
        """Forget the window for ``key``, or for every key."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
