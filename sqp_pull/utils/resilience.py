"""
Resilience Primitives Module
Control-flow guards shared by every report pull.

Features:
- Circuit breaker (CLOSED / OPEN / HALF_OPEN) around external API calls
- Sliding-window rate limiter keyed by seller
- Exponential backoff delay calculation
- Process memory gate for admission control

None of these know anything about reports or sellers beyond an opaque key;
the engine constructs one instance of each and injects it where needed.
"""

import time
import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class CircuitOpenError(Exception):
    """Raised when the circuit breaker rejects a call without running it."""
    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitExceeded(Exception):
    """Raised when a key has used up its request budget for the current window."""
    def __init__(self, message: str, key: str = None, retry_after: float = 0.0):
        super().__init__(message)
        self.key = key
        self.retry_after = retry_after


# =============================================================================
# Backoff
# =============================================================================

def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """
    Calculate an exponential backoff delay.

    Args:
        attempt: Zero-based attempt number (0 = first retry)
        initial_delay: Delay for the first retry in seconds
        max_delay: Upper bound in seconds

    Returns:
        Delay in seconds: min(initial_delay * 2^attempt, max_delay)
    """
    if attempt < 0:
        attempt = 0
    return min(initial_delay * (2 ** attempt), max_delay)


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitBreaker:
    """
    Circuit breaker to stop hammering the reporting API while it is failing.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Threshold reached, calls are rejected immediately
    - HALF_OPEN: Timeout elapsed, a single trial call is let through

    Usage:
        breaker = CircuitBreaker(threshold=5, timeout=60)
        report_id = breaker.call(api.create_report, seller, token, request)
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    def __init__(
        self,
        threshold: int = 5,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize circuit breaker.

        Args:
            threshold: Consecutive failures before the circuit opens
            timeout: Seconds to stay OPEN before allowing a trial call
            clock: Monotonic time source (injectable for tests)
        """
        self.threshold = threshold
        self.timeout = timeout
        self._clock = clock

        self.state = self.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

        self.stats = {
            "calls": 0,
            "failures": 0,
            "rejected": 0,
            "opened": 0
        }

    def call(self, func: Callable, *args, **kwargs):
        """
        Execute func under circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit is OPEN (or a trial is already running)
            Exception: Whatever func raises, after recording the failure
        """
        self._before_call()

        self.stats["calls"] += 1
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _before_call(self):
        if self.state == self.OPEN:
            remaining = self._time_until_reset()
            if remaining > 0:
                self.stats["rejected"] += 1
                raise CircuitOpenError(
                    f"Circuit breaker is OPEN. Service unavailable. Retry after {remaining:.0f}s",
                    retry_after=remaining
                )
            self.state = self.HALF_OPEN
            logger.info("Circuit breaker HALF_OPEN, allowing one trial call")

        if self.state == self.HALF_OPEN:
            if self._trial_in_flight:
                self.stats["rejected"] += 1
                raise CircuitOpenError("Circuit breaker is HALF_OPEN with a trial call in flight")
            self._trial_in_flight = True

    def _time_until_reset(self) -> float:
        if self.opened_at is None:
            return 0.0
        elapsed = self._clock() - self.opened_at
        return max(0.0, self.timeout - elapsed)

    def _on_success(self):
        if self.state != self.CLOSED:
            logger.info("Circuit breaker CLOSED after successful trial call")
        self.state = self.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def _on_failure(self):
        self.stats["failures"] += 1
        self._trial_in_flight = False

        if self.state == self.HALF_OPEN:
            self._open()
            return

        self.failure_count += 1
        if self.failure_count >= self.threshold:
            self._open()

    def _open(self):
        self.state = self.OPEN
        self.opened_at = self._clock()
        self.stats["opened"] += 1
        logger.warning(
            f"Circuit breaker OPEN after {self.failure_count} consecutive failures "
            f"(cooling down {self.timeout:.0f}s)"
        )

    def reset(self):
        """Manually close the circuit."""
        self.state = self.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def get_stats(self) -> dict:
        """Current state plus counters, for run summaries."""
        stats = self.stats.copy()
        stats["state"] = self.state
        stats["failure_count"] = self.failure_count
        return stats


# =============================================================================
# Rate Limiter
# =============================================================================

class RateLimiter:
    """
    Sliding-window rate limiter keyed by seller.

    At most max_requests calls per key are admitted within any
    window_seconds span.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._request_times: Dict[str, Deque[float]] = {}

    def _prune(self, key: str, now: float) -> Deque[float]:
        times = self._request_times.setdefault(key, deque())
        while times and now - times[0] >= self.window_seconds:
            times.popleft()
        return times

    def check_limit(self, key: str):
        """
        Admit one call for key or fail.

        Raises:
            RateLimitExceeded: If key already used max_requests in the window
        """
        now = self._clock()
        times = self._prune(key, now)

        if len(times) >= self.max_requests:
            retry_after = self.window_seconds - (now - times[0])
            logger.warning(f"Rate limit reached for {key}: {len(times)}/{self.max_requests} in window")
            raise RateLimitExceeded(
                f"Rate limit exceeded for {key}. Retry after {retry_after:.1f}s",
                key=key,
                retry_after=retry_after
            )

        times.append(now)

    def acquire(self, key: str):
        """Block until a slot is available for key, then take it."""
        while True:
            try:
                self.check_limit(key)
                return
            except RateLimitExceeded as e:
                logger.debug(f"Rate limiting: waiting {e.retry_after:.2f}s for {key}")
                time.sleep(max(e.retry_after, 0.01))

    def remaining(self, key: str) -> int:
        times = self._prune(key, self._clock())
        return max(0, self.max_requests - len(times))


# =============================================================================
# Memory Gate
# =============================================================================

class MemoryGate:
    """
    Admission control based on resident memory of this process.

    Only gates the start of new work; nothing already running is interrupted.
    """

    def __init__(self, max_memory_mb: int = 500, usage_reader: Callable[[], float] = None):
        self.max_memory_mb = max_memory_mb
        self._usage_reader = usage_reader or self._process_rss_mb
        self.peak_mb = 0.0

    @staticmethod
    def _process_rss_mb() -> float:
        return psutil.Process().memory_info().rss / (1024 * 1024)

    def current_usage_mb(self) -> float:
        usage = self._usage_reader()
        self.peak_mb = max(self.peak_mb, usage)
        return usage

    def is_high(self) -> bool:
        """True when current usage is at or above the configured ceiling."""
        usage = self.current_usage_mb()
        if usage >= self.max_memory_mb:
            logger.warning(f"High memory usage detected: {usage:.1f}MB (limit: {self.max_memory_mb}MB)")
            return True
        return False
